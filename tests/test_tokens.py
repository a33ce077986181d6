"""Unit tests for HS256 access and refresh token minting and validation."""

import base64
import json
from datetime import timedelta

import pytest

from authcore.service.errors import TokenInvalidError
from authcore.service.tokens import AccessClaims, RefreshClaims, TokenCodec, TokenKind
from authcore.storage.models import Role, User

ACCESS_SECRET = "access-secret-for-tests"
REFRESH_SECRET = "refresh-secret-for-tests"


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return json.loads(base64.urlsafe_b64decode(segment + padding))


@pytest.fixture
def codec(clock):
    return TokenCodec(
        ACCESS_SECRET,
        REFRESH_SECRET,
        "authcore-test",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        clock=clock,
    )


@pytest.fixture
def user():
    return User.new("alice@example.com", "alice", "Alice")


class TestTokenCodecConstruction:
    def test_rejects_empty_secret(self):
        with pytest.raises(ValueError):
            TokenCodec("", REFRESH_SECRET, "iss")

    def test_rejects_shared_secret(self):
        """Access and refresh tokens must be signed with different keys."""
        with pytest.raises(ValueError):
            TokenCodec("same", "same", "iss")


class TestAccessTokens:
    def test_round_trip_carries_identity_and_roles(self, codec, user):
        issued = codec.issue_access(user, [Role.USER, Role.MODERATOR])
        claims = codec.validate(issued.token, TokenKind.ACCESS)

        assert isinstance(claims, AccessClaims)
        assert claims.user_id == user.id
        assert claims.email == "alice@example.com"
        assert claims.username == "alice"
        assert claims.display_name == "Alice"
        assert claims.roles == (Role.USER, Role.MODERATOR)
        assert claims.verified is False
        assert claims.issuer == "authcore-test"
        assert claims.jti == issued.jti
        assert claims.expires_at == issued.expires_at

    def test_payload_has_standard_claims(self, codec, user):
        payload = _payload(codec.issue_access(user, [Role.USER]).token)
        for claim in ("sub", "iss", "iat", "nbf", "exp", "jti", "typ"):
            assert claim in payload
        assert payload["typ"] == "access"
        assert payload["exp"] - payload["iat"] == 15 * 60

    def test_each_token_has_unique_jti(self, codec, user):
        first = codec.issue_access(user, [Role.USER])
        second = codec.issue_access(user, [Role.USER])
        assert first.jti != second.jti

    def test_valid_until_one_second_before_expiry(self, codec, clock, user):
        issued = codec.issue_access(user, [Role.USER])
        clock.advance(minutes=15, seconds=-1)
        assert codec.validate(issued.token, TokenKind.ACCESS).user_id == user.id

    def test_expired_exactly_at_exp(self, codec, clock, user):
        """A token is expired once the clock reaches ``exp``."""
        issued = codec.issue_access(user, [Role.USER])
        clock.advance(minutes=15)
        with pytest.raises(TokenInvalidError):
            codec.validate(issued.token, TokenKind.ACCESS)

    def test_not_yet_valid_before_nbf(self, codec, clock, user):
        issued = codec.issue_access(user, [Role.USER])
        clock.advance(seconds=-5)
        with pytest.raises(TokenInvalidError):
            codec.validate(issued.token, TokenKind.ACCESS)


class TestRefreshTokens:
    def test_round_trip(self, codec, user):
        issued = codec.issue_refresh(user.id)
        claims = codec.validate(issued.token, TokenKind.REFRESH)
        assert isinstance(claims, RefreshClaims)
        assert claims.user_id == user.id
        assert issued.expires_at - issued.issued_at == timedelta(days=7)

    def test_refresh_token_rejected_as_access(self, codec, user):
        issued = codec.issue_refresh(user.id)
        with pytest.raises(TokenInvalidError):
            codec.validate(issued.token, TokenKind.ACCESS)

    def test_access_token_rejected_as_refresh(self, codec, user):
        issued = codec.issue_access(user, [Role.USER])
        with pytest.raises(TokenInvalidError):
            codec.validate(issued.token, TokenKind.REFRESH)


class TestRejection:
    def test_wrong_signing_secret(self, codec, clock, user):
        other = TokenCodec("other-access", "other-refresh", "authcore-test", clock=clock)
        issued = other.issue_access(user, [Role.USER])
        with pytest.raises(TokenInvalidError):
            codec.validate(issued.token, TokenKind.ACCESS)

    def test_wrong_issuer(self, codec, clock, user):
        other = TokenCodec(ACCESS_SECRET, REFRESH_SECRET, "someone-else", clock=clock)
        issued = other.issue_access(user, [Role.USER])
        with pytest.raises(TokenInvalidError):
            codec.validate(issued.token, TokenKind.ACCESS)

    def test_tampered_payload(self, codec, user):
        issued = codec.issue_access(user, [Role.USER])
        header, _, signature = issued.token.split(".")
        payload = _payload(issued.token)
        payload["roles"] = ["admin"]
        forged = f"{header}.{_b64(payload)}.{signature}"
        with pytest.raises(TokenInvalidError):
            codec.validate(forged, TokenKind.ACCESS)

    def test_alg_none_rejected(self, codec, user):
        """Unsigned tokens are refused before any signature check."""
        payload = _payload(codec.issue_access(user, [Role.USER]).token)
        unsigned = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(payload)}."
        with pytest.raises(TokenInvalidError):
            codec.validate(unsigned, TokenKind.ACCESS)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.##"])
    def test_malformed_tokens(self, codec, token):
        with pytest.raises(TokenInvalidError):
            codec.validate(token, TokenKind.ACCESS)

    def test_non_ascii_signature(self, codec, user):
        header, payload, _ = codec.issue_access(user, [Role.USER]).token.split(".")
        with pytest.raises(TokenInvalidError):
            codec.validate(f"{header}.{payload}.sigñature", TokenKind.ACCESS)


class TestUnverifiedSubject:
    def test_reads_subject_without_verification(self, codec, user):
        issued = codec.issue_access(user, [Role.USER])
        assert TokenCodec.extract_unverified_subject(issued.token) == user.id

    def test_forged_subject_is_returned_but_never_validates(self, codec):
        forged = f"{_b64({'alg': 'none'})}.{_b64({'sub': 'mallory'})}."
        assert TokenCodec.extract_unverified_subject(forged) == "mallory"
        with pytest.raises(TokenInvalidError):
            codec.validate(forged, TokenKind.ACCESS)

    def test_garbage_returns_none(self):
        assert TokenCodec.extract_unverified_subject("garbage") is None
        assert TokenCodec.extract_unverified_subject("a.b.c") is None
