from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Tuple, Union

from authcore.logging import get_logger
from authcore.service.errors import TokenInvalidError
from authcore.storage.models import Role, User, utcnow

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    kind: TokenKind
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    username: str
    display_name: str
    roles: Tuple[Role, ...]
    verified: bool
    issuer: str
    jti: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    issuer: str
    jti: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime


_REQUIRED_CLAIMS = {
    TokenKind.ACCESS: ("sub", "iss", "iat", "nbf", "exp", "jti", "email", "username", "roles"),
    TokenKind.REFRESH: ("sub", "iss", "iat", "nbf", "exp", "jti"),
}


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _from_ts(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenCodec:
    """Mint and validate HS256 access and refresh tokens.

    Access and refresh tokens are signed with different secrets so that a
    leaked access key cannot forge refresh tokens, and each token carries a
    ``typ`` claim so one kind is never accepted in place of the other.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        *,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Optional[Clock] = None,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("signing secrets must be non-empty")
        if hmac.compare_digest(access_secret.encode(), refresh_secret.encode()):
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {
            TokenKind.ACCESS: access_secret.encode(),
            TokenKind.REFRESH: refresh_secret.encode(),
        }
        self._ttls = {TokenKind.ACCESS: access_ttl, TokenKind.REFRESH: refresh_ttl}
        self.issuer = issuer
        self._clock = clock or utcnow

    def issue_access(self, user: User, roles: Iterable[Role]) -> IssuedToken:
        return self._issue(
            TokenKind.ACCESS,
            user.id,
            {
                "email": user.email,
                "username": user.username,
                "display_name": user.display_name,
                "roles": [Role(r).value for r in roles],
                "verified": user.verified,
            },
        )

    def issue_refresh(self, user_id: str) -> IssuedToken:
        return self._issue(TokenKind.REFRESH, user_id, {})

    def validate(
        self, token: str, kind: TokenKind
    ) -> Union[AccessClaims, RefreshClaims]:
        kind = TokenKind(kind)
        payload = self._decode(token, kind)

        missing = [c for c in _REQUIRED_CLAIMS[kind] if c not in payload]
        if missing:
            logger.warning("jwt_missing_claims", kind=kind.value, claims=missing)
            raise TokenInvalidError("token is missing required claims")
        if payload.get("typ") != kind.value:
            logger.warning("jwt_wrong_type", expected=kind.value, got=payload.get("typ"))
            raise TokenInvalidError("token has the wrong type")
        if payload["iss"] != self.issuer:
            raise TokenInvalidError("token issuer mismatch")

        try:
            issued_at = _from_ts(payload["iat"])
            not_before = _from_ts(payload["nbf"])
            expires_at = _from_ts(payload["exp"])
        except (TypeError, ValueError, OverflowError) as exc:
            raise TokenInvalidError("token has malformed timestamps") from exc

        now = self._clock()
        if now >= expires_at:
            raise TokenInvalidError("token expired")
        if now < not_before:
            raise TokenInvalidError("token not yet valid")

        if kind is TokenKind.REFRESH:
            return RefreshClaims(
                user_id=str(payload["sub"]),
                issuer=payload["iss"],
                jti=str(payload["jti"]),
                issued_at=issued_at,
                not_before=not_before,
                expires_at=expires_at,
            )

        try:
            roles = tuple(Role(r) for r in payload["roles"])
        except (TypeError, ValueError) as exc:
            raise TokenInvalidError("token carries unknown roles") from exc
        return AccessClaims(
            user_id=str(payload["sub"]),
            email=payload["email"],
            username=payload["username"],
            display_name=payload.get("display_name", payload["username"]),
            roles=roles,
            verified=bool(payload.get("verified", False)),
            issuer=payload["iss"],
            jti=str(payload["jti"]),
            issued_at=issued_at,
            not_before=not_before,
            expires_at=expires_at,
        )

    @staticmethod
    def extract_unverified_subject(token: str) -> Optional[str]:
        """Return the ``sub`` claim WITHOUT checking signature, issuer or expiry.

        NOT AUTHORITATIVE. Anyone can craft a token with any subject; the value
        is only fit for log correlation and diagnostics. Never use it to decide
        who the caller is or what they may do; use ``validate`` for that.
        """
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError, AttributeError):
            return None
        if not isinstance(payload, dict):
            return None
        sub = payload.get("sub")
        return str(sub) if sub is not None else None

    def _issue(self, kind: TokenKind, subject: str, extra: dict[str, Any]) -> IssuedToken:
        now = self._clock()
        iat = int(now.timestamp())
        exp = iat + int(self._ttls[kind].total_seconds())
        jti = str(uuid.uuid4())
        payload = {
            **extra,
            "sub": subject,
            "iss": self.issuer,
            "iat": iat,
            "nbf": iat,
            "exp": exp,
            "jti": jti,
            "typ": kind.value,
        }
        return IssuedToken(
            token=self._encode(payload, kind),
            kind=kind,
            jti=jti,
            issued_at=_from_ts(iat),
            expires_at=_from_ts(exp),
        )

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        digest = hmac.new(
            self._secrets[kind], signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any], kind: TokenKind) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _decode(self, token: str, kind: TokenKind) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenInvalidError("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise TokenInvalidError("malformed token") from exc

        # Reject anything but HS256 before touching the signature (blocks alg=none)
        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError as exc:
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("malformed token header") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalidError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalidError("token signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("malformed token payload") from exc
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed token payload")
        return payload
