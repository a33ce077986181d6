"""Input validation rules for registration and password changes."""

import pytest

from authcore.service.errors import ValidationError
from authcore.service.validation import (
    validate_display_name,
    validate_email,
    validate_password,
    validate_registration,
    validate_username,
)


class TestEmail:
    def test_normalizes_case_and_whitespace(self):
        assert validate_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize(
        "email",
        ["", "alice", "alice@", "@example.com", "alice@example", "a b@example.com"],
    )
    def test_rejects_malformed(self, email):
        with pytest.raises(ValidationError) as exc:
            validate_email(email)
        assert exc.value.detail == {"field": "email"}

    def test_rejects_overlong(self):
        with pytest.raises(ValidationError):
            validate_email("a" * 250 + "@example.com")


class TestUsername:
    @pytest.mark.parametrize("username", ["bob", "alice_01", "A" * 30])
    def test_accepts(self, username):
        assert validate_username(username) == username

    @pytest.mark.parametrize("username", ["ab", "x" * 31, "has space", "dash-name", "12345"])
    def test_rejects(self, username):
        with pytest.raises(ValidationError):
            validate_username(username)


class TestDisplayName:
    def test_trims(self):
        assert validate_display_name("  Alice  ") == "Alice"

    @pytest.mark.parametrize("name", ["", "   ", "x" * 101])
    def test_rejects(self, name):
        with pytest.raises(ValidationError):
            validate_display_name(name)


class TestPasswordPolicy:
    @pytest.mark.parametrize("password", ["Passw0rd!", "Ünïcode9#", "Aa1!" * 32])
    def test_accepts(self, password):
        assert validate_password(password) == password

    @pytest.mark.parametrize(
        "password",
        [
            "Sh0rt!",  # too short
            "Aa1!" * 32 + "x",  # too long
            "password1!",  # no upper
            "PASSWORD1!",  # no lower
            "Password!!",  # no digit
            "Password11",  # no symbol
        ],
    )
    def test_rejects(self, password):
        with pytest.raises(ValidationError) as exc:
            validate_password(password)
        assert exc.value.detail == {"field": "password"}


def test_registration_returns_normalized_fields():
    assert validate_registration(
        " Bob@Example.com", "bob", " Bob ", "Passw0rd!"
    ) == ("bob@example.com", "bob", "Bob")


def test_registration_reports_first_bad_field():
    with pytest.raises(ValidationError) as exc:
        validate_registration("bob@example.com", "b", "Bob", "weak")
    assert exc.value.detail == {"field": "username"}
