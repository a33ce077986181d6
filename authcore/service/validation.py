from __future__ import annotations

import re
import unicodedata

from authcore.service.errors import ValidationError

_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_USERNAME_RE = re.compile(r"[a-zA-Z0-9_]{3,30}")

MAX_EMAIL_LENGTH = 254
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_DISPLAY_NAME_LENGTH = 100


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> str:
    """Return the normalized address or raise ``ValidationError``."""
    normalized = normalize_email(email)
    if not normalized or len(normalized) > MAX_EMAIL_LENGTH:
        raise ValidationError("invalid email format", detail={"field": "email"})
    if not _EMAIL_RE.fullmatch(normalized):
        raise ValidationError("invalid email format", detail={"field": "email"})
    return normalized


def validate_username(username: str) -> str:
    candidate = (username or "").strip()
    if not _USERNAME_RE.fullmatch(candidate) or candidate.isdigit():
        raise ValidationError(
            "username must be 3-30 letters, digits or underscores and not only digits",
            detail={"field": "username"},
        )
    return candidate


def validate_display_name(display_name: str) -> str:
    candidate = (display_name or "").strip()
    if not candidate or len(candidate) > MAX_DISPLAY_NAME_LENGTH:
        raise ValidationError(
            "display name must be 1-100 characters", detail={"field": "display_name"}
        )
    return candidate


def validate_password(password: str) -> str:
    """Enforce the password policy; the password itself is returned unchanged."""
    if not isinstance(password, str) or not (
        MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH
    ):
        raise ValidationError(
            "password must be 8-128 characters", detail={"field": "password"}
        )
    has_upper = has_lower = has_digit = has_special = False
    for char in password:
        category = unicodedata.category(char)
        if char.isupper():
            has_upper = True
        elif char.islower():
            has_lower = True
        elif category.startswith("N"):
            has_digit = True
        elif category[0] in ("P", "S"):
            has_special = True
    if not (has_upper and has_lower and has_digit and has_special):
        raise ValidationError(
            "password must contain upper and lower case letters, a digit and a symbol",
            detail={"field": "password"},
        )
    return password


def validate_registration(
    email: str, username: str, display_name: str, password: str
) -> tuple[str, str, str]:
    """Validate all registration fields; returns normalized (email, username, display_name)."""
    normalized_email = validate_email(email)
    normalized_username = validate_username(username)
    normalized_display = validate_display_name(display_name)
    validate_password(password)
    return normalized_email, normalized_username, normalized_display
