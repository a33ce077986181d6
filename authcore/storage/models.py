"""Persistent records owned by a user identity.

Constructors rebuild records from stored rows and are meant for store
adapters only. Fresh records come from the ``new`` factories; every later
state change goes through a store mutator so callers cannot flip flags such
as ``verified`` or ``revoked`` on an object in hand.
"""

from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def digest_secret(secret: str) -> str:
    """SHA-256 hex digest used to store and look up opaque secrets."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_secret() -> str:
    """32 random bytes, hex encoded, for refresh and one-time secrets."""
    return secrets.token_hex(32)


class Role(str, Enum):
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass(frozen=True)
class User:
    id: str
    email: str
    username: str
    display_name: str
    verified: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def new(cls, email: str, username: str, display_name: str) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            username=username,
            display_name=display_name,
            verified=False,
            is_active=True,
            created_at=now,
            updated_at=now,
        )


@dataclass(frozen=True)
class Credential:
    user_id: str
    password_hash: str
    created_at: datetime
    updated_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def new(cls, user_id: str, password_hash: str) -> "Credential":
        now = utcnow()
        return cls(
            user_id=user_id,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )


@dataclass(frozen=True)
class RoleGrant:
    id: str
    user_id: str
    role: Role
    granted_at: datetime
    is_active: bool = True

    @classmethod
    def new(cls, user_id: str, role: Role) -> "RoleGrant":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            role=Role(role),
            granted_at=utcnow(),
        )


@dataclass(frozen=True)
class RefreshSession:
    id: str
    user_id: str
    secret_hash: str
    expires_at: datetime
    created_at: datetime
    revoked: bool = False

    @classmethod
    def new(
        cls, user_id: str, secret: str, ttl: timedelta, *, now: Optional[datetime] = None
    ) -> "RefreshSession":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            secret_hash=digest_secret(secret),
            expires_at=created + ttl,
            created_at=created,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)


@dataclass(frozen=True)
class OneTimeToken:
    id: str
    user_id: str
    purpose: TokenPurpose
    secret_hash: str
    expires_at: datetime
    created_at: datetime
    used: bool = False

    @classmethod
    def new(
        cls,
        user_id: str,
        purpose: TokenPurpose,
        secret: str,
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> "OneTimeToken":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            purpose=TokenPurpose(purpose),
            secret_hash=digest_secret(secret),
            expires_at=created + ttl,
            created_at=created,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return not self.used and not self.is_expired(now)


@dataclass(frozen=True)
class IssuedRefresh:
    """A freshly issued refresh session together with its plaintext secret."""

    secret: str
    session: RefreshSession


@dataclass(frozen=True)
class IssuedOneTimeToken:
    """A freshly issued one-time token together with its plaintext secret."""

    secret: str
    token: OneTimeToken
