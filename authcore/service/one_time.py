from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, ContextManager, Iterator, Optional, Protocol

from authcore.logging import get_logger
from authcore.service.errors import (
    TokenInvalidError,
    TokenNotFoundError,
    translate_store_errors,
)
from authcore.storage.models import (
    IssuedOneTimeToken,
    OneTimeToken,
    TokenPurpose,
    digest_secret,
    generate_secret,
    utcnow,
)

logger = get_logger(__name__)


class OneTimeTokenStore(Protocol):
    def atomic(self) -> ContextManager[object]:
        ...

    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        ...

    def get_one_time_token_by_hash(
        self, purpose: TokenPurpose, secret_hash: str
    ) -> Optional[OneTimeToken]:
        ...

    def mark_one_time_token_used(self, token_id: str) -> OneTimeToken:
        ...


class OneTimeTokenManager:
    """Single-use tokens for one purpose (email verification or password reset)."""

    def __init__(
        self,
        store: OneTimeTokenStore,
        purpose: TokenPurpose,
        ttl: timedelta,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.purpose = TokenPurpose(purpose)
        self.ttl = ttl
        self._clock = clock or utcnow

    def issue(self, user_id: str) -> IssuedOneTimeToken:
        secret = generate_secret()
        token = OneTimeToken.new(
            user_id, self.purpose, secret, self.ttl, now=self._clock()
        )
        with translate_store_errors(
            "one_time_token_issue", user_id=user_id, purpose=self.purpose.value
        ):
            self.store.create_one_time_token(token)
        logger.info(
            "one_time_token_issued",
            user_id=user_id,
            purpose=self.purpose.value,
            token_id=token.id,
        )
        return IssuedOneTimeToken(secret=secret, token=token)

    def peek(self, secret: str) -> OneTimeToken:
        """Validate ``secret`` without consuming it."""
        with translate_store_errors("one_time_token_lookup", purpose=self.purpose.value):
            record = self.store.get_one_time_token_by_hash(
                self.purpose, digest_secret(secret or "")
            )
        return self._check(record)

    @contextmanager
    def consume(self, secret: str) -> Iterator[OneTimeToken]:
        """Validate and consume ``secret`` around the caller's side effect.

        The caller's block runs inside the same store transaction as the
        conditional "mark used" update. If the block raises, nothing commits
        and the token can be used again; if another consumer got there first
        the update affects no rows and ``TokenInvalidError`` is raised.
        """
        with translate_store_errors("one_time_token_consume", purpose=self.purpose.value):
            with self.store.atomic():
                record = self._check(
                    self.store.get_one_time_token_by_hash(
                        self.purpose, digest_secret(secret or "")
                    )
                )
                yield record
                self.store.mark_one_time_token_used(record.id)
        logger.info(
            "one_time_token_consumed",
            user_id=record.user_id,
            purpose=self.purpose.value,
            token_id=record.id,
        )

    def _check(self, record: Optional[OneTimeToken]) -> OneTimeToken:
        if record is None:
            raise TokenNotFoundError("token not found")
        if record.used:
            raise TokenInvalidError("token already used")
        if record.is_expired(self._clock()):
            raise TokenInvalidError("token expired")
        return record
