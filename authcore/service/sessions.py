from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, ContextManager, List, Optional, Protocol

from authcore.logging import get_logger
from authcore.service.errors import (
    ServiceError,
    TokenInvalidError,
    TokenNotFoundError,
    translate_store_errors,
)
from authcore.storage.errors import RecordNotFound
from authcore.storage.models import (
    IssuedRefresh,
    RefreshSession,
    digest_secret,
    generate_secret,
    utcnow,
)

logger = get_logger(__name__)


class RefreshSessionStore(Protocol):
    def atomic(self) -> ContextManager[object]:
        ...

    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        ...

    def get_refresh_session_by_hash(self, secret_hash: str) -> Optional[RefreshSession]:
        ...

    def list_refresh_sessions(self, user_id: str) -> List[RefreshSession]:
        ...

    def revoke_refresh_session(self, session_id: str) -> RefreshSession:
        ...

    def delete_refresh_sessions(
        self, user_id: str, *, expired_before: Optional[datetime] = None
    ) -> int:
        ...


class RefreshSessionManager:
    """Opaque, store-verified refresh sessions.

    A session is usable while it is neither revoked nor expired. Revocation
    is permanent; expiry is derived from the clock on every check.
    """

    def __init__(
        self,
        store: RefreshSessionStore,
        *,
        ttl: timedelta = timedelta(days=7),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock or utcnow

    def issue(self, user_id: str) -> IssuedRefresh:
        with translate_store_errors("refresh_session_issue", user_id=user_id):
            issued = self._create(user_id)
        logger.info(
            "refresh_session_issued", user_id=user_id, session_id=issued.session.id
        )
        return issued

    def validate(self, secret: str) -> RefreshSession:
        with translate_store_errors("refresh_session_lookup"):
            session = self.store.get_refresh_session_by_hash(digest_secret(secret or ""))
        return self._check(session)

    def rotate(self, old_secret: str) -> IssuedRefresh:
        """Replace ``old_secret`` with a new session in one transaction.

        The old row is revoked with a conditional update, so when two callers
        rotate the same secret concurrently exactly one wins and the other
        gets ``TokenInvalidError``. A failure anywhere leaves the old session
        untouched.
        """
        with translate_store_errors("refresh_session_rotate"):
            with self.store.atomic():
                old = self._check(
                    self.store.get_refresh_session_by_hash(digest_secret(old_secret or ""))
                )
                self.store.revoke_refresh_session(old.id)
                issued = self._create(old.user_id)
        logger.info(
            "refresh_session_rotated",
            user_id=old.user_id,
            old_session_id=old.id,
            session_id=issued.session.id,
        )
        return issued

    def revoke(self, secret: str) -> RefreshSession:
        """Revoke one session; revoking an already revoked session is a no-op."""
        with translate_store_errors("refresh_session_revoke"):
            session = self.store.get_refresh_session_by_hash(digest_secret(secret or ""))
            if session is None:
                raise TokenNotFoundError("refresh token not found")
            if session.revoked:
                return session
            try:
                session = self.store.revoke_refresh_session(session.id)
            except RecordNotFound:
                # Lost a race with another revocation; the end state is the same
                session = self.store.get_refresh_session_by_hash(session.secret_hash) or session
        logger.info("refresh_session_revoked", user_id=session.user_id, session_id=session.id)
        return session

    def revoke_all(self, user_id: str) -> int:
        """Revoke every active session for ``user_id`` and return how many were revoked.

        Each session is revoked on its own; a failure on one is logged and the
        rest are still processed.
        """
        with translate_store_errors("refresh_session_list", user_id=user_id):
            sessions = self.store.list_refresh_sessions(user_id)
        revoked = 0
        for session in sessions:
            if session.revoked:
                continue
            try:
                with translate_store_errors(
                    "refresh_session_revoke", user_id=user_id, session_id=session.id
                ):
                    self.store.revoke_refresh_session(session.id)
            except TokenInvalidError:
                # Revoked concurrently
                continue
            except ServiceError as exc:
                logger.error(
                    "refresh_session_revoke_failed",
                    user_id=user_id,
                    session_id=session.id,
                    error=exc.message,
                )
                continue
            revoked += 1
        logger.info("refresh_sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    def list_active(self, user_id: str) -> List[RefreshSession]:
        now = self._clock()
        with translate_store_errors("refresh_session_list", user_id=user_id):
            sessions = self.store.list_refresh_sessions(user_id)
        return [s for s in sessions if s.is_valid(now)]

    def purge_expired(self, user_id: str) -> int:
        """Delete sessions for ``user_id`` that are already past expiry."""
        with translate_store_errors("refresh_session_purge", user_id=user_id):
            removed = self.store.delete_refresh_sessions(
                user_id, expired_before=self._clock()
            )
        if removed:
            logger.info("refresh_sessions_purged", user_id=user_id, count=removed)
        return removed

    def _create(self, user_id: str) -> IssuedRefresh:
        secret = generate_secret()
        session = RefreshSession.new(user_id, secret, self.ttl, now=self._clock())
        self.store.create_refresh_session(session)
        return IssuedRefresh(secret=secret, session=session)

    def _check(self, session: Optional[RefreshSession]) -> RefreshSession:
        if session is None:
            raise TokenNotFoundError("refresh token not found")
        if session.revoked:
            raise TokenInvalidError("refresh token revoked")
        if session.is_expired(self._clock()):
            raise TokenInvalidError("refresh token expired")
        return session
