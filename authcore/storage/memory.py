from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, RecordNotFound, StoreTimeout
from authcore.storage.models import (
    Credential,
    OneTimeToken,
    RefreshSession,
    Role,
    RoleGrant,
    TokenPurpose,
    User,
    utcnow,
)


class MemoryStore:
    """In-process credential store with optional JSON persistence.

    All reads and writes hold ``_data_lock``. ``atomic()`` keeps the lock for
    the whole block and restores a snapshot if the block raises, so callers
    get the same all-or-nothing behaviour as a database transaction.
    """

    def __init__(
        self, fs_root: Optional[str] = None, *, lock_timeout: float = 5.0
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Credential] = {}
        self.role_grants: Dict[str, RoleGrant] = {}
        self.refresh_sessions: Dict[str, RefreshSession] = {}
        self.one_time_tokens: Dict[str, OneTimeToken] = {}
        # RLock so store methods can be called from inside atomic()
        self._data_lock = threading.RLock()
        self._lock_timeout = lock_timeout
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- locking / transactions -------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._data_lock.acquire(timeout=self._lock_timeout):
            raise StoreTimeout(
                "timed out waiting for store lock",
                {"timeout_seconds": self._lock_timeout},
            )
        try:
            yield
        finally:
            self._data_lock.release()

    def _snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            "users": copy.copy(self.users),
            "credentials": copy.copy(self.credentials),
            "role_grants": copy.copy(self.role_grants),
            "refresh_sessions": copy.copy(self.refresh_sessions),
            "one_time_tokens": copy.copy(self.one_time_tokens),
        }

    def _restore(self, snapshot: Dict[str, Dict[str, Any]]) -> None:
        for name, table in snapshot.items():
            setattr(self, name, table)

    @contextmanager
    def atomic(self) -> Iterator["MemoryStore"]:
        """Run the block as one unit; nested blocks behave like savepoints."""
        with self._locked():
            # Records are frozen, so a shallow copy of each table is a full snapshot
            snapshot = self._snapshot()
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._tx_depth -= 1
            if self._tx_depth == 0:
                try:
                    self._persist_state()
                except Exception:
                    self._restore(snapshot)
                    raise

    def verify_connection(self) -> None:
        with self._locked():
            pass

    # -- users --------------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self.atomic():
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            if self._find_user_by_email(user.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self._find_user_by_username(user.username):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._locked():
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._locked():
            return self._find_user_by_email(email)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._locked():
            return self._find_user_by_username(username)

    def email_exists(self, email: str) -> bool:
        return self.get_user_by_email(email) is not None

    def username_exists(self, username: str) -> bool:
        return self.get_user_by_username(username) is not None

    def update_user(
        self,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        verified: Optional[bool] = None,
        is_active: Optional[bool] = None,
    ) -> User:
        with self.atomic():
            user = self.users.get(user_id)
            if user is None:
                raise RecordNotFound("user not found", {"user_id": user_id})
            changes: Dict[str, Any] = {"updated_at": utcnow()}
            if display_name is not None:
                changes["display_name"] = display_name
            if verified is not None:
                changes["verified"] = verified
            if is_active is not None:
                changes["is_active"] = is_active
            updated = replace(user, **changes)
            self.users[user_id] = updated
            return updated

    def _find_user_by_email(self, email: str) -> Optional[User]:
        needle = email.casefold()
        return next(
            (u for u in self.users.values() if u.email.casefold() == needle), None
        )

    def _find_user_by_username(self, username: str) -> Optional[User]:
        needle = username.casefold()
        return next(
            (u for u in self.users.values() if u.username.casefold() == needle), None
        )

    # -- credentials ----------------------------------------------------------

    def create_credential(self, credential: Credential) -> Credential:
        with self.atomic():
            if credential.user_id not in self.users:
                raise ConstraintViolation("unknown user", {"field": "user_id"})
            if credential.user_id in self.credentials:
                raise ConstraintViolation(
                    "credential already exists", {"field": "user_id"}
                )
            self.credentials[credential.user_id] = credential
            return credential

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._locked():
            return self.credentials.get(user_id)

    def update_credential(
        self,
        user_id: str,
        *,
        password_hash: Optional[str] = None,
        last_login_at: Optional[datetime] = None,
    ) -> Credential:
        with self.atomic():
            credential = self.credentials.get(user_id)
            if credential is None:
                raise RecordNotFound("credential not found", {"user_id": user_id})
            changes: Dict[str, Any] = {}
            if password_hash is not None:
                changes["password_hash"] = password_hash
                changes["updated_at"] = utcnow()
            if last_login_at is not None:
                changes["last_login_at"] = last_login_at
            updated = replace(credential, **changes)
            self.credentials[user_id] = updated
            return updated

    # -- role grants ----------------------------------------------------------

    def create_role_grant(self, grant: RoleGrant) -> RoleGrant:
        with self.atomic():
            if grant.user_id not in self.users:
                raise ConstraintViolation("unknown user", {"field": "user_id"})
            if any(
                g.is_active and g.user_id == grant.user_id and g.role == grant.role
                for g in self.role_grants.values()
            ):
                raise ConstraintViolation("role already granted", {"field": "role"})
            self.role_grants[grant.id] = grant
            return grant

    def list_role_grants(
        self, user_id: str, *, active_only: bool = True
    ) -> List[RoleGrant]:
        with self._locked():
            grants = [g for g in self.role_grants.values() if g.user_id == user_id]
            if active_only:
                grants = [g for g in grants if g.is_active]
            return sorted(grants, key=lambda g: g.granted_at)

    def deactivate_role_grant(self, grant_id: str) -> RoleGrant:
        with self.atomic():
            grant = self.role_grants.get(grant_id)
            if grant is None or not grant.is_active:
                raise RecordNotFound("active role grant not found", {"grant_id": grant_id})
            updated = replace(grant, is_active=False)
            self.role_grants[grant_id] = updated
            return updated

    # -- refresh sessions -----------------------------------------------------

    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        with self.atomic():
            if session.user_id not in self.users:
                raise ConstraintViolation("unknown user", {"field": "user_id"})
            if any(
                s.secret_hash == session.secret_hash
                for s in self.refresh_sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh secret collision", {"field": "secret_hash"}
                )
            self.refresh_sessions[session.id] = session
            return session

    def get_refresh_session_by_hash(self, secret_hash: str) -> Optional[RefreshSession]:
        with self._locked():
            return next(
                (
                    s
                    for s in self.refresh_sessions.values()
                    if s.secret_hash == secret_hash
                ),
                None,
            )

    def list_refresh_sessions(self, user_id: str) -> List[RefreshSession]:
        with self._locked():
            sessions = [
                s for s in self.refresh_sessions.values() if s.user_id == user_id
            ]
            return sorted(sessions, key=lambda s: s.created_at)

    def revoke_refresh_session(self, session_id: str) -> RefreshSession:
        """Revoke a session that is currently not revoked."""
        with self.atomic():
            session = self.refresh_sessions.get(session_id)
            if session is None or session.revoked:
                raise RecordNotFound(
                    "unrevoked refresh session not found", {"session_id": session_id}
                )
            updated = replace(session, revoked=True)
            self.refresh_sessions[session_id] = updated
            return updated

    def delete_refresh_sessions(
        self, user_id: str, *, expired_before: Optional[datetime] = None
    ) -> int:
        with self.atomic():
            doomed = [
                s.id
                for s in self.refresh_sessions.values()
                if s.user_id == user_id
                and (expired_before is None or s.expires_at <= expired_before)
            ]
            for session_id in doomed:
                del self.refresh_sessions[session_id]
            return len(doomed)

    # -- one-time tokens ------------------------------------------------------

    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        with self.atomic():
            if token.user_id not in self.users:
                raise ConstraintViolation("unknown user", {"field": "user_id"})
            if any(
                t.secret_hash == token.secret_hash
                for t in self.one_time_tokens.values()
            ):
                raise ConstraintViolation(
                    "one-time secret collision", {"field": "secret_hash"}
                )
            self.one_time_tokens[token.id] = token
            return token

    def get_one_time_token_by_hash(
        self, purpose: TokenPurpose, secret_hash: str
    ) -> Optional[OneTimeToken]:
        with self._locked():
            return next(
                (
                    t
                    for t in self.one_time_tokens.values()
                    if t.purpose == purpose and t.secret_hash == secret_hash
                ),
                None,
            )

    def mark_one_time_token_used(self, token_id: str) -> OneTimeToken:
        """Mark a token used; only succeeds while it is still unused."""
        with self.atomic():
            token = self.one_time_tokens.get(token_id)
            if token is None or token.used:
                raise RecordNotFound("unused token not found", {"token_id": token_id})
            updated = replace(token, used=True)
            self.one_time_tokens[token_id] = updated
            return updated

    # -- persistence ------------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
            "role_grants": [
                self._serialize_role_grant(g) for g in self.role_grants.values()
            ],
            "refresh_sessions": [
                self._serialize_refresh_session(s)
                for s in self.refresh_sessions.values()
            ],
            "one_time_tokens": [
                self._serialize_one_time_token(t)
                for t in self.one_time_tokens.values()
            ],
        }
        path = self._state_path()
        # Write-then-rename so a crash never leaves a truncated state file
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize_user(u) for u in data.get("users", [])
        }
        self.credentials = {
            c["user_id"]: self._deserialize_credential(c)
            for c in data.get("credentials", [])
        }
        self.role_grants = {
            g["id"]: self._deserialize_role_grant(g)
            for g in data.get("role_grants", [])
        }
        self.refresh_sessions = {
            s["id"]: self._deserialize_refresh_session(s)
            for s in data.get("refresh_sessions", [])
        }
        self.one_time_tokens = {
            t["id"]: self._deserialize_one_time_token(t)
            for t in data.get("one_time_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_sessions=len(self.refresh_sessions),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "display_name": user.display_name,
            "verified": user.verified,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            username=data["username"],
            display_name=data.get("display_name", data["username"]),
            verified=bool(data.get("verified", False)),
            is_active=bool(data.get("is_active", True)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_credential(self, credential: Credential) -> dict:
        return {
            "user_id": credential.user_id,
            "password_hash": credential.password_hash,
            "created_at": self._serialize_datetime(credential.created_at),
            "updated_at": self._serialize_datetime(credential.updated_at),
            "last_login_at": self._serialize_datetime(credential.last_login_at),
        }

    def _deserialize_credential(self, data: dict) -> Credential:
        return Credential(
            user_id=data["user_id"],
            password_hash=data["password_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_role_grant(self, grant: RoleGrant) -> dict:
        return {
            "id": grant.id,
            "user_id": grant.user_id,
            "role": grant.role.value,
            "granted_at": self._serialize_datetime(grant.granted_at),
            "is_active": grant.is_active,
        }

    def _deserialize_role_grant(self, data: dict) -> RoleGrant:
        return RoleGrant(
            id=data["id"],
            user_id=data["user_id"],
            role=Role(data["role"]),
            granted_at=self._deserialize_datetime(data["granted_at"]),
            is_active=bool(data.get("is_active", True)),
        )

    def _serialize_refresh_session(self, session: RefreshSession) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "secret_hash": session.secret_hash,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "revoked": session.revoked,
        }

    def _deserialize_refresh_session(self, data: dict) -> RefreshSession:
        return RefreshSession(
            id=data["id"],
            user_id=data["user_id"],
            secret_hash=data["secret_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            revoked=bool(data.get("revoked", False)),
        )

    def _serialize_one_time_token(self, token: OneTimeToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "purpose": token.purpose.value,
            "secret_hash": token.secret_hash,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "used": token.used,
        }

    def _deserialize_one_time_token(self, data: dict) -> OneTimeToken:
        return OneTimeToken(
            id=data["id"],
            user_id=data["user_id"],
            purpose=TokenPurpose(data["purpose"]),
            secret_hash=data["secret_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            used=bool(data.get("used", False)),
        )
