from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.errors import (
    ConstraintViolation,
    RecordNotFound,
    StoreTimeout,
    StoreUnavailable,
)
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

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS auth_user (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    username TEXT NOT NULL,
    display_name TEXT NOT NULL,
    verified BOOLEAN NOT NULL DEFAULT false,
    is_active BOOLEAN NOT NULL DEFAULT true,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS auth_user_email_key ON auth_user (lower(email));
CREATE UNIQUE INDEX IF NOT EXISTS auth_user_username_key ON auth_user (lower(username));

CREATE TABLE IF NOT EXISTS auth_credential (
    user_id TEXT PRIMARY KEY REFERENCES auth_user(id) ON DELETE CASCADE,
    password_hash TEXT NOT NULL,
    last_login_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS auth_role_grant (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
    role TEXT NOT NULL CHECK (role IN ('user', 'moderator', 'admin')),
    granted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    is_active BOOLEAN NOT NULL DEFAULT true
);
CREATE UNIQUE INDEX IF NOT EXISTS auth_role_grant_active_key
    ON auth_role_grant (user_id, role) WHERE is_active;

CREATE TABLE IF NOT EXISTS auth_refresh_session (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
    secret_hash TEXT NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    revoked BOOLEAN NOT NULL DEFAULT false
);
CREATE UNIQUE INDEX IF NOT EXISTS auth_refresh_session_secret_hash_key
    ON auth_refresh_session (secret_hash);
CREATE INDEX IF NOT EXISTS auth_refresh_session_user_idx
    ON auth_refresh_session (user_id);

CREATE TABLE IF NOT EXISTS auth_one_time_token (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
    purpose TEXT NOT NULL CHECK (purpose IN ('email_verification', 'password_reset')),
    secret_hash TEXT NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    used BOOLEAN NOT NULL DEFAULT false
);
CREATE UNIQUE INDEX IF NOT EXISTS auth_one_time_token_secret_hash_key
    ON auth_one_time_token (secret_hash);
"""

# Unique index name -> field reported in ConstraintViolation.detail
_UNIQUE_FIELDS = {
    "auth_user_pkey": "id",
    "auth_user_email_key": "email",
    "auth_user_username_key": "username",
    "auth_credential_pkey": "user_id",
    "auth_role_grant_active_key": "role",
    "auth_refresh_session_secret_hash_key": "secret_hash",
    "auth_one_time_token_secret_hash_key": "secret_hash",
}


class PostgresStore:
    """Postgres-backed credential store.

    Every call checks a connection out of the pool unless an ``atomic()``
    block is open in the current context, in which case the call joins that
    block's connection and transaction.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 5.0,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.timeout = timeout
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(timeout * 1000)}",
            },
        )
        self._tx_conn: ContextVar[Optional[Any]] = ContextVar(
            f"authcore_tx_conn_{id(self)}", default=None
        )
        if ensure_schema:
            self.ensure_schema()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def ensure_schema(self) -> None:
        """Create tables and indexes if they are missing."""
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)
        self.logger.info("postgres_schema_ready")

    # -- connections / transactions -------------------------------------------

    @contextmanager
    def _mapped_errors(self) -> Iterator[None]:
        try:
            yield
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            field = _UNIQUE_FIELDS.get(constraint or "", constraint)
            raise ConstraintViolation(
                f"{field or 'value'} already exists", {"field": field}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("unknown user", {"field": "user_id"}) from exc
        except errors.QueryCanceled as exc:
            raise StoreTimeout(
                "statement timed out", {"timeout_seconds": self.timeout}
            ) from exc
        except PoolTimeout as exc:
            raise StoreTimeout(
                "timed out waiting for a database connection",
                {"timeout_seconds": self.timeout},
            ) from exc
        except errors.OperationalError as exc:
            raise StoreUnavailable("database unavailable") from exc

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        conn = self._tx_conn.get()
        if conn is not None:
            with self._mapped_errors():
                yield conn
            return
        with self._mapped_errors():
            with self.pool.connection() as conn:
                yield conn

    @contextmanager
    def atomic(self) -> Iterator["PostgresStore"]:
        """Run the block in one transaction; nested blocks become savepoints."""
        conn = self._tx_conn.get()
        if conn is not None:
            with self._mapped_errors(), conn.transaction():
                yield self
            return
        with self._mapped_errors():
            with self.pool.connection() as conn:
                token = self._tx_conn.set(conn)
                try:
                    with conn.transaction():
                        yield self
                finally:
                    self._tx_conn.reset(token)

    # -- row mapping ------------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            display_name=row["display_name"],
            verified=bool(row["verified"]),
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _credential_from_row(row: Dict[str, Any]) -> Credential:
        return Credential(
            user_id=str(row["user_id"]),
            password_hash=row["password_hash"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _grant_from_row(row: Dict[str, Any]) -> RoleGrant:
        return RoleGrant(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            role=Role(row["role"]),
            granted_at=row["granted_at"],
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> RefreshSession:
        return RefreshSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            secret_hash=row["secret_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            revoked=bool(row["revoked"]),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> OneTimeToken:
        return OneTimeToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            purpose=TokenPurpose(row["purpose"]),
            secret_hash=row["secret_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            used=bool(row["used"]),
        )

    # -- users ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_user (id, email, username, display_name, verified, is_active, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    user.id,
                    user.email,
                    user.username,
                    user.display_name,
                    user.verified,
                    user.is_active,
                    user.created_at,
                    user.updated_at,
                ),
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE lower(username) = lower(%s)",
                (username,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def email_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM auth_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return row is not None

    def username_exists(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM auth_user WHERE lower(username) = lower(%s)",
                (username,),
            ).fetchone()
        return row is not None

    def update_user(
        self,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        verified: Optional[bool] = None,
        is_active: Optional[bool] = None,
    ) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_user
                SET display_name = COALESCE(%s, display_name),
                    verified = COALESCE(%s, verified),
                    is_active = COALESCE(%s, is_active),
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (display_name, verified, is_active, utcnow(), user_id),
            ).fetchone()
        if not row:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return self._user_from_row(row)

    # -- credentials ------------------------------------------------------------

    def create_credential(self, credential: Credential) -> Credential:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_credential (user_id, password_hash, last_login_at, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    credential.user_id,
                    credential.password_hash,
                    credential.last_login_at,
                    credential.created_at,
                    credential.updated_at,
                ),
            )
        return credential

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def update_credential(
        self,
        user_id: str,
        *,
        password_hash: Optional[str] = None,
        last_login_at: Optional[datetime] = None,
    ) -> Credential:
        assignments: List[str] = []
        params: List[Any] = []
        if password_hash is not None:
            assignments.append("password_hash = %s, updated_at = %s")
            params.extend([password_hash, utcnow()])
        if last_login_at is not None:
            assignments.append("last_login_at = %s")
            params.append(last_login_at)
        if not assignments:
            credential = self.get_credential(user_id)
            if credential is None:
                raise RecordNotFound("credential not found", {"user_id": user_id})
            return credential
        params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE auth_credential SET {', '.join(assignments)} WHERE user_id = %s RETURNING *",
                params,
            ).fetchone()
        if not row:
            raise RecordNotFound("credential not found", {"user_id": user_id})
        return self._credential_from_row(row)

    # -- role grants ------------------------------------------------------------

    def create_role_grant(self, grant: RoleGrant) -> RoleGrant:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_role_grant (id, user_id, role, granted_at, is_active)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (grant.id, grant.user_id, grant.role.value, grant.granted_at, grant.is_active),
            )
        return grant

    def list_role_grants(
        self, user_id: str, *, active_only: bool = True
    ) -> List[RoleGrant]:
        query = "SELECT * FROM auth_role_grant WHERE user_id = %s"
        if active_only:
            query += " AND is_active"
        query += " ORDER BY granted_at"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._grant_from_row(row) for row in rows]

    def deactivate_role_grant(self, grant_id: str) -> RoleGrant:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_role_grant SET is_active = false
                WHERE id = %s AND is_active
                RETURNING *
                """,
                (grant_id,),
            ).fetchone()
        if not row:
            raise RecordNotFound("active role grant not found", {"grant_id": grant_id})
        return self._grant_from_row(row)

    # -- refresh sessions -------------------------------------------------------

    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_refresh_session (id, user_id, secret_hash, expires_at, created_at, revoked)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.user_id,
                    session.secret_hash,
                    session.expires_at,
                    session.created_at,
                    session.revoked,
                ),
            )
        return session

    def get_refresh_session_by_hash(self, secret_hash: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_refresh_session WHERE secret_hash = %s",
                (secret_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_refresh_sessions(self, user_id: str) -> List[RefreshSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_refresh_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def revoke_refresh_session(self, session_id: str) -> RefreshSession:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_refresh_session SET revoked = true
                WHERE id = %s AND NOT revoked
                RETURNING *
                """,
                (session_id,),
            ).fetchone()
        if not row:
            raise RecordNotFound(
                "unrevoked refresh session not found", {"session_id": session_id}
            )
        return self._session_from_row(row)

    def delete_refresh_sessions(
        self, user_id: str, *, expired_before: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            if expired_before is None:
                cur = conn.execute(
                    "DELETE FROM auth_refresh_session WHERE user_id = %s", (user_id,)
                )
            else:
                cur = conn.execute(
                    "DELETE FROM auth_refresh_session WHERE user_id = %s AND expires_at <= %s",
                    (user_id, expired_before),
                )
            return cur.rowcount

    # -- one-time tokens --------------------------------------------------------

    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_one_time_token (id, user_id, purpose, secret_hash, expires_at, created_at, used)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.user_id,
                    token.purpose.value,
                    token.secret_hash,
                    token.expires_at,
                    token.created_at,
                    token.used,
                ),
            )
        return token

    def get_one_time_token_by_hash(
        self, purpose: TokenPurpose, secret_hash: str
    ) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_one_time_token WHERE purpose = %s AND secret_hash = %s",
                (TokenPurpose(purpose).value, secret_hash),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def mark_one_time_token_used(self, token_id: str) -> OneTimeToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_one_time_token SET used = true
                WHERE id = %s AND NOT used
                RETURNING *
                """,
                (token_id,),
            ).fetchone()
        if not row:
            raise RecordNotFound("unused token not found", {"token_id": token_id})
        return self._token_from_row(row)
