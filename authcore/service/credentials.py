from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, ContextManager, List, Optional, Protocol, Tuple

from authcore.logging import get_logger
from authcore.service.errors import (
    AlreadyVerifiedError,
    EmailExistsError,
    InsufficientRoleError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    RoleAlreadyAssignedError,
    RoleNotHeldError,
    ServiceError,
    UserInactiveError,
    UserNotFoundError,
    UsernameExistsError,
    translate_store_errors,
)
from authcore.service.hasher import SecretHasher
from authcore.service.one_time import OneTimeTokenManager
from authcore.service.roles import DEFAULT_ROLE, can_assign, has_at_least, parse_role, top_role
from authcore.service.sessions import RefreshSessionManager
from authcore.service.tokens import AccessClaims, IssuedToken, TokenCodec, TokenKind
from authcore.service.validation import (
    normalize_email,
    validate_password,
    validate_registration,
)
from authcore.storage.errors import RecordNotFound
from authcore.storage.models import (
    Credential,
    IssuedOneTimeToken,
    IssuedRefresh,
    Role,
    RoleGrant,
    User,
    utcnow,
)

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def atomic(self) -> ContextManager[object]:
        ...

    def create_user(self, user: User) -> User:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def update_user(
        self,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        verified: Optional[bool] = None,
        is_active: Optional[bool] = None,
    ) -> User:
        ...

    def email_exists(self, email: str) -> bool:
        ...

    def username_exists(self, username: str) -> bool:
        ...

    def create_credential(self, credential: Credential) -> Credential:
        ...

    def get_credential(self, user_id: str) -> Optional[Credential]:
        ...

    def update_credential(
        self,
        user_id: str,
        *,
        password_hash: Optional[str] = None,
        last_login_at: Optional[datetime] = None,
    ) -> Credential:
        ...

    def create_role_grant(self, grant: RoleGrant) -> RoleGrant:
        ...

    def list_role_grants(self, user_id: str, *, active_only: bool = True) -> List[RoleGrant]:
        ...

    def deactivate_role_grant(self, grant_id: str) -> RoleGrant:
        ...


class TokenMailer(Protocol):
    def send_email_verification(self, to_email: str, secret: str, *, ttl_hours: int = 24) -> bool:
        ...

    def send_password_reset(self, to_email: str, secret: str, *, ttl_minutes: int = 60) -> bool:
        ...


@dataclass(frozen=True)
class LoginResult:
    user: User
    roles: Tuple[Role, ...]
    access_token: IssuedToken
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"


class CredentialService:
    """Use cases over users, passwords, sessions, roles and one-time tokens.

    Password hashing runs in a worker thread; store calls are short and run
    inline. Every failure surfaces as a ``ServiceError`` subclass.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        codec: TokenCodec,
        sessions: RefreshSessionManager,
        verification_tokens: OneTimeTokenManager,
        reset_tokens: OneTimeTokenManager,
        *,
        mailer: Optional[TokenMailer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.sessions = sessions
        self.verification_tokens = verification_tokens
        self.reset_tokens = reset_tokens
        self.mailer = mailer
        self._clock = clock or utcnow

    # -- registration / authentication ---------------------------------------

    async def register(
        self, email: str, username: str, display_name: str, password: str
    ) -> User:
        email, username, display_name = validate_registration(
            email, username, display_name, password
        )
        with translate_store_errors("register_lookup"):
            if self.store.email_exists(email):
                raise EmailExistsError("email already registered", detail={"field": "email"})
            if self.store.username_exists(username):
                raise UsernameExistsError(
                    "username already taken", detail={"field": "username"}
                )

        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        user = User.new(email, username, display_name)
        # The store's unique indexes settle races the existence checks above miss
        with translate_store_errors("register", user_id=user.id):
            with self.store.atomic():
                self.store.create_user(user)
                self.store.create_credential(Credential.new(user.id, password_hash))
                self.store.create_role_grant(RoleGrant.new(user.id, DEFAULT_ROLE))
        logger.info("user_registered", user_id=user.id)

        try:
            issued = self.verification_tokens.issue(user.id)
        except ServiceError as exc:
            logger.warning(
                "verification_token_issue_failed", user_id=user.id, error=exc.message
            )
        else:
            await self._deliver_verification(user, issued)
        return user

    async def authenticate(self, email: str, password: str) -> User:
        with translate_store_errors("authenticate_lookup"):
            user = self.store.get_user_by_email(normalize_email(email))
        if user is None:
            await asyncio.to_thread(self.hasher.burn, password or "")
            raise UserNotFoundError("user not found")
        if not user.is_active:
            raise UserInactiveError("account is deactivated")

        with translate_store_errors("authenticate_credential", user_id=user.id):
            credential = self.store.get_credential(user.id)
        if credential is None:
            logger.warning("credential_missing", user_id=user.id)
            await asyncio.to_thread(self.hasher.burn, password or "")
            raise InvalidCredentialsError("invalid email or password")

        matched = await asyncio.to_thread(
            self.hasher.verify, credential.password_hash, password or ""
        )
        if not matched:
            logger.info("authentication_failed", user_id=user.id)
            raise InvalidCredentialsError("invalid email or password")

        await self._record_login(user, credential, password)
        logger.info("user_authenticated", user_id=user.id)
        return user

    async def login(self, email: str, password: str) -> LoginResult:
        user = await self.authenticate(email, password)
        issued = self.sessions.issue(user.id)
        return self._mint(user, issued)

    async def refresh(self, refresh_secret: str) -> LoginResult:
        session = self.sessions.validate(refresh_secret)
        user = self._require_user(session.user_id)
        if not user.is_active:
            raise UserInactiveError("account is deactivated")
        issued = self.sessions.rotate(refresh_secret)
        return self._mint(user, issued)

    async def logout(self, refresh_secret: str) -> None:
        self.sessions.revoke(refresh_secret)

    async def logout_all(self, user_id: str) -> int:
        self._require_user(user_id)
        revoked = self.sessions.revoke_all(user_id)
        try:
            self.sessions.purge_expired(user_id)
        except ServiceError as exc:
            logger.warning("refresh_session_purge_failed", user_id=user_id, error=exc.message)
        return revoked

    async def validate_access_token(self, token: str) -> AccessClaims:
        return self.codec.validate(token, TokenKind.ACCESS)

    # -- email verification ------------------------------------------------

    async def verify_email(self, secret: str) -> User:
        """Mark the token's user verified and consume the token as one unit.

        An already verified account raises ``AlreadyVerifiedError`` and leaves
        the token unconsumed.
        """
        record = self.verification_tokens.peek(secret)
        user = self._require_user(record.user_id)
        if user.verified:
            raise AlreadyVerifiedError("email already verified")

        with self.verification_tokens.consume(secret) as token:
            current = self.store.get_user(token.user_id)
            if current is None:
                raise UserNotFoundError("user not found")
            if current.verified:
                raise AlreadyVerifiedError("email already verified")
            try:
                user = self.store.update_user(token.user_id, verified=True)
            except RecordNotFound as exc:
                raise UserNotFoundError("user not found") from exc
        logger.info("email_verified", user_id=user.id)
        return user

    async def request_email_verification(self, user_id: str) -> IssuedOneTimeToken:
        user = self._require_user(user_id)
        if user.verified:
            raise AlreadyVerifiedError("email already verified")
        issued = self.verification_tokens.issue(user.id)
        await self._deliver_verification(user, issued)
        return issued

    # -- passwords ------------------------------------------------------------

    async def initiate_password_reset(self, email: str) -> Optional[IssuedOneTimeToken]:
        """Issue and deliver a reset token if the account exists and is active.

        Returns ``None`` for unknown or inactive accounts; callers must answer
        both cases identically so the endpoint does not reveal which emails
        are registered.
        """
        with translate_store_errors("password_reset_lookup"):
            user = self.store.get_user_by_email(normalize_email(email))
        if user is None or not user.is_active:
            logger.info("password_reset_skipped")
            return None
        issued = self.reset_tokens.issue(user.id)
        await self._deliver_reset(user, issued)
        return issued

    async def reset_password(self, secret: str, new_password: str) -> None:
        validate_password(new_password)
        record = self.reset_tokens.peek(secret)
        password_hash = await asyncio.to_thread(self.hasher.hash, new_password)

        with self.reset_tokens.consume(secret) as token:
            self._replace_password_hash(token.user_id, password_hash)

        revoked = self.sessions.revoke_all(record.user_id)
        logger.info(
            "password_reset_completed", user_id=record.user_id, sessions_revoked=revoked
        )

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        validate_password(new_password)
        user = self._require_user(user_id)
        if not user.is_active:
            raise UserInactiveError("account is deactivated")
        with translate_store_errors("change_password_lookup", user_id=user_id):
            credential = self.store.get_credential(user_id)
        if credential is None:
            raise UserNotFoundError("credential not found")

        matched = await asyncio.to_thread(
            self.hasher.verify, credential.password_hash, current_password or ""
        )
        if not matched:
            logger.info("password_change_rejected", user_id=user_id)
            raise InvalidCurrentPasswordError("current password is incorrect")

        password_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        self._replace_password_hash(user_id, password_hash)
        revoked = self.sessions.revoke_all(user_id)
        logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)

    # -- roles ------------------------------------------------------------------

    async def assign_role(
        self, user_id: str, role: str | Role, *, assigned_by: Optional[str] = None
    ) -> RoleGrant:
        target = parse_role(role)
        self._require_user(user_id)
        if assigned_by is not None:
            self._check_authority(assigned_by, target)

        with translate_store_errors("assign_role", user_id=user_id, role=target.value):
            with self.store.atomic():
                active = self.store.list_role_grants(user_id)
                if any(grant.role == target for grant in active):
                    raise RoleAlreadyAssignedError(
                        "role already assigned", detail={"role": target.value}
                    )
                grant = self.store.create_role_grant(RoleGrant.new(user_id, target))
        logger.info(
            "role_assigned", user_id=user_id, role=target.value, assigned_by=assigned_by
        )
        return grant

    async def revoke_role(
        self, user_id: str, role: str | Role, *, revoked_by: Optional[str] = None
    ) -> RoleGrant:
        target = parse_role(role)
        self._require_user(user_id)
        if revoked_by is not None:
            self._check_authority(revoked_by, target)

        with translate_store_errors("revoke_role", user_id=user_id, role=target.value):
            with self.store.atomic():
                grant = next(
                    (g for g in self.store.list_role_grants(user_id) if g.role == target),
                    None,
                )
                if grant is None:
                    raise RoleNotHeldError("role not held", detail={"role": target.value})
                try:
                    grant = self.store.deactivate_role_grant(grant.id)
                except RecordNotFound as exc:
                    raise RoleNotHeldError(
                        "role not held", detail={"role": target.value}
                    ) from exc
        logger.info(
            "role_revoked", user_id=user_id, role=target.value, revoked_by=revoked_by
        )
        return grant

    async def get_user_roles(self, user_id: str) -> List[Role]:
        self._require_user(user_id)
        return list(self._active_roles(user_id))

    async def has_role(self, user_id: str, role: str | Role) -> bool:
        target = parse_role(role)
        return target in await self.get_user_roles(user_id)

    async def has_permission(self, user_id: str, required: str | Role) -> bool:
        """True when any active role of the user is at or above ``required``."""
        target = parse_role(required)
        return has_at_least(await self.get_user_roles(user_id), target)

    # -- account state --------------------------------------------------------

    async def get_user(self, user_id: str) -> User:
        return self._require_user(user_id)

    async def deactivate_user(self, user_id: str) -> User:
        self._require_user(user_id)
        with translate_store_errors("deactivate_user", user_id=user_id):
            try:
                user = self.store.update_user(user_id, is_active=False)
            except RecordNotFound as exc:
                raise UserNotFoundError("user not found") from exc
        revoked = self.sessions.revoke_all(user_id)
        logger.info("user_deactivated", user_id=user_id, sessions_revoked=revoked)
        return user

    # -- helpers ----------------------------------------------------------------

    def _require_user(self, user_id: str) -> User:
        with translate_store_errors("get_user", user_id=user_id):
            user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError("user not found")
        return user

    def _active_roles(self, user_id: str) -> Tuple[Role, ...]:
        with translate_store_errors("list_role_grants", user_id=user_id):
            grants = self.store.list_role_grants(user_id)
        return tuple(dict.fromkeys(grant.role for grant in grants))

    def _check_authority(self, actor_id: str, target: Role) -> None:
        actor_top = top_role(self._active_roles(actor_id))
        if not can_assign(actor_top, target):
            logger.warning(
                "role_change_denied",
                actor_id=actor_id,
                actor_role=actor_top.value if actor_top else None,
                role=target.value,
            )
            raise InsufficientRoleError(
                "insufficient role to manage this role", detail={"role": target.value}
            )

    def _mint(self, user: User, issued: IssuedRefresh) -> LoginResult:
        roles = self._active_roles(user.id)
        access = self.codec.issue_access(user, roles)
        return LoginResult(
            user=user,
            roles=roles,
            access_token=access,
            refresh_token=issued.secret,
            refresh_expires_at=issued.session.expires_at,
        )

    def _replace_password_hash(self, user_id: str, password_hash: str) -> None:
        with translate_store_errors("update_password", user_id=user_id):
            try:
                self.store.update_credential(user_id, password_hash=password_hash)
            except RecordNotFound as exc:
                raise UserNotFoundError("credential not found") from exc

    async def _record_login(self, user: User, credential: Credential, password: str) -> None:
        """Best-effort bookkeeping after a successful login."""
        try:
            with translate_store_errors("record_login", user_id=user.id):
                self.store.update_credential(user.id, last_login_at=self._clock())
        except ServiceError as exc:
            logger.warning("last_login_update_failed", user_id=user.id, error=exc.message)

        if not self.hasher.needs_rehash(credential.password_hash):
            return
        try:
            password_hash = await asyncio.to_thread(self.hasher.hash, password)
            with translate_store_errors("rehash_password", user_id=user.id):
                self.store.update_credential(user.id, password_hash=password_hash)
            logger.info("password_rehashed", user_id=user.id)
        except ServiceError as exc:
            logger.warning("password_rehash_failed", user_id=user.id, error=exc.message)

    async def _deliver_verification(self, user: User, issued: IssuedOneTimeToken) -> None:
        if self.mailer is None:
            return
        ttl_hours = int(self.verification_tokens.ttl.total_seconds() // 3600)
        sent = await asyncio.to_thread(
            self.mailer.send_email_verification, user.email, issued.secret, ttl_hours=ttl_hours
        )
        if not sent:
            logger.warning("verification_email_failed", user_id=user.id)

    async def _deliver_reset(self, user: User, issued: IssuedOneTimeToken) -> None:
        if self.mailer is None:
            return
        ttl_minutes = int(self.reset_tokens.ttl.total_seconds() // 60)
        sent = await asyncio.to_thread(
            self.mailer.send_password_reset, user.email, issued.secret, ttl_minutes=ttl_minutes
        )
        if not sent:
            logger.warning("password_reset_email_failed", user_id=user.id)
