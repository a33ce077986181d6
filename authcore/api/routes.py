from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Header, HTTPException, Path

from authcore.api.schemas import (
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    RoleAssignRequest,
    RoleGrantResponse,
    TokenRefreshRequest,
    TokenValidationResponse,
    UserResponse,
)
from authcore.config import get_settings
from authcore.logging import get_logger
from authcore.service.credentials import LoginResult
from authcore.service.errors import (
    InvalidCredentialsError,
    ServiceError,
    UserInactiveError,
    UserNotFoundError,
)
from authcore.service.runtime import get_runtime
from authcore.service.tokens import AccessClaims
from authcore.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_RESET_ACK = "if the account exists, a reset link has been sent"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


@dataclass
class AuthContext:
    user_id: str
    roles: Tuple[Role, ...]
    claims: AccessClaims


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return token.strip()


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    token = _bearer_token(authorization)
    try:
        claims = await runtime.credentials.validate_access_token(token)
    except ServiceError as exc:
        logger.info(
            "access_token_rejected",
            subject=runtime.codec.extract_unverified_subject(token),
            reason=exc.message,
        )
        raise _http_error("unauthorized", "invalid access token", status_code=401)
    return AuthContext(user_id=claims.user_id, roles=claims.roles, claims=claims)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    runtime = get_runtime()
    # Roles are re-read from the store so a revoked admin loses access immediately
    try:
        allowed = await runtime.credentials.has_permission(principal.user_id, Role.ADMIN)
    except UserNotFoundError:
        allowed = False
    if not allowed:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _auth_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user, list(result.roles)),
        access_token=result.access_token.token,
        access_expires_at=result.access_token.expires_at,
        refresh_token=result.refresh_token,
        refresh_expires_at=result.refresh_expires_at,
        token_type=result.token_type,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and send an email verification link.

    Raises:
        400: If a field fails format or password policy checks
        403: If signup is disabled in settings
        409: If the email or username is already taken
    """
    if not get_settings().allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    runtime = get_runtime()
    user = await runtime.credentials.register(
        email=body.email,
        username=body.username,
        display_name=body.display_name,
        password=body.password,
    )
    roles = await runtime.credentials.get_user_roles(user.id)
    return Envelope(status="ok", data=UserResponse.from_user(user, roles))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for an access token and a refresh token."""
    runtime = get_runtime()
    try:
        result = await runtime.credentials.login(body.email, body.password)
    except (UserNotFoundError, UserInactiveError) as exc:
        # Unknown, deactivated and wrong-password logins look the same to the client
        raise InvalidCredentialsError("invalid email or password") from exc
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    """Rotate a refresh token; the presented token stops working."""
    runtime = get_runtime()
    result = await runtime.credentials.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    if body.all_devices:
        revoked = await runtime.credentials.logout_all(principal.user_id)
        return Envelope(status="ok", data={"revoked": revoked})
    if not body.refresh_token:
        raise _http_error(
            "validation_error", "refresh_token or all_devices is required", status_code=400
        )
    await runtime.credentials.logout(body.refresh_token)
    return Envelope(status="ok", data={"revoked": 1})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    user = await runtime.credentials.verify_email(body.token)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/verify-email/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.credentials.request_email_verification(principal.user_id)
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    """Start a password reset.

    The response is identical whether or not the email belongs to an active
    account.
    """
    runtime = get_runtime()
    await runtime.credentials.initiate_password_reset(body.email)
    return Envelope(status="ok", data={"message": _RESET_ACK})


@router.post("/auth/password/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.credentials.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "password updated"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    """Change the password; every refresh token of the account is revoked."""
    runtime = get_runtime()
    await runtime.credentials.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "password updated"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.credentials.get_user(principal.user_id)
    roles = await runtime.credentials.get_user_roles(user.id)
    return Envelope(status="ok", data=UserResponse.from_user(user, roles))


@router.get("/auth/validate", response_model=Envelope, tags=["auth"])
async def validate_token(principal: AuthContext = Depends(get_user)):
    claims = principal.claims
    return Envelope(
        status="ok",
        data=TokenValidationResponse(
            valid=True,
            user_id=claims.user_id,
            roles=[r.value for r in claims.roles],
            verified=claims.verified,
            expires_at=claims.expires_at,
        ),
    )


@router.get("/auth/users/{user_id}/roles", response_model=Envelope, tags=["admin"])
async def list_user_roles(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    roles = await runtime.credentials.get_user_roles(user_id)
    return Envelope(status="ok", data={"user_id": user_id, "roles": [r.value for r in roles]})


@router.post(
    "/auth/users/{user_id}/roles", response_model=Envelope, status_code=201, tags=["admin"]
)
async def assign_user_role(
    body: RoleAssignRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    grant = await runtime.credentials.assign_role(
        user_id, body.role, assigned_by=principal.user_id
    )
    return Envelope(status="ok", data=RoleGrantResponse.from_grant(grant))


@router.delete("/auth/users/{user_id}/roles/{role}", response_model=Envelope, tags=["admin"])
async def revoke_user_role(
    user_id: str = Path(..., max_length=64),
    role: str = Path(..., max_length=32),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    grant = await runtime.credentials.revoke_role(
        user_id, role, revoked_by=principal.user_id
    )
    return Envelope(status="ok", data=RoleGrantResponse.from_grant(grant))


@router.post("/auth/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def deactivate_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.credentials.deactivate_user(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))
