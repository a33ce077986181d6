from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authcore.storage.models import RoleGrant, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "method_not_allowed",
    "conflict",
    "server_error",
    "timeout",
    "unavailable",
    "user_not_found",
    "email_exists",
    "username_exists",
    "invalid_credentials",
    "invalid_current_password",
    "user_inactive",
    "already_verified",
    "token_not_found",
    "token_invalid",
    "unknown_role",
    "role_already_assigned",
    "role_not_held",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Format and policy checks live in the service layer; these only bound sizes.


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    username: str = Field(..., max_length=64)
    display_name: str = Field(..., max_length=256)
    password: str = Field(..., max_length=256)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=256)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=256)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=256)
    all_devices: bool = False


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=256)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=320)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class RoleAssignRequest(BaseModel):
    role: str = Field(..., max_length=32)


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    display_name: str
    verified: bool
    is_active: bool
    created_at: datetime
    roles: List[str] = Field(default_factory=list)

    @classmethod
    def from_user(cls, user: User, roles: Optional[List[Any]] = None) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            display_name=user.display_name,
            verified=user.verified,
            is_active=user.is_active,
            created_at=user.created_at,
            roles=[getattr(r, "value", r) for r in roles or []],
        )


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"


class RoleGrantResponse(BaseModel):
    id: str
    user_id: str
    role: str
    granted_at: datetime
    is_active: bool

    @classmethod
    def from_grant(cls, grant: RoleGrant) -> "RoleGrantResponse":
        return cls(
            id=grant.id,
            user_id=grant.user_id,
            role=grant.role.value,
            granted_at=grant.granted_at,
            is_active=grant.is_active,
        )


class TokenValidationResponse(BaseModel):
    valid: bool
    user_id: str
    roles: List[str]
    verified: bool
    expires_at: datetime
