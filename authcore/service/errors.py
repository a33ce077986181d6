from __future__ import annotations

from contextlib import contextmanager
from enum import Enum
from typing import Iterator, Optional

from authcore.logging import get_logger
from authcore.storage.errors import (
    ConstraintViolation,
    RecordNotFound,
    StoreTimeout,
    StoreUnavailable,
)

logger = get_logger(__name__)


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID = "invalid"
    FORBIDDEN = "forbidden"
    INACTIVE = "inactive"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    INTERNAL = "internal"


class ServiceError(Exception):
    """Base class for credential lifecycle failures.

    Callers dispatch on the class or on ``kind``; ``status_code`` and
    ``error_code`` exist for the HTTP adapter and are stable across releases.
    ``retryable`` is set for infrastructure failures where repeating the same
    call may succeed.
    """

    kind: ErrorKind = ErrorKind.INVALID
    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input failed a format or policy rule (400)."""
    kind = ErrorKind.INVALID
    status_code = 400
    error_code = "validation_error"


class UserNotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    error_code = "user_not_found"


class EmailExistsError(ServiceError):
    kind = ErrorKind.CONFLICT
    status_code = 409
    error_code = "email_exists"


class UsernameExistsError(ServiceError):
    kind = ErrorKind.CONFLICT
    status_code = 409
    error_code = "username_exists"


class InvalidCredentialsError(ServiceError):
    kind = ErrorKind.INVALID
    status_code = 401
    error_code = "invalid_credentials"


class InvalidCurrentPasswordError(ServiceError):
    kind = ErrorKind.INVALID
    status_code = 400
    error_code = "invalid_current_password"


class UserInactiveError(ServiceError):
    kind = ErrorKind.INACTIVE
    status_code = 403
    error_code = "user_inactive"


class AlreadyVerifiedError(ServiceError):
    kind = ErrorKind.CONFLICT
    status_code = 409
    error_code = "already_verified"


class TokenNotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND
    status_code = 401
    error_code = "token_not_found"


class TokenInvalidError(ServiceError):
    """Token is malformed, forged, expired, revoked or already used (401)."""
    kind = ErrorKind.INVALID
    status_code = 401
    error_code = "token_invalid"


class UnknownRoleError(ServiceError):
    kind = ErrorKind.INVALID
    status_code = 400
    error_code = "unknown_role"


class RoleAlreadyAssignedError(ServiceError):
    kind = ErrorKind.CONFLICT
    status_code = 409
    error_code = "role_already_assigned"


class RoleNotHeldError(ServiceError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    error_code = "role_not_held"


class InsufficientRoleError(ServiceError):
    kind = ErrorKind.FORBIDDEN
    status_code = 403
    error_code = "forbidden"


class StoreTimeoutError(ServiceError):
    kind = ErrorKind.TIMEOUT
    status_code = 503
    error_code = "timeout"
    retryable = True


class UnavailableError(ServiceError):
    kind = ErrorKind.UNAVAILABLE
    status_code = 503
    error_code = "unavailable"
    retryable = True


class InternalError(ServiceError):
    kind = ErrorKind.INTERNAL
    status_code = 500
    error_code = "server_error"


@contextmanager
def translate_store_errors(operation: str, **context) -> Iterator[None]:
    """Map storage-layer exceptions raised inside the block to service errors.

    Service errors pass through untouched. A ``ConstraintViolation`` on the
    email, username or role field becomes the matching conflict error; a
    ``RecordNotFound`` from a conditional update becomes ``TokenInvalidError``
    since the conditional updates reached through this helper race on token
    state; callers that need another mapping catch it first.
    """
    try:
        yield
    except ServiceError:
        raise
    except ConstraintViolation as exc:
        field = exc.detail.get("field")
        logger.info("store_constraint_violation", operation=operation, field=field, **context)
        if field == "email":
            raise EmailExistsError("email already registered") from exc
        if field == "username":
            raise UsernameExistsError("username already taken") from exc
        if field == "role":
            raise RoleAlreadyAssignedError("role already assigned") from exc
        raise InternalError("conflicting write", detail={"operation": operation}) from exc
    except RecordNotFound as exc:
        logger.info("store_conditional_update_lost", operation=operation, **context)
        raise TokenInvalidError("token is no longer valid") from exc
    except StoreTimeout as exc:
        logger.warning("store_timeout", operation=operation, error=str(exc), **context)
        raise StoreTimeoutError("credential store timed out") from exc
    except StoreUnavailable as exc:
        logger.error("store_unavailable", operation=operation, error=str(exc), **context)
        raise UnavailableError("credential store unavailable") from exc
    except Exception as exc:
        logger.exception("store_operation_failed", operation=operation, **context)
        raise InternalError("internal error") from exc


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "UserNotFoundError",
    "EmailExistsError",
    "UsernameExistsError",
    "InvalidCredentialsError",
    "InvalidCurrentPasswordError",
    "UserInactiveError",
    "AlreadyVerifiedError",
    "TokenNotFoundError",
    "TokenInvalidError",
    "UnknownRoleError",
    "RoleAlreadyAssignedError",
    "RoleNotHeldError",
    "InsufficientRoleError",
    "StoreTimeoutError",
    "UnavailableError",
    "InternalError",
    "translate_store_errors",
]
