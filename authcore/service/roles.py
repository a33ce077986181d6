from __future__ import annotations

from typing import Any, Iterable, Optional

from authcore.service.errors import UnknownRoleError
from authcore.storage.models import Role

ROLE_LEVELS = {
    Role.USER: 1,
    Role.MODERATOR: 2,
    Role.ADMIN: 3,
}

DEFAULT_ROLE = Role.USER


def parse_role(value: Any) -> Role:
    """Coerce a role name into ``Role``; anything outside the table is rejected."""
    if isinstance(value, Role):
        return value
    if isinstance(value, str):
        try:
            return Role(value.strip().lower())
        except ValueError:
            pass
    raise UnknownRoleError(f"unknown role: {value!r}", detail={"role": str(value)})


def level(role: Role) -> int:
    return ROLE_LEVELS[Role(role)]


def has_at_least(granted: Iterable[Role], required: Role) -> bool:
    needed = level(required)
    return any(level(role) >= needed for role in granted)


def can_assign(assigner_top_role: Optional[Role], target: Role) -> bool:
    """An assigner may grant or revoke only roles strictly below their own."""
    if assigner_top_role is None:
        return False
    return level(assigner_top_role) > level(target)


def top_role(roles: Iterable[Role]) -> Optional[Role]:
    return max(roles, key=level, default=None)
