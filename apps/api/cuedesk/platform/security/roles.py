from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    USER = "USER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"
    SUPERADMIN = "SUPERADMIN"


_RANKS: dict[Role, int] = {
    Role.USER: 1,
    Role.SELLER: 2,
    Role.ADMIN: 3,
    Role.SUPERADMIN: 4,
}


def rank(role: Role) -> int:
    return _RANKS[role]


def can_manage(manager: Role, target: Role) -> bool:
    """Return True when ``manager`` may assign or modify a principal holding ``target``.

    Equal rank is allowed: an ADMIN may manage other ADMINs.
    """

    return rank(manager) >= rank(target)


def parse_role(value: str | Role) -> Role:
    """Parse an exact role name. Any other spelling raises ValueError."""

    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        raise ValueError(f"unknown role: {value!r}") from None


def manageable_roles(manager: Role) -> list[Role]:
    return [role for role in Role if can_manage(manager, role)]
