from __future__ import annotations

from enum import StrEnum


class UserRole(StrEnum):
    ADMIN = "ADMIN"
    DIRECTOR = "DIRECTOR"
    MANAGER = "MANAGER"
    SUPERVISOR = "SUPERVISOR"
    SALESPERSON = "SALESPERSON"


# Higher rank sits higher in the tree.
ROLE_RANK: dict[UserRole, int] = {
    UserRole.ADMIN: 5,
    UserRole.DIRECTOR: 4,
    UserRole.MANAGER: 3,
    UserRole.SUPERVISOR: 2,
    UserRole.SALESPERSON: 1,
}

INVITABLE_ROLES: frozenset[UserRole] = frozenset({UserRole.DIRECTOR, UserRole.MANAGER, UserRole.SUPERVISOR})
DASHBOARD_ROLES: frozenset[UserRole] = frozenset(role for role in UserRole if role is not UserRole.SALESPERSON)


def normalize_role(raw: str | UserRole) -> UserRole:
    """Parse external input into a role. Raises ``ValueError`` on anything unknown."""
    if isinstance(raw, UserRole):
        return raw
    candidate = str(raw).strip().upper()
    try:
        return UserRole(candidate)
    except ValueError:
        raise ValueError(f"unknown role '{raw}'") from None


def can_create(actor_role: UserRole, target_role: UserRole) -> bool:
    if actor_role is UserRole.ADMIN:
        return True
    return ROLE_RANK[target_role] < ROLE_RANK[actor_role]


def can_manage(actor_role: UserRole, target_role: UserRole) -> bool:
    return can_create(actor_role, target_role)


def is_invitable(role: UserRole) -> bool:
    return role in INVITABLE_ROLES


def has_dashboard_access(role: UserRole) -> bool:
    return role in DASHBOARD_ROLES


def requires_email(role: UserRole) -> bool:
    return role is not UserRole.SALESPERSON


def requires_company(role: UserRole) -> bool:
    return role is not UserRole.ADMIN
