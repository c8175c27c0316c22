from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from app.metrics import observe_scope_denial
from app.platform.security.context import AuthContext
from app.platform.security.errors import Forbidden
from app.platform.security.roles import UserRole, can_manage


logger = logging.getLogger("app.security.scope")


class ScopeContext(StrEnum):
    USERS = "users"
    DASHBOARD = "dashboard"
    CONVERSATIONS = "conversations"
    LOCATED_CLIENTS = "located_clients"


class ScopeTarget(Protocol):
    id: uuid.UUID
    role: UserRole
    company_id: uuid.UUID | None
    manager_id: uuid.UUID | None
    supervisor_id: uuid.UUID | None
    supervisor_manager_id: uuid.UUID | None


@dataclass(frozen=True, slots=True)
class UserScope:
    """Storage-agnostic predicate over identities visible to an actor.

    Every populated field narrows the set (AND). ``include_user_id`` widens
    the narrowed set with one extra identity (OR). ``deny_all`` matches nothing.
    """

    deny_all: bool = False
    company_id: uuid.UUID | None = None
    roles: frozenset[UserRole] | None = None
    managed_by: uuid.UUID | None = None
    supervised_by: uuid.UUID | None = None
    include_user_id: uuid.UUID | None = None

    def matches(self, target: ScopeTarget) -> bool:
        if self.deny_all:
            return False
        if self.company_id is not None and target.company_id != self.company_id:
            return False
        if self.include_user_id is not None and target.id == self.include_user_id:
            return True
        if self.roles is not None and target.role not in self.roles:
            return False
        if self.managed_by is not None:
            if target.role == UserRole.SUPERVISOR:
                return target.manager_id == self.managed_by
            if target.role == UserRole.SALESPERSON:
                return target.supervisor_manager_id == self.managed_by
            return False
        if self.supervised_by is not None:
            return target.role == UserRole.SALESPERSON and target.supervisor_id == self.supervised_by
        return True


DENY_ALL = UserScope(deny_all=True)

_DIRECTOR_USER_ROLES = frozenset({UserRole.MANAGER, UserRole.SUPERVISOR, UserRole.SALESPERSON})


def _deny(ctx: AuthContext, context: ScopeContext, reason: str, message: str) -> Forbidden:
    observe_scope_denial(context.value, reason)
    logger.warning(
        "scope.denied",
        extra={
            "user_id": str(ctx.user_id),
            "role": ctx.role.value,
            "company_id": str(ctx.company_id) if ctx.company_id else None,
            "context": context.value,
            "outcome": reason,
        },
    )
    return Forbidden(message)


def resolve_company_scope(ctx: AuthContext, requested_company_id: uuid.UUID | None = None) -> uuid.UUID | None:
    """Company filter for listings. Admins choose freely, everyone else is pinned to their own."""
    if ctx.is_admin:
        return requested_company_id
    if ctx.company_id is None:
        raise _deny(ctx, ScopeContext.USERS, "no_company", "User is not linked to a company")
    return ctx.company_id


def assert_company_scope(
    ctx: AuthContext,
    target_company_id: uuid.UUID | None,
    context: ScopeContext = ScopeContext.USERS,
) -> None:
    if ctx.is_admin:
        return
    if ctx.company_id is None or ctx.company_id != target_company_id:
        raise _deny(ctx, context, "company_mismatch", "You do not have access to this company scope")


def user_scope(ctx: AuthContext, context: ScopeContext, company_id: uuid.UUID | None = None) -> UserScope:
    if ctx.is_admin:
        return UserScope(company_id=company_id)
    if ctx.company_id is None:
        return DENY_ALL
    if company_id is not None and company_id != ctx.company_id:
        return DENY_ALL

    if ctx.role is UserRole.DIRECTOR:
        if context is ScopeContext.USERS:
            return UserScope(company_id=ctx.company_id, roles=_DIRECTOR_USER_ROLES)
        return UserScope(company_id=ctx.company_id)

    if ctx.role is UserRole.MANAGER:
        return UserScope(company_id=ctx.company_id, managed_by=ctx.user_id)

    if ctx.role is UserRole.SUPERVISOR:
        if context is ScopeContext.USERS:
            return UserScope(company_id=ctx.company_id, supervised_by=ctx.user_id)
        return UserScope(company_id=ctx.company_id, supervised_by=ctx.user_id, include_user_id=ctx.user_id)

    return DENY_ALL


def can_read(ctx: AuthContext, target: ScopeTarget, context: ScopeContext = ScopeContext.USERS) -> bool:
    if not ctx.is_admin and (ctx.company_id is None or ctx.company_id != target.company_id):
        return False
    return user_scope(ctx, context).matches(target)


def assert_read_scope(ctx: AuthContext, target: ScopeTarget, context: ScopeContext = ScopeContext.USERS) -> None:
    assert_company_scope(ctx, target.company_id, context)
    if not user_scope(ctx, context).matches(target):
        raise _deny(ctx, context, "out_of_scope", "You do not have access to this user")


def assert_manage_scope(ctx: AuthContext, target: ScopeTarget) -> None:
    if ctx.is_admin:
        return
    assert_company_scope(ctx, target.company_id)
    if not can_manage(ctx.role, target.role):
        raise _deny(ctx, ScopeContext.USERS, "role_not_manageable", "You are not allowed to manage this role")
    if not user_scope(ctx, ScopeContext.USERS).matches(target):
        raise _deny(ctx, ScopeContext.USERS, "out_of_scope", "You are not allowed to operate on this user")
