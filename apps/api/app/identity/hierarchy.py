from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Final

from sqlalchemy.orm import Session

from app.identity.directory import UserDirectory, user_directory
from app.identity.models import User
from app.platform.security.context import AuthContext
from app.platform.security.errors import Forbidden, ValidationFailed
from app.platform.security.roles import UserRole


class _Unset:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Final = _Unset()

_UNLINKED_ROLES = frozenset({UserRole.ADMIN, UserRole.DIRECTOR, UserRole.MANAGER})


@dataclass(frozen=True, slots=True)
class ResolvedHierarchy:
    manager_id: uuid.UUID | None
    supervisor_id: uuid.UUID | None


@dataclass(slots=True)
class HierarchyAssigner:
    """Computes the manager / supervisor links a user must carry for its role.

    Hints are validated, never repaired: a link that points at the wrong role,
    another company or an inactive identity is rejected outright.
    """

    directory: UserDirectory = field(default_factory=lambda: user_directory)

    def resolve_for_create(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        role: UserRole,
        company_id: uuid.UUID | None,
        manager_id: uuid.UUID | None = None,
        supervisor_id: uuid.UUID | None = None,
    ) -> ResolvedHierarchy:
        return self._resolve(
            session,
            ctx,
            role=role,
            company_id=company_id,
            manager_hint=UNSET if manager_id is None else manager_id,
            supervisor_hint=UNSET if supervisor_id is None else supervisor_id,
            existing=None,
        )

    def resolve_for_update(
        self,
        session: Session,
        ctx: AuthContext,
        existing: User,
        *,
        role: UserRole,
        company_id: uuid.UUID | None,
        manager_id: uuid.UUID | None | _Unset = UNSET,
        supervisor_id: uuid.UUID | None | _Unset = UNSET,
    ) -> ResolvedHierarchy:
        """``UNSET`` keeps the current link, an explicit ``None`` clears it."""
        return self._resolve(
            session,
            ctx,
            role=role,
            company_id=company_id,
            manager_hint=manager_id,
            supervisor_hint=supervisor_id,
            existing=existing,
        )

    def _resolve(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        role: UserRole,
        company_id: uuid.UUID | None,
        manager_hint: uuid.UUID | None | _Unset,
        supervisor_hint: uuid.UUID | None | _Unset,
        existing: User | None,
    ) -> ResolvedHierarchy:
        if role in _UNLINKED_ROLES:
            if manager_hint or supervisor_hint:
                raise ValidationFailed("manager_id and supervisor_id are not allowed for this role")
            return ResolvedHierarchy(manager_id=None, supervisor_id=None)

        if company_id is None:
            raise ValidationFailed(f"company_id is required for role {role.value}")

        if role is UserRole.SUPERVISOR:
            return self._resolve_supervisor(session, ctx, company_id, manager_hint, supervisor_hint, existing)
        return self._resolve_salesperson(session, ctx, company_id, manager_hint, supervisor_hint, existing)

    def _resolve_supervisor(
        self,
        session: Session,
        ctx: AuthContext,
        company_id: uuid.UUID,
        manager_hint: uuid.UUID | None | _Unset,
        supervisor_hint: uuid.UUID | None | _Unset,
        existing: User | None,
    ) -> ResolvedHierarchy:
        if supervisor_hint:
            raise ValidationFailed("supervisor_id is not allowed for role SUPERVISOR")

        if ctx.role is UserRole.MANAGER:
            if manager_hint is not UNSET and manager_hint != ctx.user_id:
                raise Forbidden("A manager can only link supervisors to themselves")
            return ResolvedHierarchy(manager_id=ctx.user_id, supervisor_id=None)

        manager_id = manager_hint
        if manager_id is UNSET:
            manager_id = existing.manager_id if existing is not None else None
        if manager_id is None:
            raise ValidationFailed("manager_id is required for role SUPERVISOR")

        if self.directory.find_active(session, manager_id, UserRole.MANAGER, company_id) is None:
            raise ValidationFailed("Invalid manager for this company")
        return ResolvedHierarchy(manager_id=manager_id, supervisor_id=None)

    def _resolve_salesperson(
        self,
        session: Session,
        ctx: AuthContext,
        company_id: uuid.UUID,
        manager_hint: uuid.UUID | None | _Unset,
        supervisor_hint: uuid.UUID | None | _Unset,
        existing: User | None,
    ) -> ResolvedHierarchy:
        if manager_hint:
            raise ValidationFailed("manager_id is not allowed for role SALESPERSON")

        if ctx.role is UserRole.SUPERVISOR:
            if supervisor_hint is not UNSET and supervisor_hint != ctx.user_id:
                raise Forbidden("A supervisor can only link salespeople to themselves")
            return ResolvedHierarchy(manager_id=None, supervisor_id=ctx.user_id)

        supervisor_id = supervisor_hint
        if supervisor_id is UNSET:
            supervisor_id = existing.supervisor_id if existing is not None else None
        if supervisor_id is None:
            raise ValidationFailed("supervisor_id is required for role SALESPERSON")

        supervisor = self.directory.find_active(session, supervisor_id, UserRole.SUPERVISOR, company_id)
        if supervisor is None:
            raise ValidationFailed("Invalid supervisor for this company")
        if ctx.role is UserRole.MANAGER and supervisor.manager_id != ctx.user_id:
            raise Forbidden("You can only link salespeople to supervisors in your team")
        return ResolvedHierarchy(manager_id=None, supervisor_id=supervisor_id)


hierarchy_assigner = HierarchyAssigner()
