from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, and_, false, or_, select
from sqlalchemy.orm import Session, aliased

from app.identity.models import Company, User
from app.platform.security.roles import UserRole
from app.platform.security.scope import UserScope


@dataclass(frozen=True, slots=True)
class DirectoryEntry:
    """Read-only projection of an identity used for scope and hierarchy decisions."""

    id: uuid.UUID
    role: UserRole
    company_id: uuid.UUID | None
    manager_id: uuid.UUID | None
    supervisor_id: uuid.UUID | None
    supervisor_manager_id: uuid.UUID | None
    is_active: bool
    is_deleted: bool

    @property
    def is_live(self) -> bool:
        return self.is_active and not self.is_deleted


@dataclass(slots=True)
class UserDirectory:
    def get(self, session: Session, user_id: uuid.UUID) -> DirectoryEntry | None:
        loaded = self.load(session, user_id)
        return loaded[1] if loaded is not None else None

    def load(
        self,
        session: Session,
        user_id: uuid.UUID,
        *,
        include_deleted: bool = False,
    ) -> tuple[User, DirectoryEntry] | None:
        supervisor = aliased(User)
        stmt = (
            select(User, supervisor.manager_id)
            .outerjoin(supervisor, supervisor.id == User.supervisor_id)
            .where(User.id == user_id)
            .execution_options(populate_existing=True)
        )
        if not include_deleted:
            stmt = stmt.where(User.deleted_at.is_(None))
        row = session.execute(stmt).first()
        if row is None:
            return None
        user, supervisor_manager_id = row
        return user, self.to_entry(user, supervisor_manager_id)

    def to_entry(self, user: User, supervisor_manager_id: uuid.UUID | None = None) -> DirectoryEntry:
        return DirectoryEntry(
            id=user.id,
            role=user.role,
            company_id=user.company_id,
            manager_id=user.manager_id,
            supervisor_id=user.supervisor_id,
            supervisor_manager_id=supervisor_manager_id,
            is_active=user.is_active,
            is_deleted=user.deleted_at is not None,
        )

    def find_active(
        self,
        session: Session,
        user_id: uuid.UUID,
        role: UserRole,
        company_id: uuid.UUID | None,
    ) -> User | None:
        """Active, non-deleted identity with the given role inside ``company_id``."""
        return session.scalar(
            select(User).where(
                User.id == user_id,
                User.role == role,
                User.company_id == company_id,
                User.is_active.is_(True),
                User.deleted_at.is_(None),
            )
        )

    def list_active(
        self,
        session: Session,
        *,
        company_id: uuid.UUID | None = None,
        roles: Iterable[UserRole] | None = None,
        manager_id: uuid.UUID | None = None,
        supervisor_id: uuid.UUID | None = None,
    ) -> list[User]:
        stmt = select(User).where(User.is_active.is_(True), User.deleted_at.is_(None))
        if company_id is not None:
            stmt = stmt.where(User.company_id == company_id)
        if roles is not None:
            stmt = stmt.where(User.role.in_(list(roles)))
        if manager_id is not None:
            stmt = stmt.where(User.manager_id == manager_id)
        if supervisor_id is not None:
            stmt = stmt.where(User.supervisor_id == supervisor_id)
        return list(session.scalars(stmt.order_by(User.full_name.asc(), User.id.asc())).all())

    def company_is_live(self, session: Session, company_id: uuid.UUID | None) -> bool:
        if company_id is None:
            return True
        found = session.scalar(select(Company.id).where(Company.id == company_id, Company.deleted_at.is_(None)))
        return found is not None

    def apply_scope(self, stmt: Select[Any], scope: UserScope) -> Select[Any]:
        """Translate a ``UserScope`` into a WHERE clause over ``User``."""
        if scope.deny_all:
            return stmt.where(false())

        narrowed = []
        if scope.roles is not None:
            narrowed.append(User.role.in_(sorted(scope.roles)))
        if scope.managed_by is not None:
            supervisor = aliased(User)
            team_supervisors = select(supervisor.id).where(
                supervisor.role == UserRole.SUPERVISOR,
                supervisor.manager_id == scope.managed_by,
            )
            narrowed.append(
                or_(
                    and_(User.role == UserRole.SUPERVISOR, User.manager_id == scope.managed_by),
                    and_(User.role == UserRole.SALESPERSON, User.supervisor_id.in_(team_supervisors)),
                )
            )
        if scope.supervised_by is not None:
            narrowed.append(and_(User.role == UserRole.SALESPERSON, User.supervisor_id == scope.supervised_by))

        if narrowed:
            condition = and_(*narrowed)
            if scope.include_user_id is not None:
                condition = or_(condition, User.id == scope.include_user_id)
            stmt = stmt.where(condition)

        if scope.company_id is not None:
            stmt = stmt.where(User.company_id == scope.company_id)
        return stmt


user_directory = UserDirectory()
