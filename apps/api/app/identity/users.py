from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from app.identity.directory import UserDirectory, user_directory
from app.identity.hierarchy import UNSET, HierarchyAssigner, hierarchy_assigner
from app.identity.models import User, utcnow
from app.identity.normalizers import normalize_email, normalize_phone
from app.identity.passwords import hash_password
from app.identity.schemas import (
    ActivationInviteRead,
    PageMeta,
    ReassignManagerTeamRead,
    ReassignManagerTeamRequest,
    ReassignSupervisorRead,
    ReassignSupervisorRequest,
    UserCreate,
    UserCreatedRead,
    UserPage,
    UserRead,
    UserUpdate,
)
from app.identity.service import AuthService, auth_service
from app.identity.tokens import IssuedToken
from app.platform.security.context import AuthContext
from app.platform.security.errors import Conflict, Forbidden, NotFound, ValidationFailed
from app.platform.security.roles import UserRole, can_create, is_invitable, requires_company, requires_email
from app.platform.security.scope import (
    ScopeContext,
    assert_company_scope,
    assert_manage_scope,
    assert_read_scope,
    resolve_company_scope,
    user_scope,
)


logger = logging.getLogger("app.identity.users")

MAX_PAGE_SIZE = 100
MIN_PHONE_SEARCH_DIGITS = 4


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _validate_company_for_role(role: UserRole, company_id: uuid.UUID | None) -> None:
    if role is UserRole.ADMIN and company_id is not None:
        raise ValidationFailed("An admin must not be linked to a company")
    if requires_company(role) and company_id is None:
        raise ValidationFailed("company_id is required for non-admin roles")


def _validate_credentials_for_role(role: UserRole, email: str | None, password: str | None) -> None:
    if role is UserRole.SALESPERSON:
        if password:
            raise ValidationFailed("Salespeople cannot have a password")
        return
    if not email:
        raise ValidationFailed("An email is required for roles with dashboard access")
    if is_invitable(role) and password:
        raise ValidationFailed("Directors, managers and supervisors set their password through the activation invite")
    if role is UserRole.ADMIN and not password:
        raise ValidationFailed("A password is required for admins")


@dataclass(slots=True)
class UserAdminService:
    directory: UserDirectory = field(default_factory=lambda: user_directory)
    hierarchy: HierarchyAssigner = field(default_factory=lambda: hierarchy_assigner)
    auth: AuthService = field(default_factory=lambda: auth_service)

    def list_users(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        q: str | None = None,
        company_id: uuid.UUID | None = None,
        role: UserRole | None = None,
        manager_id: uuid.UUID | None = None,
        supervisor_id: uuid.UUID | None = None,
        is_active: bool | None = None,
        page: int = 1,
        page_size: int = 10,
    ) -> UserPage:
        page = max(1, page)
        page_size = min(max(1, page_size), MAX_PAGE_SIZE)
        scoped_company = resolve_company_scope(ctx, company_id)

        stmt: Select[tuple[User]] = select(User).where(User.deleted_at.is_(None))
        stmt = self.directory.apply_scope(stmt, user_scope(ctx, ScopeContext.USERS, scoped_company))
        if q:
            pattern = f"%{_escape_like(q.strip().lower())}%"
            conditions = [
                func.lower(User.full_name).like(pattern, escape="\\"),
                func.lower(User.email).like(pattern, escape="\\"),
            ]
            digits = normalize_phone(q)
            if len(digits) >= MIN_PHONE_SEARCH_DIGITS:
                conditions.append(User.phone.contains(digits))
            stmt = stmt.where(or_(*conditions))
        if role is not None:
            stmt = stmt.where(User.role == role)
        if manager_id is not None:
            stmt = stmt.where(User.manager_id == manager_id)
        if supervisor_id is not None:
            stmt = stmt.where(User.supervisor_id == supervisor_id)
        if is_active is not None:
            stmt = stmt.where(User.is_active.is_(is_active))

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = session.scalars(
            stmt.order_by(User.created_at.desc(), User.id.asc()).offset((page - 1) * page_size).limit(page_size)
        ).all()
        return UserPage(
            items=[UserRead.from_user(row) for row in rows],
            meta=PageMeta(
                page=page,
                page_size=page_size,
                total=total,
                total_pages=max(1, math.ceil(total / page_size)),
            ),
        )

    def get_user(self, session: Session, ctx: AuthContext, user_id: uuid.UUID) -> UserRead:
        loaded = self.directory.load(session, user_id)
        if loaded is None:
            raise NotFound("User not found")
        user, entry = loaded
        assert_read_scope(ctx, entry, ScopeContext.USERS)
        return UserRead.from_user(user)

    def create_user(self, session: Session, ctx: AuthContext, dto: UserCreate) -> UserCreatedRead:
        if not can_create(ctx.role, dto.role):
            raise Forbidden("You are not allowed to create this role")
        company_id = None if dto.role is UserRole.ADMIN else resolve_company_scope(ctx, dto.company_id)
        email = normalize_email(dto.email)
        _validate_company_for_role(dto.role, company_id)
        _validate_credentials_for_role(dto.role, email, dto.password)
        if not self.directory.company_is_live(session, company_id):
            raise NotFound("Company not found")

        resolved = self.hierarchy.resolve_for_create(
            session,
            ctx,
            role=dto.role,
            company_id=company_id,
            manager_id=dto.manager_id,
            supervisor_id=dto.supervisor_id,
        )

        user = User(
            company_id=company_id,
            role=dto.role,
            manager_id=resolved.manager_id,
            supervisor_id=resolved.supervisor_id,
            full_name=dto.full_name.strip(),
            email=email,
            phone=normalize_phone(dto.phone),
            credential_hash=hash_password(dto.password) if dto.password else None,
            is_active=True,
        )
        session.add(user)
        issued: IssuedToken | None = None
        try:
            session.flush()
            if is_invitable(user.role) and user.credential_hash is None:
                issued = self.auth.prepare_activation_invite(session, user)
            session.commit()
        except IntegrityError:
            session.rollback()
            raise Conflict("A user with this email or phone already exists")

        logger.info(
            "user.created",
            extra={"user_id": str(user.id), "role": user.role.value, "company_id": str(user.company_id)},
        )
        activation = self._deliver_invite(user, issued)
        return UserCreatedRead(user=UserRead.from_user(user), activation=activation)

    def update_user(self, session: Session, ctx: AuthContext, user_id: uuid.UUID, dto: UserUpdate) -> UserCreatedRead:
        loaded = self.directory.load(session, user_id, include_deleted=True)
        if loaded is None:
            raise NotFound("User not found")
        existing, entry = loaded
        assert_manage_scope(ctx, entry)

        provided = dto.model_fields_set
        if dto.role is not None and not can_create(ctx.role, dto.role):
            raise Forbidden("You are not allowed to assign this role")

        next_role = dto.role or existing.role
        next_email = normalize_email(dto.email) if "email" in provided else existing.email
        if dto.password and next_role is not UserRole.ADMIN:
            raise ValidationFailed("Only admins can have a password set directly")
        if requires_email(next_role) and not next_email:
            raise ValidationFailed("An email is required for roles with dashboard access")
        if next_role is UserRole.ADMIN and not existing.credential_hash and not dto.password:
            raise ValidationFailed("A password is required for admins")

        if next_role is UserRole.ADMIN:
            company_id = None
        else:
            requested_company = dto.company_id if dto.company_id is not None else existing.company_id
            company_id = resolve_company_scope(ctx, requested_company)
        _validate_company_for_role(next_role, company_id)
        if not self.directory.company_is_live(session, company_id):
            raise NotFound("Company not found")

        if (
            next_role is not existing.role
            or company_id != existing.company_id
            or (dto.is_active is False and existing.is_active)
        ):
            self._ensure_no_active_dependents(session, existing)

        resolved = self.hierarchy.resolve_for_update(
            session,
            ctx,
            existing,
            role=next_role,
            company_id=company_id,
            manager_id=dto.manager_id if "manager_id" in provided else UNSET,
            supervisor_id=dto.supervisor_id if "supervisor_id" in provided else UNSET,
        )

        previous_role, previous_email = existing.role, existing.email
        existing.company_id = company_id
        existing.role = next_role
        existing.manager_id = resolved.manager_id
        existing.supervisor_id = resolved.supervisor_id
        existing.email = next_email
        if dto.full_name is not None:
            existing.full_name = dto.full_name.strip()
        if dto.phone is not None:
            existing.phone = normalize_phone(dto.phone)
        if next_role is UserRole.SALESPERSON:
            existing.credential_hash = None
        elif dto.password:
            existing.credential_hash = hash_password(dto.password)
        if dto.is_active is not None:
            existing.is_active = dto.is_active
            if dto.is_active:
                existing.deleted_at = None
            else:
                self.auth.sessions.revoke_all_for_owner(session, existing.id)

        issued: IssuedToken | None = None
        try:
            session.flush()
            if (
                is_invitable(existing.role)
                and existing.credential_hash is None
                and (previous_role != existing.role or previous_email != existing.email)
            ):
                issued = self.auth.prepare_activation_invite(session, existing)
            session.commit()
        except IntegrityError:
            session.rollback()
            raise Conflict("A user with this email or phone already exists")

        logger.info("user.updated", extra={"user_id": str(existing.id), "role": existing.role.value})
        activation = self._deliver_invite(existing, issued)
        return UserCreatedRead(user=UserRead.from_user(existing), activation=activation)

    def delete_user(self, session: Session, ctx: AuthContext, user_id: uuid.UUID) -> None:
        if ctx.user_id == user_id:
            raise ValidationFailed("You cannot delete your own user")

        loaded = self.directory.load(session, user_id)
        if loaded is None:
            raise NotFound("User not found")
        existing, entry = loaded
        assert_manage_scope(ctx, entry)
        self._ensure_no_active_dependents(session, existing)

        existing.deleted_at = utcnow()
        existing.is_active = False
        revoked = self.auth.sessions.revoke_all_for_owner(session, existing.id)
        self.auth.activation_ledger.invalidate_all(session, existing.id)
        self.auth.reset_ledger.invalidate_all(session, existing.id)
        session.commit()

        logger.info(
            "user.deleted",
            extra={"user_id": str(user_id), "outcome": f"revoked_sessions={revoked}"},
        )

    def reassign_supervisor(
        self,
        session: Session,
        ctx: AuthContext,
        dto: ReassignSupervisorRequest,
    ) -> ReassignSupervisorRead:
        if dto.from_supervisor_id == dto.to_supervisor_id:
            raise ValidationFailed("Source and target supervisors must differ")
        if ctx.role not in {UserRole.ADMIN, UserRole.DIRECTOR, UserRole.MANAGER}:
            raise Forbidden("You are not allowed to reassign salespeople")

        source = self._reassign_candidate(session, dto.from_supervisor_id, UserRole.SUPERVISOR)
        target = self._reassign_candidate(session, dto.to_supervisor_id, UserRole.SUPERVISOR)
        if source is None or target is None or not target.is_active:
            raise ValidationFailed("Invalid source or target supervisor")
        if source.company_id != target.company_id:
            raise ValidationFailed("Supervisors must belong to the same company")

        assert_company_scope(ctx, source.company_id)
        if ctx.role is UserRole.MANAGER and (source.manager_id != ctx.user_id or target.manager_id != ctx.user_id):
            raise Forbidden("You can only reassign salespeople between supervisors in your team")

        moved = session.execute(
            update(User)
            .where(
                User.role == UserRole.SALESPERSON,
                User.deleted_at.is_(None),
                User.supervisor_id == source.id,
            )
            .values(supervisor_id=target.id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        session.commit()

        logger.info(
            "user.salespeople_reassigned",
            extra={"user_id": str(ctx.user_id), "company_id": str(source.company_id), "outcome": f"moved={moved.rowcount}"},
        )
        return ReassignSupervisorRead(
            from_supervisor_id=source.id,
            to_supervisor_id=target.id,
            company_id=source.company_id,
            moved_salespeople=moved.rowcount,
        )

    def reassign_manager_team(
        self,
        session: Session,
        ctx: AuthContext,
        dto: ReassignManagerTeamRequest,
    ) -> ReassignManagerTeamRead:
        if ctx.role is not UserRole.ADMIN:
            raise Forbidden("Only admins can move teams between managers")
        if dto.from_manager_id == dto.to_manager_id:
            raise ValidationFailed("Source and target managers must differ")

        source = self._reassign_candidate(session, dto.from_manager_id, UserRole.MANAGER)
        target = self._reassign_candidate(session, dto.to_manager_id, UserRole.MANAGER)
        if source is None or target is None or not target.is_active:
            raise ValidationFailed("Invalid source or target manager")
        if source.company_id != target.company_id:
            raise ValidationFailed("Managers must belong to the same company")
        assert_company_scope(ctx, source.company_id)

        supervisor = aliased(User)
        salespeople_impacted = session.scalar(
            select(func.count())
            .select_from(User)
            .join(supervisor, supervisor.id == User.supervisor_id)
            .where(
                User.role == UserRole.SALESPERSON,
                User.deleted_at.is_(None),
                supervisor.role == UserRole.SUPERVISOR,
                supervisor.deleted_at.is_(None),
                supervisor.manager_id == source.id,
            )
        ) or 0
        moved = session.execute(
            update(User)
            .where(
                User.role == UserRole.SUPERVISOR,
                User.deleted_at.is_(None),
                User.manager_id == source.id,
            )
            .values(manager_id=target.id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        session.commit()

        logger.info(
            "user.team_reassigned",
            extra={"user_id": str(ctx.user_id), "company_id": str(source.company_id), "outcome": f"moved={moved.rowcount}"},
        )
        return ReassignManagerTeamRead(
            from_manager_id=source.id,
            to_manager_id=target.id,
            company_id=source.company_id,
            supervisors_moved=moved.rowcount,
            salespeople_impacted=salespeople_impacted,
        )

    def _ensure_no_active_dependents(self, session: Session, user: User) -> None:
        """Refuse to retire a supervisor or manager that active users still point at."""
        if user.role is UserRole.SUPERVISOR:
            active_salespeople = len(
                self.directory.list_active(session, roles=[UserRole.SALESPERSON], supervisor_id=user.id)
            )
            if active_salespeople:
                raise Conflict(
                    "Supervisor still has active salespeople",
                    details={"active_salespeople": active_salespeople},
                )
        if user.role is UserRole.MANAGER:
            active_supervisors = len(
                self.directory.list_active(session, roles=[UserRole.SUPERVISOR], manager_id=user.id)
            )
            if active_supervisors:
                raise Conflict(
                    "Manager still has active supervisors",
                    details={"active_supervisors": active_supervisors},
                )

    def _reassign_candidate(self, session: Session, user_id: uuid.UUID, role: UserRole) -> User | None:
        return session.scalar(
            select(User).where(
                User.id == user_id,
                User.role == role,
                User.deleted_at.is_(None),
                User.company_id.is_not(None),
            )
        )

    def _deliver_invite(self, user: User, issued: IssuedToken | None) -> ActivationInviteRead | None:
        if issued is None:
            return None
        return self.auth.deliver_activation_invite(user.email or "", user.full_name, issued)


user_admin_service = UserAdminService()
