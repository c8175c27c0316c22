from __future__ import annotations

import uuid
from collections.abc import Generator
from dataclasses import dataclass, field

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.identity.directory import user_directory
from app.identity.models import Company, User
from app.platform.security.context import AuthContext
from app.platform.security.errors import Forbidden
from app.platform.security.roles import UserRole
from app.platform.security.scope import (
    ScopeContext,
    assert_manage_scope,
    assert_read_scope,
    can_read,
    resolve_company_scope,
    user_scope,
)


COMPANY = uuid.uuid4()
OTHER_COMPANY = uuid.uuid4()
MANAGER_ID = uuid.uuid4()
SUPERVISOR_ID = uuid.uuid4()


@dataclass
class Target:
    role: UserRole
    company_id: uuid.UUID | None = COMPANY
    manager_id: uuid.UUID | None = None
    supervisor_id: uuid.UUID | None = None
    supervisor_manager_id: uuid.UUID | None = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)


def _ctx(role: UserRole, user_id: uuid.UUID | None = None, company_id: uuid.UUID | None = COMPANY) -> AuthContext:
    return AuthContext(user_id=user_id or uuid.uuid4(), role=role, company_id=company_id)


def test_admin_scope_is_unrestricted_with_optional_company_filter() -> None:
    admin = _ctx(UserRole.ADMIN, company_id=None)
    assert user_scope(admin, ScopeContext.USERS).matches(Target(UserRole.DIRECTOR, company_id=OTHER_COMPANY))
    narrowed = user_scope(admin, ScopeContext.USERS, COMPANY)
    assert not narrowed.matches(Target(UserRole.DIRECTOR, company_id=OTHER_COMPANY))
    assert narrowed.matches(Target(UserRole.DIRECTOR))


def test_director_users_scope_excludes_directors() -> None:
    director = _ctx(UserRole.DIRECTOR)
    scope = user_scope(director, ScopeContext.USERS)
    assert scope.matches(Target(UserRole.MANAGER))
    assert scope.matches(Target(UserRole.SALESPERSON))
    assert not scope.matches(Target(UserRole.DIRECTOR))
    assert not scope.matches(Target(UserRole.MANAGER, company_id=OTHER_COMPANY))


def test_director_dashboard_scope_is_company_wide() -> None:
    director = _ctx(UserRole.DIRECTOR)
    scope = user_scope(director, ScopeContext.DASHBOARD)
    assert scope.matches(Target(UserRole.DIRECTOR))
    assert not scope.matches(Target(UserRole.SALESPERSON, company_id=OTHER_COMPANY))


def test_manager_scope_covers_own_team_only() -> None:
    manager = _ctx(UserRole.MANAGER, MANAGER_ID)
    scope = user_scope(manager, ScopeContext.USERS)
    assert scope.matches(Target(UserRole.SUPERVISOR, manager_id=MANAGER_ID))
    assert scope.matches(Target(UserRole.SALESPERSON, supervisor_id=SUPERVISOR_ID, supervisor_manager_id=MANAGER_ID))
    assert not scope.matches(Target(UserRole.SUPERVISOR, manager_id=uuid.uuid4()))
    assert not scope.matches(Target(UserRole.SALESPERSON, supervisor_manager_id=uuid.uuid4()))
    assert not scope.matches(Target(UserRole.MANAGER))


def test_supervisor_scope_includes_self_outside_users_context() -> None:
    supervisor = _ctx(UserRole.SUPERVISOR, SUPERVISOR_ID)
    me = Target(UserRole.SUPERVISOR, id=SUPERVISOR_ID, manager_id=MANAGER_ID)
    mine = Target(UserRole.SALESPERSON, supervisor_id=SUPERVISOR_ID)

    users = user_scope(supervisor, ScopeContext.USERS)
    assert users.matches(mine)
    assert not users.matches(me)

    conversations = user_scope(supervisor, ScopeContext.CONVERSATIONS)
    assert conversations.matches(mine)
    assert conversations.matches(me)
    assert not conversations.matches(Target(UserRole.SALESPERSON, supervisor_id=uuid.uuid4()))


def test_salesperson_scope_matches_nothing() -> None:
    scope = user_scope(_ctx(UserRole.SALESPERSON), ScopeContext.LOCATED_CLIENTS)
    assert scope.deny_all
    assert not scope.matches(Target(UserRole.SALESPERSON))


def test_actor_without_company_is_denied() -> None:
    orphan = _ctx(UserRole.DIRECTOR, company_id=None)
    assert user_scope(orphan, ScopeContext.USERS).deny_all
    with pytest.raises(Forbidden):
        resolve_company_scope(orphan)


def test_resolve_company_scope_pins_non_admins() -> None:
    assert resolve_company_scope(_ctx(UserRole.MANAGER), OTHER_COMPANY) == COMPANY
    assert resolve_company_scope(_ctx(UserRole.ADMIN, company_id=None), OTHER_COMPANY) == OTHER_COMPANY


def test_company_mismatch_denies_read_even_when_role_matches() -> None:
    director = _ctx(UserRole.DIRECTOR)
    foreign = Target(UserRole.MANAGER, company_id=OTHER_COMPANY)
    assert not can_read(director, foreign)
    with pytest.raises(Forbidden):
        assert_read_scope(director, foreign)


def test_manager_can_manage_only_own_supervisors() -> None:
    manager = _ctx(UserRole.MANAGER, MANAGER_ID)
    assert_manage_scope(manager, Target(UserRole.SUPERVISOR, manager_id=MANAGER_ID))
    with pytest.raises(Forbidden):
        assert_manage_scope(manager, Target(UserRole.SUPERVISOR, manager_id=uuid.uuid4()))


def test_supervisor_can_manage_only_own_salespeople() -> None:
    supervisor = _ctx(UserRole.SUPERVISOR, SUPERVISOR_ID)
    assert_manage_scope(supervisor, Target(UserRole.SALESPERSON, supervisor_id=SUPERVISOR_ID))
    with pytest.raises(Forbidden):
        assert_manage_scope(supervisor, Target(UserRole.SALESPERSON, supervisor_id=uuid.uuid4()))


def test_manage_scope_rejects_peer_roles() -> None:
    director = _ctx(UserRole.DIRECTOR)
    with pytest.raises(Forbidden):
        assert_manage_scope(director, Target(UserRole.DIRECTOR))


def test_admin_manages_anyone() -> None:
    admin = _ctx(UserRole.ADMIN, company_id=None)
    assert_manage_scope(admin, Target(UserRole.DIRECTOR, company_id=OTHER_COMPANY))


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _user(session: Session, role: UserRole, company: Company, **links: uuid.UUID) -> User:
    user = User(
        company_id=company.id,
        role=role,
        full_name=f"{role.value.title()} {uuid.uuid4().hex[:6]}",
        email=f"{uuid.uuid4().hex[:10]}@example.com",
        phone=str(uuid.uuid4().int)[:11],
        **links,
    )
    session.add(user)
    session.flush()
    return user


def test_scope_predicate_translates_to_sql(db_session: Session) -> None:
    company = Company(name="Acme")
    other = Company(name="Globex")
    db_session.add_all([company, other])
    db_session.flush()

    manager = _user(db_session, UserRole.MANAGER, company)
    rival = _user(db_session, UserRole.MANAGER, company)
    supervisor = _user(db_session, UserRole.SUPERVISOR, company, manager_id=manager.id)
    rival_supervisor = _user(db_session, UserRole.SUPERVISOR, company, manager_id=rival.id)
    seller = _user(db_session, UserRole.SALESPERSON, company, supervisor_id=supervisor.id)
    _user(db_session, UserRole.SALESPERSON, company, supervisor_id=rival_supervisor.id)
    _user(db_session, UserRole.SUPERVISOR, other)
    db_session.commit()

    ctx = AuthContext(user_id=manager.id, role=UserRole.MANAGER, company_id=company.id)
    stmt = user_directory.apply_scope(select(User.id), user_scope(ctx, ScopeContext.USERS))
    visible = set(db_session.scalars(stmt).all())
    assert visible == {supervisor.id, seller.id}

    supervisor_ctx = AuthContext(user_id=supervisor.id, role=UserRole.SUPERVISOR, company_id=company.id)
    dashboard = user_directory.apply_scope(select(User.id), user_scope(supervisor_ctx, ScopeContext.DASHBOARD))
    assert set(db_session.scalars(dashboard).all()) == {supervisor.id, seller.id}

    salesperson_ctx = AuthContext(user_id=seller.id, role=UserRole.SALESPERSON, company_id=company.id)
    denied = user_directory.apply_scope(select(User.id), user_scope(salesperson_ctx, ScopeContext.USERS))
    assert db_session.scalars(denied).all() == []
