from __future__ import annotations

import threading
import uuid
from collections.abc import Generator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import Engine, create_engine, event, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.identity.models import Company, CredentialToken, TokenPurpose, User, utcnow
from app.identity.tokens import CredentialTokenLedger, generate_token, hash_token, owner_lock_statement
from app.platform.security.errors import InvalidOrExpiredToken
from app.platform.security.roles import UserRole


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


def _owner(session: Session) -> User:
    company = Company(name="Acme")
    session.add(company)
    session.flush()
    user = User(
        company_id=company.id,
        role=UserRole.DIRECTOR,
        full_name="Jane Director",
        email=f"{uuid.uuid4().hex[:8]}@example.com",
        phone="5511999990000",
    )
    session.add(user)
    session.commit()
    return user


def test_tokens_carry_256_bits_and_only_the_hash_is_stored(db_session: Session) -> None:
    owner = _owner(db_session)
    ledger = CredentialTokenLedger(TokenPurpose.ACTIVATION)

    issued = ledger.issue(db_session, owner.id)
    db_session.commit()

    assert len(issued.token) == 64
    assert len(generate_token()) == 64
    stored = db_session.scalars(select(CredentialToken)).all()
    assert [row.token_hash for row in stored] == [hash_token(issued.token)]
    assert all(row.token_hash != issued.token for row in stored)


def test_issue_supersedes_previous_unused_token(db_session: Session) -> None:
    owner = _owner(db_session)
    ledger = CredentialTokenLedger(TokenPurpose.ACTIVATION)

    first = ledger.issue(db_session, owner.id)
    second = ledger.issue(db_session, owner.id)
    db_session.commit()

    with pytest.raises(InvalidOrExpiredToken):
        ledger.consume(db_session, first.token)
    db_session.rollback()

    assert ledger.consume(db_session, second.token) == owner.id
    db_session.commit()


def test_supersession_is_scoped_to_purpose(db_session: Session) -> None:
    owner = _owner(db_session)
    activation = CredentialTokenLedger(TokenPurpose.ACTIVATION)
    reset = CredentialTokenLedger(TokenPurpose.RESET)

    invite = activation.issue(db_session, owner.id)
    reset.issue(db_session, owner.id)
    db_session.commit()

    assert activation.consume(db_session, invite.token) == owner.id


def test_token_cannot_be_used_for_another_purpose(db_session: Session) -> None:
    owner = _owner(db_session)
    invite = CredentialTokenLedger(TokenPurpose.ACTIVATION).issue(db_session, owner.id)
    db_session.commit()

    with pytest.raises(InvalidOrExpiredToken):
        CredentialTokenLedger(TokenPurpose.RESET).consume(db_session, invite.token)


def test_consume_is_single_use(db_session: Session) -> None:
    owner = _owner(db_session)
    ledger = CredentialTokenLedger(TokenPurpose.RESET)
    issued = ledger.issue(db_session, owner.id)
    db_session.commit()

    assert ledger.consume(db_session, issued.token) == owner.id
    db_session.commit()

    with pytest.raises(InvalidOrExpiredToken):
        ledger.consume(db_session, issued.token)


def test_rolled_back_consumption_leaves_token_usable(db_session: Session) -> None:
    owner = _owner(db_session)
    ledger = CredentialTokenLedger(TokenPurpose.RESET)
    issued = ledger.issue(db_session, owner.id)
    db_session.commit()

    ledger.consume(db_session, issued.token)
    db_session.rollback()

    assert ledger.consume(db_session, issued.token) == owner.id


def test_expired_token_is_rejected(db_session: Session) -> None:
    owner = _owner(db_session)
    issued_at = utcnow() - timedelta(hours=2)
    stale = CredentialTokenLedger(TokenPurpose.RESET, ttl=timedelta(hours=1), clock=lambda: issued_at)
    issued = stale.issue(db_session, owner.id)
    db_session.commit()

    with pytest.raises(InvalidOrExpiredToken):
        CredentialTokenLedger(TokenPurpose.RESET).consume(db_session, issued.token)


def test_unknown_token_is_rejected_with_generic_error(db_session: Session) -> None:
    _owner(db_session)
    with pytest.raises(InvalidOrExpiredToken) as excinfo:
        CredentialTokenLedger(TokenPurpose.ACTIVATION).consume(db_session, "not-a-token")
    assert excinfo.value.message == "Invalid or expired token"
    assert excinfo.value.status_code == 400


def test_ttl_defaults_come_from_settings() -> None:
    assert CredentialTokenLedger(TokenPurpose.ACTIVATION).ttl == timedelta(hours=24)
    assert CredentialTokenLedger(TokenPurpose.RESET).ttl == timedelta(hours=1)


def test_invalidate_all_returns_number_of_live_tokens(db_session: Session) -> None:
    owner = _owner(db_session)
    ledger = CredentialTokenLedger(TokenPurpose.RESET)
    ledger.issue(db_session, owner.id)
    db_session.commit()

    assert ledger.invalidate_all(db_session, owner.id) == 1
    assert ledger.invalidate_all(db_session, owner.id) == 0


def test_owner_lock_is_a_row_lock_on_the_user() -> None:
    owner_id = uuid.uuid4()
    compiled = str(owner_lock_statement(owner_id).compile(dialect=postgresql.dialect()))

    assert "FROM identity_user" in compiled
    assert compiled.rstrip().endswith("FOR UPDATE")


def test_issue_locks_owner_before_superseding(db_session: Session) -> None:
    owner = _owner(db_session)
    ledger = CredentialTokenLedger(TokenPurpose.RESET)
    statements: list[str] = []

    def _record(conn, cursor, statement, parameters, context, executemany):  # type: ignore[no-untyped-def]
        statements.append(" ".join(statement.split()))

    engine = db_session.get_bind()
    event.listen(engine, "before_cursor_execute", _record)
    try:
        ledger.issue(db_session, owner.id)
    finally:
        event.remove(engine, "before_cursor_execute", _record)
    db_session.commit()

    lock_at = next(i for i, sql in enumerate(statements) if sql.startswith("SELECT identity_user.id FROM identity_user"))
    supersede_at = next(i for i, sql in enumerate(statements) if sql.startswith("UPDATE identity_credential_token"))
    assert lock_at < supersede_at


def _file_engine(path: Path, *, immediate: bool = False) -> Engine:
    engine = create_engine(
        f"sqlite+pysqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    if immediate:

        @event.listens_for(engine, "connect")
        def _disable_driver_transactions(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):  # type: ignore[no-untyped-def]
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    return engine


def test_stale_lookup_loses_the_conditional_claim(tmp_path: Path) -> None:
    engine = _file_engine(tmp_path / "ledger.db")
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    ledger = CredentialTokenLedger(TokenPurpose.RESET)

    with SessionLocal() as setup:
        owner = _owner(setup)
        issued = ledger.issue(setup, owner.id)
        setup.commit()

    with SessionLocal() as first, SessionLocal() as second:
        seen_by_first = ledger.find_live(first, issued.token)
        seen_by_second = ledger.find_live(second, issued.token)
        assert seen_by_first is not None and seen_by_second is not None

        assert ledger.claim(first, seen_by_first.id) is True
        first.commit()
        assert ledger.claim(second, seen_by_second.id) is False
        second.rollback()

    engine.dispose()


def test_concurrent_consumers_get_exactly_one_success(tmp_path: Path) -> None:
    engine = _file_engine(tmp_path / "race.db", immediate=True)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    ledger = CredentialTokenLedger(TokenPurpose.ACTIVATION)

    with SessionLocal() as setup:
        owner = _owner(setup)
        issued = ledger.issue(setup, owner.id)
        setup.commit()

    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def consume() -> None:
        with SessionLocal() as session:
            barrier.wait()
            try:
                ledger.consume(session, issued.token)
                session.commit()
                outcome = "consumed"
            except InvalidOrExpiredToken:
                session.rollback()
                outcome = "rejected"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=consume) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["consumed", "rejected"]
    engine.dispose()
