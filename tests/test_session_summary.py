import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.orm import sessionmaker

from sessionguard.core.database import Base, create_db_engine
from sessionguard.models.refresh_token import RefreshToken
from sessionguard.services.session_summary import clamp_limit, query_user_sessions

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def db(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'sessions.db'}")
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def _record(db, family_id, issued_minutes_ago, *, user_id="alice", used_minutes_ago=None,
            revoked=False, expires_in_minutes=60, user_agent=None, ip_address=None):
    db.add(RefreshToken(
        token_hash=uuid.uuid4().hex,
        user_id=user_id,
        family_id=family_id,
        issued_at=NOW - timedelta(minutes=issued_minutes_ago),
        last_used_at=None if used_minutes_ago is None else NOW - timedelta(minutes=used_minutes_ago),
        expires_at=NOW + timedelta(minutes=expires_in_minutes),
        revoked=revoked,
        user_agent=user_agent,
        ip_address=ip_address,
    ))
    db.commit()


def test_clamp_limit():
    assert clamp_limit(None, 20, 100) == 20
    assert clamp_limit(0, 20, 100) == 1
    assert clamp_limit(-3, 20, 100) == 1
    assert clamp_limit(500, 20, 100) == 100
    assert clamp_limit(7, 20, 100) == 7


def test_family_fields_are_aggregated(db):
    _record(db, "fam-a", 90, used_minutes_ago=30, revoked=True, user_agent="old", ip_address="10.0.0.1")
    _record(db, "fam-a", 30, user_agent="new", ip_address="10.0.0.2")
    _record(db, "fam-b", 10, user_id="bob")

    [session] = query_user_sessions(db, "alice", now=NOW, limit=10)

    assert session.family_id == "fam-a"
    assert session.created_at == NOW - timedelta(minutes=90)
    assert session.last_used_at == NOW - timedelta(minutes=30)
    assert session.token_count == 2
    assert session.active is True
    assert session.user_agent == "new"
    assert session.ip_address == "10.0.0.2"


def test_inactive_families_are_hidden_by_default(db):
    _record(db, "revoked", 10, revoked=True)
    _record(db, "expired", 5, expires_in_minutes=-1)
    _record(db, "live", 20)

    assert [s.family_id for s in query_user_sessions(db, "alice", now=NOW, limit=10)] == ["live"]

    everything = query_user_sessions(db, "alice", now=NOW, limit=10, include_revoked=True)
    assert [s.family_id for s in everything] == ["expired", "revoked", "live"]
    assert [s.active for s in everything] == [False, False, True]


def test_expiry_boundary_is_inactive(db):
    _record(db, "fam", 5, expires_in_minutes=0)
    assert query_user_sessions(db, "alice", now=NOW, limit=10) == []


def test_ordering_and_limit(db):
    for i, minutes in enumerate([30, 10, 20]):
        _record(db, f"fam-{i}", minutes)

    sessions = query_user_sessions(db, "alice", now=NOW, limit=2)

    assert [s.family_id for s in sessions] == ["fam-1", "fam-2"]


def test_last_use_wins_over_issue_time(db):
    _record(db, "recently-used", 120, used_minutes_ago=1)
    _record(db, "recently-issued", 5)

    sessions = query_user_sessions(db, "alice", now=NOW, limit=10)

    assert [s.family_id for s in sessions] == ["recently-used", "recently-issued"]


def test_limit_is_applied_by_the_database(db):
    for i in range(5):
        _record(db, f"fam-{i}", i, user_agent=f"agent-{i}")

    selects = []

    @event.listens_for(db.get_bind(), "after_cursor_execute")
    def _capture_selects(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("SELECT"):
            selects.append(statement)

    sessions = query_user_sessions(db, "alice", now=NOW, limit=2)

    assert [s.family_id for s in sessions] == ["fam-0", "fam-1"]
    assert [s.user_agent for s in sessions] == ["agent-0", "agent-1"]
    assert "GROUP BY" in selects[0].upper()
    assert "LIMIT" in selects[0].upper()
