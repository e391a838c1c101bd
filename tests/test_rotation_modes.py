from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import NotSupportedError
from sqlalchemy.orm import sessionmaker

from sessionguard.config import Settings
from sessionguard.core.database import Base, create_db_engine
from sessionguard.core.exceptions import TransactionFailedError
from sessionguard.services.refresh_token_service import RefreshTokenService

HASH_SECRET = "test-refresh-hash-secret-32-plus-chars"


def _now():
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def _make_service(tmp_path, mode):
    config = Settings(_env_file=None, REFRESH_HASH_SECRET=HASH_SECRET, ROTATION_MODE=mode)
    engine = create_db_engine(f"sqlite:///{tmp_path / 'tokens.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    return RefreshTokenService(factory, config=config)


def _fail_once(monkeypatch, service, name, exc):
    original = getattr(service, name)
    calls = {"count": 0}

    def flaky(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise exc
        return original(*args, **kwargs)

    monkeypatch.setattr(service, name, flaky)
    return calls


def _no_transactions():
    return NotSupportedError("BEGIN", {}, Exception("transactions not supported"))


def test_transactional_failure_leaves_presented_token_valid(tmp_path, monkeypatch):
    service = _make_service(tmp_path, "transactional")
    now = _now()
    issued = service.create_refresh_token("alice", now=now)
    _fail_once(monkeypatch, service, "_prune_family", RuntimeError("disk full"))

    with pytest.raises(TransactionFailedError) as exc_info:
        service.rotate_refresh_token(issued.token, now=now)

    assert exc_info.value.retryable is True
    view = service.get_refresh_by_id(issued.token_id)
    assert view.revoked is False
    assert view.replaced_by is None

    rotated = service.rotate_refresh_token(issued.token, now=now + timedelta(seconds=1))
    assert rotated.family_id == issued.family_id


def test_transactional_mode_does_not_fall_back(tmp_path, monkeypatch):
    service = _make_service(tmp_path, "transactional")
    issued = service.create_refresh_token("alice")
    _fail_once(monkeypatch, service, "_swap", _no_transactions())

    with pytest.raises(TransactionFailedError):
        service.rotate_refresh_token(issued.token)

    assert service.get_refresh_by_id(issued.token_id).revoked is False


def test_auto_mode_falls_back_to_best_effort(tmp_path, monkeypatch):
    service = _make_service(tmp_path, "auto")
    issued = service.create_refresh_token("alice")
    calls = _fail_once(monkeypatch, service, "_swap", _no_transactions())

    rotated = service.rotate_refresh_token(issued.token)

    assert calls["count"] == 2
    assert service.get_refresh_by_id(issued.token_id).replaced_by == rotated.token_id


def test_best_effort_rotation(tmp_path):
    service = _make_service(tmp_path, "best_effort")
    now = _now()
    issued = service.create_refresh_token("alice", now=now)

    rotated = service.rotate_refresh_token(issued.token, now=now)

    old = service.get_refresh_by_id(issued.token_id)
    assert old.revoked is True
    assert old.replaced_by == rotated.token_id
    assert service.get_refresh_by_id(rotated.token_id).revoked is False


def test_best_effort_failure_after_revoke_loses_session(tmp_path, monkeypatch):
    service = _make_service(tmp_path, "best_effort")
    now = _now()
    issued = service.create_refresh_token("alice", now=now)
    _fail_once(monkeypatch, service, "_prune_family", RuntimeError("connection reset"))

    with pytest.raises(TransactionFailedError):
        service.rotate_refresh_token(issued.token, now=now)

    old = service.get_refresh_by_id(issued.token_id)
    assert old.revoked is True
    assert old.replaced_by is None
    sessions = service.list_user_sessions("alice", include_revoked=True, now=now)
    assert [(s.active, s.token_count) for s in sessions] == [(False, 1)]
