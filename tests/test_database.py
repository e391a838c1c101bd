from sqlalchemy import event, update
from sqlalchemy.orm import sessionmaker

from sessionguard.config import Settings
from sessionguard.core.database import Base, create_db_engine
from sessionguard.models.refresh_token import RefreshToken
from sessionguard.services.refresh_token_service import RefreshTokenService

HASH_SECRET = "test-refresh-hash-secret-32-plus-chars"


def _setup(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'tokens.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    config = Settings(_env_file=None, REFRESH_HASH_SECRET=HASH_SECRET)
    return engine, factory, RefreshTokenService(factory, config=config)


def _record_begins(engine):
    begins = []

    @event.listens_for(engine, "before_cursor_execute")
    def _capture_begin(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("BEGIN"):
            begins.append(statement)

    return begins


def test_reads_open_deferred_transactions(tmp_path):
    engine, _, service = _setup(tmp_path)
    issued = service.create_refresh_token("alice")
    begins = _record_begins(engine)

    service.get_refresh_by_id(issued.token_id)
    service.list_user_sessions("alice")
    service.revoke_by_token("never-issued")

    assert begins == ["BEGIN", "BEGIN", "BEGIN"]


def test_writes_take_the_write_lock_up_front(tmp_path):
    engine, _, service = _setup(tmp_path)
    issued = service.create_refresh_token("alice")
    begins = _record_begins(engine)

    service.revoke_refresh_token(family_id=issued.family_id)

    assert begins == ["BEGIN IMMEDIATE"]


def test_reads_do_not_wait_for_an_open_writer(tmp_path):
    _, factory, service = _setup(tmp_path)
    issued = service.create_refresh_token("alice", user_agent="laptop")

    writer = factory()
    try:
        writer.execute(
            update(RefreshToken)
            .where(RefreshToken.id == issued.token_id)
            .values(user_agent="pending")
        )

        [session] = service.list_user_sessions("alice")
        view = service.get_refresh_by_id(issued.token_id)
    finally:
        writer.rollback()
        writer.close()

    assert session.user_agent == "laptop"
    assert view.user_agent == "laptop"
