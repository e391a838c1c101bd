"""Database configuration and session management"""

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sessionguard.config import settings
import logging

logger = logging.getLogger(__name__)

# Connection execution option marking a transaction that never writes.
READ_ONLY_TRANSACTION = "sessionguard_read_only"


def _enable_sqlite_transactions(engine: Engine) -> None:
    """
    Let SQLAlchemy own transaction boundaries on pysqlite.

    The driver's implicit BEGIN breaks SAVEPOINT and defers the write lock;
    BEGIN IMMEDIATE takes it up front so concurrent rotations queue on the
    busy timeout instead of deadlocking. Connections carrying the
    READ_ONLY_TRANSACTION execution option get a plain BEGIN so readers
    never wait on the write lock.
    """

    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        if conn.get_execution_options().get(READ_ONLY_TRANSACTION):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: str, *, echo: bool = False) -> Engine:
    """
    Build an engine for the refresh-token store.

    Args:
        url: SQLAlchemy database URL
        echo: Log emitted SQL

    Returns:
        Engine: Configured engine
    """
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=echo,
        )
        _enable_sqlite_transactions(engine)
        return engine

    return create_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
        echo=echo,
    )


engine = create_db_engine(settings.get_database_url(), echo=settings.DEBUG)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Create base class for models
Base = declarative_base()

# Import models after Base is defined so metadata is populated.
from sessionguard import models  # noqa: E402,F401


def init_db(bind: Engine = engine) -> None:
    """
    Initialize database according to configured strategy.

    DB_INIT_MODE:
      - migrate: require alembic_version table (migration-first discipline)
      - create_all: create tables directly, for local/dev bootstrap
      - off: skip initialization check
    """
    mode = settings.DB_INIT_MODE.lower().strip()
    if mode == "off":
        logger.info("DB initialization check skipped (DB_INIT_MODE=off)")
        return

    if mode == "create_all":
        Base.metadata.create_all(bind=bind)
        logger.warning("Using create_all database initialization (recommended only for local development).")
        return

    if mode == "migrate":
        with bind.connect() as conn:
            exists = "alembic_version" in inspect(conn).get_table_names()
            if settings.DB_REQUIRE_HEAD and not exists:
                raise RuntimeError(
                    "Migration table missing. Run Alembic migrations before starting the API."
                )
            if exists:
                version = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
                logger.info("Migration metadata detected (revision=%s).", version)
        return

    raise RuntimeError(f"Unknown DB_INIT_MODE: {settings.DB_INIT_MODE}")
