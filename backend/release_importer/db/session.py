"""Engine and session factory configuration."""

from collections.abc import Generator
import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from release_importer.core.config import get_settings
from release_importer.db.base import Base

logger = logging.getLogger(__name__)

settings = get_settings()


def build_engine(database_url: str, **kwargs) -> Engine:
    """Create an engine tuned for short batch invocations.

    PostgreSQL gets keepalive connect args and a recycled pool; SQLite gets the
    pysqlite SAVEPOINT workaround so per-row nested transactions behave.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            future=True,
            connect_args={"check_same_thread": False},
            **kwargs,
        )
        enable_sqlite_savepoints(engine)
        return engine

    return create_engine(
        database_url,
        echo=False,
        future=True,
        pool_pre_ping=True,  # Test connections before using
        pool_recycle=1800,
        pool_size=5,
        max_overflow=10,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
        **kwargs,
    )


def enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT/RELEASE nest correctly on pysqlite."""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(bind: Engine | None = None) -> None:
    """Create tables that do not exist yet."""
    # Registers every model on Base.metadata.
    import release_importer.db.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_fresh_session() -> Session:
    """Get a fresh database session, handling connection errors.

    Used by worker tasks where pooled connections may have gone stale.
    """
    try:
        return SessionLocal()
    except (OperationalError, DisconnectionError) as e:
        logger.warning(f"Connection error creating session: {e}, retrying...")
        engine.dispose()
        return SessionLocal()


def get_db() -> Generator[Session, None, None]:
    """Yield a transactional session for request/worker lifecycles."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
