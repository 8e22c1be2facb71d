"""Database engine and session factory."""

import logging
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from railsavior import config

logger = logging.getLogger("railsavior.db")

Base = declarative_base()

SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)
_engine: Optional[Engine] = None

SQLITE_BUSY_TIMEOUT = 30.0


def _serialize_sqlite_writes(engine: Engine) -> None:
    """Start every SQLite transaction with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write and ignores FOR UPDATE, so two
    sessions could both read a ride's member count before either inserts.
    Taking the write lock up front makes check-then-insert atomic.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine(url: Optional[str] = None) -> Engine:
    """Create the engine, bind the session factory and create missing tables."""
    global _engine
    from railsavior import tables  # noqa: F401  registers the mappers on Base

    url = url or config.get_database_url()
    if url.startswith("sqlite"):
        _engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT})
        _serialize_sqlite_writes(_engine)
    else:
        _engine = create_engine(url, pool_pre_ping=True)
    SessionLocal.configure(bind=_engine)
    Base.metadata.create_all(_engine)
    logger.info(f"Database ready ({_engine.url.render_as_string(hide_password=True)})")
    return _engine


def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


def get_db() -> Iterator[Session]:
    """FastAPI dependency: one session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
