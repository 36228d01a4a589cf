"""Database engine and session factory.

Stores (``GraphManager``, ``ExecutionStore``, ``ABAllocator``) accept an
explicit session factory; when none is given they fall back to the
process-wide one configured here.
"""

import os
from typing import Optional

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./journey_engine.db"

Base = declarative_base()

SessionLocal = sessionmaker(autoflush=False)

_engine: Optional[Engine] = None


def _is_in_memory(database_url: str) -> bool:
    return database_url.startswith("sqlite") and (":memory:" in database_url or database_url.endswith("://"))


def _enable_wal(dbapi_connection, connection_record):
    # readers keep working while an advance loop holds the write lock
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """
    Return the process-wide engine, creating it on first call.

    In-memory SQLite shares one connection across threads (``StaticPool``);
    file-backed SQLite runs in WAL mode; other backends get ``pool_pre_ping``.
    Arguments are ignored once the engine exists.
    """
    global _engine
    if _engine is not None:
        return _engine

    database_url = database_url or os.getenv("JOURNEY_ENGINE_DATABASE_URL", DEFAULT_DATABASE_URL)
    is_sqlite = database_url.startswith("sqlite")
    if connect_args is None:
        connect_args = {"check_same_thread": False} if is_sqlite else {}

    if _is_in_memory(database_url):
        _engine = create_engine(database_url, connect_args=connect_args, poolclass=StaticPool, echo=echo)
    elif is_sqlite:
        _engine = create_engine(database_url, connect_args=connect_args, echo=echo)
        event.listen(_engine, "connect", _enable_wal)
    else:
        _engine = create_engine(database_url, connect_args=connect_args, echo=echo, pool_pre_ping=True)

    SessionLocal.configure(bind=_engine)
    return _engine


def reset_database_engine():
    """Dispose of the process-wide engine (mainly for testing)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def get_session_factory() -> sessionmaker:
    get_database_engine()
    return SessionLocal


def create_tables(engine: Optional[Engine] = None):
    """Create all tables that do not exist yet."""
    from . import models  # noqa: F401  registers the tables on Base.metadata
    Base.metadata.create_all(bind=engine or get_database_engine())


def drop_tables(engine: Optional[Engine] = None):
    Base.metadata.drop_all(bind=engine or get_database_engine())
