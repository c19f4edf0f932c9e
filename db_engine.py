"""
Database engine management for InvestMate.
Uses SQLModel with SQLite for persistent storage.
Features Write-Ahead Logging (WAL) mode for improved concurrency.
"""

import logging

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create a database engine.

    File-backed SQLite databases get WAL mode and a busy timeout.
    In-memory databases share one connection so every session sees the same tables.

    Args:
        database_url: SQLAlchemy database URL
        echo: Log emitted SQL

    Returns:
        SQLAlchemy Engine
    """
    kwargs = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **kwargs)

    if database_url.startswith("sqlite") and "poolclass" not in kwargs:
        _enable_wal_mode(engine)
    return engine


def _enable_wal_mode(engine: Engine):
    """Enable SQLite WAL mode for improved concurrent read/write performance."""
    try:
        with engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            # Writers wait up to 5 seconds for a lock instead of failing
            conn.exec_driver_sql("PRAGMA busy_timeout=5000")
            logger.info("SQLite WAL mode enabled for concurrent access")
    except Exception as e:
        logger.warning(f"Could not enable WAL mode: {e}")


def init_db(engine: Engine):
    """Create all tables registered on the SQLModel metadata."""
    import models  # noqa: F401  registers the tables

    SQLModel.metadata.create_all(engine)
    logger.info("Database initialized")

