"""
Database engine and session factory.

The SQL queue store opens one short-lived session per unit of work from the
factory returned by get_session_local().
"""

import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from mailqueue.core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# Global variables for lazy initialization
engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def build_engine(database_url: str) -> Engine:
    """Create an engine with pool settings suited to the backend."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,              # Verify connections before use
        pool_recycle=3600,               # Recycle connections every hour
        pool_timeout=30,
    )


def get_engine() -> Engine:
    """Get or create the database engine."""
    global engine
    if engine is None:
        try:
            engine = build_engine(settings.DATABASE_URL)
            logger.info(f"Database engine initialized: {settings.DATABASE_URL.split('@')[-1][:50]}")
        except Exception as e:
            logger.error(f"Failed to initialize database engine: {e}")
            raise
    return engine


def get_session_local() -> sessionmaker:
    """Get or create SessionLocal with lazy initialization."""
    global SessionLocal
    if SessionLocal is None:
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=get_engine())
    return SessionLocal


def init_db(bind: Optional[Engine] = None) -> None:
    """Create the queue tables if they do not exist."""
    # Import models so they are registered on Base.metadata
    from mailqueue import models  # noqa: F401

    Base.metadata.create_all(bind=bind or get_engine())


def perform_db_health_check() -> tuple[bool, dict]:
    """Run a trivial query against the configured database."""
    try:
        with get_engine().connect() as conn:
            result = conn.execute(text("SELECT 1 AS health_check")).fetchone()
        if result and result.health_check == 1:
            return True, {"status": "healthy"}
        return False, {"error": "Health check query failed"}
    except Exception as e:
        return False, {"error": str(e)}
