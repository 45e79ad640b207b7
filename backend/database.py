"""
Relational store wiring: engine, session factory and declarative base.

Tasks live here. Route handlers receive a session through the `get_db`
dependency, which tests override with an in-memory SQLite session.
"""

import logging
import time
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

import config

logger = logging.getLogger(__name__)

_connect_args = {"check_same_thread": False} if config.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    config.DATABASE_URL,
    pool_pre_ping=True,
    connect_args=_connect_args,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for the duration of a request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ping(db: Session) -> Dict[str, Any]:
    """
    Check that the relational store answers a trivial query.

    Args:
        db: Database session to check

    Returns:
        Dictionary with status ("healthy"/"unhealthy"), response_time_ms and error
    """
    started = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
        elapsed = round((time.perf_counter() - started) * 1000, 2)
        return {"status": "healthy", "response_time_ms": elapsed, "error": None}
    except Exception as e:
        elapsed = round((time.perf_counter() - started) * 1000, 2)
        logger.error(f"Database ping failed: {e}")
        return {"status": "unhealthy", "response_time_ms": elapsed, "error": str(e)}
