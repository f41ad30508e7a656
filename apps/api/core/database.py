"""
Database engine and sessions.

PostgreSQL in production behind a QueuePool. DATABASE_URL may point at
SQLite for local runs and the test-suite: in-memory SQLite is served through
a single shared connection (StaticPool) so every session sees the same data,
and foreign keys are switched on so cascades behave like PostgreSQL.
"""
import logging
from typing import Iterator

from fastapi import HTTPException
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from core.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: str, echo: bool = False) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False}, echo=echo)
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        echo=echo,
    )


engine = build_engine(settings.database_url, echo=settings.DEBUG)

# expire_on_commit=False: services hand ORM rows to pydantic after committing.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base = declarative_base()


@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enforce foreign keys on SQLite connections (no-op for other drivers)."""
    if type(dbapi_conn).__module__.startswith("sqlite3"):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def get_db() -> Iterator[Session]:
    """
    FastAPI dependency: one session per request.

    Commits when the handler returns, rolls back when it raises. Services
    commit their own writes, so the final commit only flushes leftovers.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        # HTTP errors are expected control flow, not database trouble.
        if not isinstance(e, HTTPException):
            logger.error(f"Database session rolled back: {e}")
        raise
    finally:
        db.close()


def get_db_sync() -> Session:
    """
    Session for Celery tasks and scripts.

    No automatic commit or rollback; the caller owns the transaction and
    must close the session.
    """
    return SessionLocal()


def check_db_connection() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Database connection check failed: {e}")
        return False
    return True
