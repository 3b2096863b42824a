"""
Database Session Management
===========================

PostgreSQL/SQLite connection handling with SQLAlchemy.

Handlers are async but the ORM is sync: every query runs in a worker thread
with its own pooled session (``run_db_call``), and the session is closed in
that thread on every exit path.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from ..config import get_settings
from ..errors import UpstreamUnavailable
from .models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")

_engine = None
_engine_url = None

# Session factory is configured lazily (important for tests that set DATABASE_URL at runtime).
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def _create_engine_for_url(database_url: str):
    settings = get_settings()

    # For SQLite fallback in tests
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=settings.sql_echo,
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        # Fail fast instead of hanging a request when the DB is down
        connect_args={"connect_timeout": settings.db_connect_timeout},
        echo=settings.sql_echo,
    )


def get_engine():
    """Get the SQLAlchemy engine"""
    global _engine, _engine_url
    database_url = get_settings().database_url
    if _engine is None or _engine_url != database_url:
        _engine = _create_engine_for_url(database_url)
        _engine_url = database_url
        SessionLocal.configure(bind=_engine)
    return _engine


def get_session_factory() -> sessionmaker:
    """Session factory bound to the configured engine"""
    get_engine()
    return SessionLocal


def reset_engine():
    """Reset engine/sessionmaker (primarily for tests)."""
    global _engine, _engine_url
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _engine_url = None
    SessionLocal.configure(bind=None)


def init_db():
    """Initialize database tables"""
    engine = get_engine()
    Base.metadata.create_all(bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for FastAPI to get database session.

    Usage:
        @app.get("/items")
        def read_items(db: Session = Depends(get_db)):
            ...
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Context manager for database session.

    Usage:
        with session_scope() as db:
            db.execute(select(User)).scalars().all()
    """
    factory = session_factory or get_session_factory()
    db = factory()
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()


def _call_in_session(session_factory: sessionmaker, fn: Callable[..., T], *args, **kwargs) -> T:
    with session_scope(session_factory) as db:
        return fn(db, *args, **kwargs)


async def run_db_call(
    session_factory: sessionmaker,
    fn: Callable[..., T],
    *args,
    retries: int = 1,
    backoff_seconds: Optional[float] = None,
    **kwargs,
) -> T:
    """
    Run ``fn(session, *args, **kwargs)`` in a worker thread.

    Connection-level failures (OperationalError) are retried ``retries`` times
    after ``backoff_seconds``; anything still failing, and any other SQLAlchemy
    error, is raised as UpstreamUnavailable. Calls are read-only, so a retry
    can never duplicate a write.
    """
    if backoff_seconds is None:
        backoff_seconds = get_settings().db_retry_backoff_seconds

    attempt = 0
    while True:
        try:
            return await asyncio.to_thread(_call_in_session, session_factory, fn, *args, **kwargs)
        except OperationalError as e:
            if attempt >= retries:
                logger.error(f"Data store unavailable after {attempt + 1} attempt(s): {e}")
                raise UpstreamUnavailable() from e
            attempt += 1
            logger.warning(f"Transient data store error, retrying ({attempt}/{retries}): {e}")
            await asyncio.sleep(backoff_seconds)
        except SQLAlchemyError as e:
            logger.error(f"Data store query failed: {e}")
            raise UpstreamUnavailable() from e
