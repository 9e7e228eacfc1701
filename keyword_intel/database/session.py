"""
Engine and session handling for the analysis store.

PostgreSQL in production (pooled, pre-pinged), a local SQLite file when no
database URL is configured. Tests build their own engine and pass a
session factory to AnalysisStore instead of using the process globals here.
"""

import os
import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from .models import Base

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

DEFAULT_SQLITE_PATH = "keyword_intel_dev.db"

# =============================================================================
# CONNECTION URL
# =============================================================================

def _normalize_postgres_url(url: str) -> str:
    # SQLAlchemy only accepts the postgresql:// scheme
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def get_database_url() -> str:
    """
    Resolve the store URL.

    DATABASE_URL is preferred over POSTGRES_URL. Without either, analyses
    go to a SQLite file at SQLITE_PATH.
    """
    for name in ("DATABASE_URL", "POSTGRES_URL"):
        url = os.getenv(name)
        if url:
            logger.info(f"Analysis store configured from {name}")
            return _normalize_postgres_url(url)

    path = os.getenv("SQLITE_PATH", DEFAULT_SQLITE_PATH)
    logger.warning(f"No database configured, analyses are stored in SQLite file {path}")
    return f"sqlite:///{path}"


# =============================================================================
# ENGINE
# =============================================================================

def enable_sqlite_foreign_keys(engine: Engine) -> None:
    """SQLite ignores foreign keys unless asked per connection."""

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_db_engine(url: Optional[str] = None) -> Engine:
    url = url or get_database_url()
    echo = os.getenv("SQL_DEBUG", "false").lower() == "true"

    if not url.startswith("postgresql"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},  # Store calls come from the event loop thread
            echo=echo,
        )
        enable_sqlite_foreign_keys(engine)
        logger.info("SQLite engine ready")
        return engine

    engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,            # Bursts of concurrent jobs and polling
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=echo,
    )
    logger.info("PostgreSQL engine ready (pool size 5, overflow 10)")
    return engine


_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


# =============================================================================
# SESSIONS
# =============================================================================

def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # Records are read after the session closes
    )


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


@contextmanager
def get_db_context(session_factory: Optional[SessionFactory] = None) -> Generator[Session, None, None]:
    """
    One unit of work: committed when the block exits normally, rolled back
    when it raises.

    Usage:
        with get_db_context() as db:
            db.execute(update(AnalysisRecord).where(...).values(...))
    """
    db = (session_factory or get_session_factory())()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# =============================================================================
# SCHEMA
# =============================================================================

def init_db(engine: Optional[Engine] = None) -> None:
    """Create missing tables. Existing tables are left untouched."""
    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info(f"Analysis store schema ready ({len(Base.metadata.tables)} tables)")


def check_db_connection(engine: Optional[Engine] = None) -> bool:
    """True when a trivial query succeeds; used by startup and /api/health."""
    try:
        with (engine or get_engine()).connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Analysis store unreachable: {e}")
        return False
    return True
