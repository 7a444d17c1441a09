"""
Database connection, session management and the unit-of-work boundary.
"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from storefront.config import settings


def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine with the pool/pragma settings used across the service."""
    is_sqlite = url.startswith("sqlite")
    engine = create_engine(
        url,
        # SQLite connections are shared with the FastAPI threadpool
        connect_args={"check_same_thread": False} if is_sqlite else {},
        pool_pre_ping=True,    # verify connection health before checkout
        echo=echo,
        # pool_size / max_overflow only valid for non-SQLite engines
        **({} if is_sqlite else {
            "pool_size": 20,
            "max_overflow": 10,
            "pool_recycle": 1800,
        })
    )
    if is_sqlite:
        # WAL lets readers proceed while a purchase holds the write lock
        event.listen(engine, "connect", _set_sqlite_pragma)
    return engine


engine = build_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
)


def get_db() -> Iterator[Session]:
    """FastAPI dependency — yields a database session and ensures cleanup."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """
    Explicit transaction boundary for multi-row mutations.

    Commits exactly once when the block finishes, rolls back exactly once if
    it raises. Service functions never commit on their own; whoever opens the
    unit of work owns the outcome.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


@contextmanager
def get_db_context() -> Iterator[Session]:
    """Context-manager version for use outside FastAPI dependency injection."""
    db = SessionLocal()
    try:
        with unit_of_work(db):
            yield db
    finally:
        db.close()
