"""Database engine and sessions.

API handlers and the background worker both use sync Sessions; the worker
opens one session per claimed job.
"""

from __future__ import annotations

from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from .config import settings


def _is_sqlite(url: URL) -> bool:
    return url.drivername.startswith("sqlite")


def _with_driver(url: URL, drivername: str) -> URL:
    """Return a copy of URL with a different drivername."""
    return url.set(drivername=drivername)


def set_sqlite_pragmas(dbapi_connection, connection_record):
    """
    Improve concurrency characteristics for SQLite.
    - WAL: allows concurrent readers while a writer is active
    - busy_timeout: wait for locks instead of failing immediately
    - synchronous NORMAL: good performance/safety tradeoff for local dev
    """
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute(f"PRAGMA busy_timeout={int(settings.sqlite_busy_timeout_ms)};")
        cursor.execute("PRAGMA foreign_keys=ON;")
    finally:
        cursor.close()


raw_url: URL = make_url(settings.database_url)

# SQLite: NullPool so each thread gets its own connection.
# check_same_thread=False allows different threads to open connections.
if _is_sqlite(raw_url):
    timeout_s = max(0.0, float(settings.sqlite_busy_timeout_ms) / 1000.0)
    engine = create_engine(
        raw_url,
        connect_args={"check_same_thread": False, "timeout": timeout_s},
        poolclass=NullPool,
    )
    event.listen(engine, "connect", set_sqlite_pragmas)
else:
    # If user provided plain postgresql://..., force psycopg.
    sync_url = raw_url
    if sync_url.drivername == "postgresql":
        sync_url = _with_driver(sync_url, "postgresql+psycopg")
    engine = create_engine(
        sync_url,
        pool_pre_ping=True,
        pool_size=max(1, settings.db_pool_size),
        max_overflow=max(0, settings.db_max_overflow),
        pool_timeout=max(1, settings.db_pool_timeout_s),
        pool_recycle=max(0, settings.db_pool_recycle_s),
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    """
    Create tables for SQLite only.

    We avoid implicit `create_all()` on Postgres; schema should be managed via Alembic.
    """
    if not _is_sqlite(raw_url):
        return
    from .models import Base
    Base.metadata.create_all(bind=engine)


def get_sync_db() -> Generator:
    """Dependency that yields a DB session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
