"""Database helpers for the local EventCall store."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import scoped_session, sessionmaker

from .config import settings


def build_engine(database_path: Path, *, busy_timeout: float) -> Engine:
    """SQLite engine that waits ``busy_timeout`` seconds on a locked database.

    The fallback queue is written from request handlers while the scheduler
    reads it, so connections use WAL journaling.
    """
    engine = create_engine(
        f"sqlite:///{database_path}",
        connect_args={"check_same_thread": False, "timeout": busy_timeout},
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return engine


DATABASE_URL = f"sqlite:///{settings.database_path}"
engine = build_engine(settings.database_path, busy_timeout=settings.db_busy_timeout_seconds)
SessionLocal = scoped_session(
    sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )
)


@contextmanager
def get_session():
    """Context manager returning a SQLAlchemy session."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
