"""
Session management for the scoring tables.

The schema itself is owned by alembic/versions. This module only builds the
engine from settings and hands out short-lived sessions.
"""

from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from .config import settings


def build_engine(url: str) -> Engine:
    """
    Create an engine for the given URL.

    PostgreSQL gets a pre-pinged connection pool. Anything else is treated as
    SQLite, shared across threads and with foreign keys enforced.
    """
    if url.startswith("postgresql"):
        return create_engine(
            url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            pool_recycle=3600,
        )

    sqlite_engine = create_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(sqlite_engine, "connect")
    def enforce_foreign_keys(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return sqlite_engine


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def get_db_context(session_factory: sessionmaker = None):
    """
    Yield a session that commits on success and rolls back on any exception.

    Components pass their own session_factory (tests bind one to an in-memory
    database); otherwise the settings-configured SessionLocal is used.

    Usage:
        with get_db_context() as db:
            entry = db.query(DBPointLedgerEntry).filter_by(user_id=1).first()
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
