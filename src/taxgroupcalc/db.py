from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from . import config

# ---------- Engine / Session ----------
DB_URL = config.DB_URL

# sessions hop between FastAPI worker threads
_connect_args = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}

# echo=False to keep tests quiet
_engine: Engine = create_engine(DB_URL, future=True, echo=False, connect_args=_connect_args)
# Expose the engine so other modules can import it
engine = _engine


if _engine.dialect.name == "sqlite":

    @event.listens_for(_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, _record) -> None:
        # junction rows rely on ON DELETE CASCADE
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()


SessionLocal = sessionmaker(
    bind=_engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def init_db() -> None:
    """Create ORM tables (no-ops on existing)."""
    # Import models here to avoid circular imports
    from .models import Base  # noqa: WPS433 (import inside function)

    Base.metadata.create_all(bind=_engine)


# FastAPI dependency: one session per request
def get_session() -> Iterator[Session]:
    with db_session() as db:
        yield db


# convenience context manager used by scripts and tests
@contextmanager
def db_session() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
