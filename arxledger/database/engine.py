"""
arxledger.database.engine — Database Connection & Session Helper
=================================================================

**Why this file exists:**
The reconciliation engine is a stateless batch job.  Every pass builds (or
reuses) one SQLAlchemy :class:`Engine`, opens short sessions per page read
and per entity write, and never holds a transaction across users.

Usage::

    from arxledger.database.engine import create_db_engine, init_db, ping

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …
    ping(engine)                         # raises StoreUnavailableError if down
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import TypeVar

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from arxledger.database.models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class StoreUnavailableError(RuntimeError):
    """The data store cannot be reached at all.  The only fatal condition."""


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def resolve_database_url(url: str | None = None) -> str:
    """Return *url* or ``DATABASE_URL`` with the driver SQLAlchemy expects.

    Hosted Postgres providers hand out ``postgres://`` URLs, which SQLAlchemy
    2.x no longer accepts; they are rewritten to ``postgresql+psycopg2://``.

    Raises
    ------
    RuntimeError
        If neither *url* nor ``DATABASE_URL`` is set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg2://" + url[len(prefix):]
    return url


def create_db_engine(url: str | None = None, *, pool_size: int = 5) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    The pool is sized to the reconciliation worker pool: ``pool_size``
    persistent connections plus a small overflow for the writer path.
    See :func:`resolve_database_url` for how the URL is picked.
    """
    engine = create_engine(
        resolve_database_url(url),
        echo=False,
        pool_size=pool_size,
        max_overflow=5,
        pool_pre_ping=True,   # Reconnect stale connections automatically
        pool_timeout=10,      # Fail after 10s instead of hanging forever
        pool_recycle=3600,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`arxledger.database.models`.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is kept for dev/test databases.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")


# ---------------------------------------------------------------------------
# Connectivity check
# ---------------------------------------------------------------------------
def ping(engine: Engine) -> None:
    """Run ``SELECT 1`` and raise :class:`StoreUnavailableError` on failure."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise StoreUnavailableError(f"Data store unreachable: {exc}") from exc


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.

    Usage::

        with get_session(engine) as session:
            session.add(PointsAuditLog(...))
            # commit happens automatically on block exit
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Bounded worker pool
# ---------------------------------------------------------------------------
def map_bounded(
    func: Callable[[T], R],
    items: Sequence[T],
    max_workers: int,
) -> list[R]:
    """Apply *func* to every item on at most *max_workers* threads.

    Results come back in input order.  With ``max_workers <= 1`` (or a single
    item) everything runs inline on the calling thread, which is what the
    SQLite test engine needs.  *func* is expected to capture its own
    per-item failures; an exception escaping it propagates to the caller.
    """
    if max_workers <= 1 or len(items) <= 1:
        return [func(item) for item in items]

    with ThreadPoolExecutor(
        max_workers=min(max_workers, len(items)),
        thread_name_prefix="arxledger-worker",
    ) as pool:
        return list(pool.map(func, items))
