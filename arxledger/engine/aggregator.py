"""
arxledger.engine.aggregator — Paged Sums & Fetches over Capped Pages
=====================================================================

The backing store truncates every single request to ``page_size`` rows
(1000 by default).  Anything that needs a per-user or per-battle total must
therefore walk the table in offset windows until a short page comes back,
and only then return.  Stopping at the first page silently undercounts heavy
users and makes the healer "restore" points that were never missing.

Pages are ordered by primary key so offset windows are stable while the
pass runs.  Each page is read in its own short session and retried with
exponential backoff + jitter on transient driver errors; once the retries are
exhausted a :class:`SourceReadError` is raised for the caller to attribute to
one user or battle.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Iterator, Mapping, Sequence
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import Engine, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from arxledger.constants import DEFAULT_PAGE_SIZE, ZERO, to_decimal
from arxledger.database.models import (
    ArenaBattle,
    ArenaEarning,
    ArenaVote,
    DailyCheckin,
    MiningSession,
    NexusTransaction,
    Profile,
    Referral,
    SocialSubmission,
    UserPoints,
    UserTask,
)

if TYPE_CHECKING:
    from arxledger.config import LedgerConfig

logger = logging.getLogger(__name__)

# Tables the aggregator is allowed to page through, by table name
SOURCE_TABLES: dict[str, type] = {
    model.__tablename__: model
    for model in (
        ArenaBattle,
        ArenaEarning,
        ArenaVote,
        DailyCheckin,
        MiningSession,
        NexusTransaction,
        Profile,
        Referral,
        SocialSubmission,
        UserPoints,
        UserTask,
    )
}


class SourceReadError(RuntimeError):
    """A page could not be read after all retry attempts."""

    def __init__(self, table: str, offset: int, attempts: int, cause: Exception) -> None:
        super().__init__(
            f"Failed to read {table} at offset {offset} after {attempts} attempts: {cause}"
        )
        self.table = table
        self.offset = offset
        self.attempts = attempts


class SourceAggregator:
    """Read-only sums and row lists that ignore the per-request row cap.

    Thread-safe: holds no mutable state besides configuration, and every
    page opens its own session.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        retries: int = 3,
        backoff: float = 0.5,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.engine = engine
        self.page_size = page_size
        self.retries = max(1, retries)
        self.backoff = backoff

    @classmethod
    def from_config(cls, engine: Engine, cfg: LedgerConfig) -> SourceAggregator:
        return cls(
            engine,
            page_size=cfg.page_size,
            retries=cfg.read_retries,
            backoff=cfg.retry_backoff_seconds,
        )

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    def sum(
        self,
        table: str,
        field: str,
        filters: Mapping[str, Any] | None = None,
    ) -> Decimal:
        """Sum *field* over every row of *table* matching *filters*.

        NULLs count as zero.  An empty match returns ``Decimal(0)``.
        """
        total = ZERO
        for page in self._pages(table, (field,), filters or {}):
            total += sum((to_decimal(row[field]) for row in page), ZERO)
        return total

    def fetch_all(
        self,
        table: str,
        fields: Sequence[str],
        filters: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Return every row of *table* matching *filters* as plain dicts."""
        rows: list[dict[str, Any]] = []
        for page in self._pages(table, tuple(fields), filters or {}):
            rows.extend(page)
        return rows

    # -------------------------------------------------------------------
    # Paging
    # -------------------------------------------------------------------
    def _pages(
        self,
        table: str,
        fields: tuple[str, ...],
        filters: Mapping[str, Any],
    ) -> Iterator[list[dict[str, Any]]]:
        offset = 0
        while True:
            page = self._fetch_with_retry(table, fields, filters, offset)
            if page:
                yield page
            if len(page) < self.page_size:
                return
            offset += self.page_size

    def _fetch_with_retry(
        self,
        table: str,
        fields: tuple[str, ...],
        filters: Mapping[str, Any],
        offset: int,
    ) -> list[dict[str, Any]]:
        attempt = 0
        while True:
            attempt += 1
            try:
                page = self.fetch_page(table, fields, filters, offset, self.page_size)
                logger.debug(
                    "Fetched %d rows from %s at offset %d (filters=%s)",
                    len(page), table, offset, dict(filters),
                )
                return page
            except DBAPIError as exc:
                if attempt >= self.retries:
                    logger.warning(
                        "Giving up on %s at offset %d after %d attempts: %s",
                        table, offset, attempt, exc,
                    )
                    raise SourceReadError(table, offset, attempt, exc) from exc
                wait = self.backoff * (2 ** (attempt - 1))
                wait += random.uniform(0, wait * 0.5)
                logger.debug(
                    "Read of %s at offset %d failed (attempt %d/%d); retrying in %.2fs",
                    table, offset, attempt, self.retries, wait,
                )
                time.sleep(wait)

    def fetch_page(
        self,
        table: str,
        fields: tuple[str, ...],
        filters: Mapping[str, Any],
        offset: int,
        limit: int,
    ) -> list[dict[str, Any]]:
        """Read one window of at most *limit* rows, ordered by primary key."""
        model = _resolve_table(table)
        columns = [_resolve_column(model, table, name) for name in fields]

        stmt = select(*columns)
        for key, value in filters.items():
            stmt = stmt.where(_resolve_column(model, table, key) == value)
        stmt = stmt.order_by(*model.__mapper__.primary_key).offset(offset).limit(limit)

        with Session(self.engine) as session:
            return [dict(row._mapping) for row in session.execute(stmt)]


def _resolve_table(table: str) -> type:
    try:
        return SOURCE_TABLES[table]
    except KeyError:
        raise ValueError(f"Unknown source table: {table!r}") from None


def _resolve_column(model: type, table: str, name: str):
    column = model.__table__.columns.get(name)
    if column is None:
        raise ValueError(f"Unknown column {name!r} on {table!r}")
    return column
