"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from arxledger.config import LedgerConfig
from arxledger.database.models import (
    ArenaBattle,
    ArenaVote,
    Base,
    Profile,
    UserPoints,
)

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all ArxLedger tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so every session sees the same in-memory database.
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite engine whose pool hands each thread its own connection."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger_config() -> LedgerConfig:
    """Single-worker config with no retry sleeps (StaticPool is one connection)."""
    return LedgerConfig(max_workers=1, retry_backoff_seconds=0.0)


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------
def add_rows(engine: Engine, *rows) -> None:
    """Insert ORM rows and commit."""
    with Session(engine) as session:
        session.add_all(rows)
        session.commit()


def seed_user(
    engine: Engine,
    user_id: str,
    *,
    username: str | None = None,
    mining: int = 0,
    task: int = 0,
    social: int = 0,
    referral: int = 0,
    total: int | None = None,
    with_points_row: bool = True,
) -> None:
    """Insert a profile and (optionally) a cached ``user_points`` row."""
    rows: list = [Profile(user_id=user_id, username=username or user_id)]
    if with_points_row:
        rows.append(UserPoints(
            user_id=user_id,
            mining_points=mining,
            task_points=task,
            social_points=social,
            referral_points=referral,
            total_points=mining + task + social + referral if total is None else total,
        ))
    add_rows(engine, *rows)


def seed_battle(
    engine: Engine,
    battle_id: str,
    *,
    side_a_power: int = 0,
    side_b_power: int = 0,
    side_c_power: int | None = None,
    prize_pool: int = 0,
    winner_side: str | None = "a",
    votes: tuple[tuple[str, str, int, float | None], ...] = (),
    age_minutes: int = 0,
) -> None:
    """Insert a battle plus ``(user_id, side, power_spent, multiplier)`` votes."""
    battle = ArenaBattle(
        id=battle_id,
        title=f"Battle {battle_id}",
        side_a_name="Alpha",
        side_b_name="Beta",
        side_a_power=side_a_power,
        side_b_power=side_b_power,
        side_c_power=side_c_power,
        prize_pool=prize_pool,
        winner_side=winner_side,
        is_active=winner_side is None,
        created_at=datetime(2026, 1, 1, tzinfo=UTC) + timedelta(minutes=age_minutes),
    )
    vote_rows = [
        ArenaVote(
            battle_id=battle_id,
            user_id=user_id,
            side=side,
            power_spent=power,
            early_stake_multiplier=multiplier,
        )
        for user_id, side, power, multiplier in votes
    ]
    add_rows(engine, battle, *vote_rows)
