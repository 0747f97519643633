"""
arxledger.services.earnings_service — Missing Arena Earnings Scan
==================================================================

Walks resolved battles (``winner_side`` set) and finds winners that have no
``arena_earnings`` row yet.

How it works:
    1. Page a batch of resolved battles, ordered by ``created_at`` then ``id``.
    2. For each battle (read-only, on the bounded worker pool): compute the
       pool, fetch every winning vote and every existing earnings row through
       the aggregator, and build a :class:`PayoutPlan`.
    3. On the calling thread, in battle order: count what is missing and,
       when writes are enabled, insert each missing row through the ledger
       writer.  A failed insert is recorded and the scan moves on.

``audit`` mode and dry runs stop after step 3's counting.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from arxledger.database.engine import StoreUnavailableError, map_bounded
from arxledger.database.models import ArenaBattle
from arxledger.engine.aggregator import SourceAggregator, SourceReadError
from arxledger.engine.payout import PayoutPlan, battle_pool, plan_battle_payouts
from arxledger.services.ledger_writer import insert_earning

logger = logging.getLogger(__name__)

_BATTLE_COLUMNS = (
    ArenaBattle.id,
    ArenaBattle.title,
    ArenaBattle.side_a_power,
    ArenaBattle.side_b_power,
    ArenaBattle.side_c_power,
    ArenaBattle.prize_pool,
    ArenaBattle.winner_side,
)


@dataclass
class EarningsScan:
    """Counts and samples from one pass over resolved battles."""

    battles_checked: int = 0
    battles_with_missing: int = 0
    missing_count: int = 0
    inserted_count: int = 0
    total_missing_points: int = 0
    inserted_points: int = 0
    already_distributed: int = 0
    sample_missing: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0
    next_offset: int = 0
    has_more: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "battles_checked": self.battles_checked,
            "battles_with_missing": self.battles_with_missing,
            "missing_count": self.missing_count,
            "inserted_count": self.inserted_count,
            "total_missing_points": self.total_missing_points,
            "already_distributed": self.already_distributed,
            "sample_missing": list(self.sample_missing),
        }


# ---------------------------------------------------------------------------
# Battle selection
# ---------------------------------------------------------------------------
def count_resolved_battles(engine: Engine) -> int:
    with Session(engine) as session:
        return session.scalar(
            select(func.count()).select_from(ArenaBattle).where(
                ArenaBattle.winner_side.is_not(None)
            )
        ) or 0


def load_resolved_battles(
    engine: Engine,
    *,
    offset: int = 0,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Resolved battles as plain dicts, oldest first."""
    stmt = (
        select(*_BATTLE_COLUMNS)
        .where(ArenaBattle.winner_side.is_not(None))
        .order_by(ArenaBattle.created_at, ArenaBattle.id)
        .offset(offset)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    with Session(engine) as session:
        return [dict(row) for row in session.execute(stmt).mappings()]


# ---------------------------------------------------------------------------
# Per-battle planning (read-only)
# ---------------------------------------------------------------------------
def plan_for_battle(aggregator: SourceAggregator, battle: dict[str, Any]) -> PayoutPlan:
    """Build the payout plan for one resolved battle.

    A non-positive pool short-circuits before any vote is read.
    """
    battle_id = battle["id"]
    pool = battle_pool(battle)
    if pool <= 0:
        logger.debug("Battle %s has no pool (%d); skipping", battle_id, pool)
        return PayoutPlan(battle_id=battle_id, pool=pool)

    votes = aggregator.fetch_all(
        "arena_votes",
        ("user_id", "power_spent", "early_stake_multiplier"),
        {"battle_id": battle_id, "side": battle["winner_side"]},
    )
    existing = aggregator.fetch_all("arena_earnings", ("user_id",), {"battle_id": battle_id})
    return plan_battle_payouts(
        battle_id, pool, votes, {row["user_id"] for row in existing},
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def scan_battle_earnings(
    engine: Engine,
    aggregator: SourceAggregator,
    *,
    apply: bool,
    batch_size: int,
    offset: int = 0,
    user_ids: Collection[str] | None = None,
    sample_limit: int = 100,
    max_workers: int = 1,
    actor: str | None = None,
) -> EarningsScan:
    """Check (and optionally restore) earnings for a batch of resolved battles.

    Parameters
    ----------
    apply : insert the missing rows; ``False`` only reports them
    batch_size, offset : battle window; ignored when *user_ids* is given
    user_ids : restrict missing rows to these winners and scan every
        resolved battle instead of one batch

    Raises
    ------
    StoreUnavailableError
        If the battles cannot be selected.  Nothing has been checked yet.
    """
    try:
        scan = EarningsScan(total=count_resolved_battles(engine))
        if user_ids is not None:
            battles = load_resolved_battles(engine)
        else:
            battles = load_resolved_battles(engine, offset=offset, limit=batch_size)
    except SQLAlchemyError as exc:
        raise StoreUnavailableError(f"Could not select resolved battles: {exc}") from exc
    wanted: set[str] | None = set(user_ids) if user_ids is not None else None

    logger.info(
        "Scanning %d resolved battles for missing earnings (offset=%d, apply=%s)",
        len(battles), offset, apply,
    )

    def _plan(battle: dict[str, Any]) -> PayoutPlan | SourceReadError:
        try:
            return plan_for_battle(aggregator, battle)
        except SourceReadError as exc:
            return exc

    for battle, outcome in zip(battles, map_bounded(_plan, battles, max_workers)):
        battle_id = battle["id"]
        if isinstance(outcome, SourceReadError):
            logger.error("Could not plan payouts for battle %s: %s", battle_id, outcome)
            scan.errors.append({"battle_id": battle_id, "error": str(outcome)})
            continue

        scan.battles_checked += 1
        missing = outcome.missing
        if wanted is not None:
            missing = [earning for earning in missing if earning.user_id in wanted]

        if not missing:
            if outcome.skipped_existing:
                scan.already_distributed += 1
            continue

        scan.battles_with_missing += 1
        for earning in missing:
            scan.missing_count += 1
            scan.total_missing_points += earning.total_earned
            if len(scan.sample_missing) < sample_limit:
                scan.sample_missing.append({
                    "battle_id": battle_id,
                    "battle_title": battle.get("title"),
                    **earning.as_dict(),
                })

            if not apply:
                continue
            try:
                inserted = insert_earning(
                    engine, battle_id=battle_id, earning=earning, actor=actor,
                )
            except SQLAlchemyError as exc:
                logger.exception(
                    "Failed to insert earning battle=%s user=%s earned=%d",
                    battle_id, earning.user_id, earning.total_earned,
                )
                scan.errors.append({
                    "battle_id": battle_id,
                    "user_id": earning.user_id,
                    "error": str(exc),
                })
                continue
            if inserted:
                scan.inserted_count += 1
                scan.inserted_points += earning.total_earned

    if wanted is not None:
        scan.next_offset, scan.has_more = len(battles), False
    else:
        scan.next_offset = offset + len(battles)
        scan.has_more = scan.next_offset < scan.total

    logger.info(
        "Earnings scan done: checked=%d missing=%d (%d pts) inserted=%d errors=%d",
        scan.battles_checked, scan.missing_count, scan.total_missing_points,
        scan.inserted_count, len(scan.errors),
    )
    return scan
