"""
arxledger.engine.payout — Proportional Battle Payouts
======================================================

Pure calculation for resolved battles.  No DB I/O inside this module; the
earnings service fetches votes / existing earnings and hands them in.

Rules:
  pool            = floor(side_a + side_b + side_c power + prize_pool)
  weighted power  = power_spent × early_stake_multiplier (NULL multiplier = 1)
  payout          = floor(weighted / total_weighted × pool)
  net profit      = payout − power_spent (unfloored);  pool_share_earned = max(0, net profit)

Winners that already have an earnings row are skipped entirely, and a payout
of zero is never inserted.  Because every payout is floored, the sum of all
payouts for a battle never exceeds the pool.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from arxledger.constants import ONE, ZERO, to_decimal


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class WinningStake:
    """One winner's (merged) stake on the winning side."""

    user_id: str
    power_spent: Decimal
    weighted_power: Decimal


@dataclass(frozen=True, slots=True)
class PlannedEarning:
    """An earnings row the calculator says is missing."""

    user_id: str
    stake: Decimal
    total_earned: int
    net_profit: Decimal

    @property
    def pool_share_earned(self) -> Decimal:
        return max(ZERO, self.net_profit)

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "stake": self.stake,
            "earned": self.total_earned,
            "net_profit": self.net_profit,
        }


@dataclass
class PayoutPlan:
    """Everything the calculator decided for one battle."""

    battle_id: str
    pool: int
    total_weighted: Decimal = ZERO
    winners: int = 0
    missing: list[PlannedEarning] = field(default_factory=list)
    skipped_existing: int = 0
    skipped_zero: int = 0

    @property
    def missing_points(self) -> int:
        return sum(earning.total_earned for earning in self.missing)


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------
def battle_pool(battle: Any) -> int:
    """Total pool for *battle* (ORM row, mapping, or any attribute holder)."""
    def _get(name: str) -> Decimal:
        if isinstance(battle, Mapping):
            return to_decimal(battle.get(name))
        return to_decimal(getattr(battle, name, None))

    return math.floor(
        _get("side_a_power") + _get("side_b_power") + _get("side_c_power") + _get("prize_pool")
    )


# ---------------------------------------------------------------------------
# Stakes
# ---------------------------------------------------------------------------
def merge_winning_votes(votes: Iterable[Mapping[str, Any]]) -> list[WinningStake]:
    """Collapse vote rows into one stake per user, keeping first-seen order.

    Earnings are one row per (battle, user), so a user who voted twice on the
    winning side is paid once on the combined weighted power.
    """
    merged: dict[str, tuple[Decimal, Decimal]] = {}
    for vote in votes:
        user_id = vote["user_id"]
        power = to_decimal(vote.get("power_spent"))
        multiplier = to_decimal(vote.get("early_stake_multiplier"), default=ONE)
        spent, weighted = merged.get(user_id, (ZERO, ZERO))
        merged[user_id] = (spent + power, weighted + power * multiplier)

    return [
        WinningStake(user_id=user_id, power_spent=spent, weighted_power=weighted)
        for user_id, (spent, weighted) in merged.items()
    ]


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------
def plan_battle_payouts(
    battle_id: str,
    pool: int,
    winning_votes: Iterable[Mapping[str, Any]],
    existing_user_ids: set[str],
) -> PayoutPlan:
    """Compute the missing earnings rows for one resolved battle.

    Parameters
    ----------
    battle_id : the battle being checked
    pool : :func:`battle_pool` of the battle; ``<= 0`` yields an empty plan
    winning_votes : rows with ``user_id``, ``power_spent``, ``early_stake_multiplier``
    existing_user_ids : users who already have an earnings row for this battle
    """
    plan = PayoutPlan(battle_id=battle_id, pool=pool)
    if pool <= 0:
        return plan

    stakes = merge_winning_votes(winning_votes)
    plan.winners = len(stakes)
    if not stakes:
        return plan

    # Existing rows are excluded from payment, not from the weighting
    plan.total_weighted = sum((stake.weighted_power for stake in stakes), ZERO)

    for stake in stakes:
        if stake.user_id in existing_user_ids:
            plan.skipped_existing += 1
            continue

        # weighted × pool ÷ total keeps exact shares exact (1/3 × 3 == 1)
        if plan.total_weighted > 0:
            payout = math.floor(stake.weighted_power * pool / plan.total_weighted)
        else:
            payout = 0
        if payout <= 0:
            plan.skipped_zero += 1
            continue

        # Only the payout is floored; the stake keeps its fractional part
        plan.missing.append(PlannedEarning(
            user_id=stake.user_id,
            stake=stake.power_spent,
            total_earned=payout,
            net_profit=payout - stake.power_spent,
        ))

    return plan
