"""
arxledger.engine.balance — Canonical Balance Projection
========================================================

Pure projection from event-table sums to the four point categories.
No writes; :func:`gather_source_totals` only reads through the aggregator.

Pipeline:
  SourceTotals → floor per category → arena net + transfer net
  → credit social (surplus) or cascade deficit (mining → task → social → referral)
  → clamp ≥ 0 → CanonicalBalance
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import TYPE_CHECKING

from arxledger.constants import CATEGORIES, ZERO, floor_points

if TYPE_CHECKING:
    from arxledger.engine.aggregator import SourceAggregator

logger = logging.getLogger(__name__)

__all__ = [
    "CATEGORY_ACCESSORS",
    "CanonicalBalance",
    "SourceTotals",
    "apply_deficit",
    "compile_balance",
    "gather_source_totals",
]


# ---------------------------------------------------------------------------
# SourceTotals — raw sums read from the event tables
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SourceTotals:
    """Unfloored sums for one user, as read from the event tables."""

    mining: Decimal = ZERO
    task: Decimal = ZERO
    checkin: Decimal = ZERO
    social: Decimal = ZERO
    referral: Decimal = ZERO
    arena_earned: Decimal = ZERO
    arena_staked: Decimal = ZERO
    transfers_received: Decimal = ZERO
    transfers_sent: Decimal = ZERO

    def as_dict(self) -> dict[str, int]:
        """Floored breakdown for reports (``sources`` in result rows)."""
        arena_net = floor_points(self.arena_earned) - floor_points(self.arena_staked)
        return {
            "mining": floor_points(self.mining),
            "task": floor_points(self.task),
            "checkin": floor_points(self.checkin),
            "social": floor_points(self.social),
            "referral": floor_points(self.referral),
            "arena_earned": floor_points(self.arena_earned),
            "arena_staked": floor_points(self.arena_staked),
            "arena_net": arena_net,
            "transfers_received": floor_points(self.transfers_received),
            "transfers_sent": floor_points(self.transfers_sent),
            "transfer_net": floor_points(self.transfers_received),
        }


# ---------------------------------------------------------------------------
# CanonicalBalance — output of the projection
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CanonicalBalance:
    """Four non-negative categories; ``total`` is always their sum."""

    mining: int = 0
    task: int = 0
    social: int = 0
    referral: int = 0
    arena_net: int = 0
    transfer_net: int = 0

    @property
    def total(self) -> int:
        return self.mining + self.task + self.social + self.referral

    def as_dict(self) -> dict[str, int]:
        return {
            "mining": self.mining,
            "task": self.task,
            "social": self.social,
            "referral": self.referral,
            "total": self.total,
        }


# ---------------------------------------------------------------------------
# Ordered category accessors
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CategoryAccessor:
    """Typed get/set pair for one category of a :class:`CanonicalBalance`."""

    name: str
    get: Callable[[CanonicalBalance], int]
    set: Callable[[CanonicalBalance, int], CanonicalBalance]


def _accessor(name: str) -> CategoryAccessor:
    return CategoryAccessor(
        name=name,
        get=lambda balance: getattr(balance, name),
        set=lambda balance, value: replace(balance, **{name: value}),
    )


# Deficit absorption order: mining first, referral last
CATEGORY_ACCESSORS: tuple[CategoryAccessor, ...] = tuple(_accessor(c) for c in CATEGORIES)


def apply_deficit(balance: CanonicalBalance, deficit: int) -> CanonicalBalance:
    """Subtract *deficit* across categories in :data:`CATEGORY_ACCESSORS` order.

    Each category is drained to zero before the next one is touched.  Any
    deficit left after referral is dropped (categories never go negative).
    """
    remaining = max(0, deficit)
    for accessor in CATEGORY_ACCESSORS:
        if remaining <= 0:
            break
        current = max(0, accessor.get(balance))
        taken = min(current, remaining)
        balance = accessor.set(balance, current - taken)
        remaining -= taken
    if remaining > 0:
        logger.debug("Deficit of %d points left unabsorbed after all categories", remaining)
    return balance


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------
def compile_balance(totals: SourceTotals) -> CanonicalBalance:
    """Project raw sums onto the canonical four-category balance.

    This is a PURE function: the same totals always give the same balance.
    """
    balance = CanonicalBalance(
        mining=floor_points(totals.mining),
        task=floor_points(totals.task + totals.checkin),
        social=floor_points(totals.social),
        referral=floor_points(totals.referral),
        arena_net=floor_points(totals.arena_earned) - floor_points(totals.arena_staked),
        transfer_net=floor_points(totals.transfers_received),
    )

    extra = balance.arena_net + balance.transfer_net
    if extra >= 0:
        balance = replace(balance, social=balance.social + extra)
    else:
        balance = apply_deficit(balance, -extra)

    return replace(
        balance,
        mining=max(0, balance.mining),
        task=max(0, balance.task),
        social=max(0, balance.social),
        referral=max(0, balance.referral),
    )


def gather_source_totals(aggregator: SourceAggregator, user_id: str) -> SourceTotals:
    """Read every source sum for *user_id* (paged, read-only)."""
    return SourceTotals(
        mining=aggregator.sum(
            "mining_sessions", "arx_mined", {"user_id": user_id, "is_active": False}
        ),
        task=aggregator.sum(
            "user_tasks", "points_awarded", {"user_id": user_id, "status": "completed"}
        ),
        checkin=aggregator.sum("daily_checkins", "points_awarded", {"user_id": user_id}),
        social=aggregator.sum(
            "social_submissions", "points_awarded", {"user_id": user_id, "status": "approved"}
        ),
        referral=aggregator.sum("referrals", "points_awarded", {"referrer_id": user_id}),
        arena_earned=aggregator.sum("arena_earnings", "total_earned", {"user_id": user_id}),
        arena_staked=aggregator.sum("arena_votes", "power_spent", {"user_id": user_id}),
        transfers_received=aggregator.sum(
            "nexus_transactions", "amount", {"receiver_id": user_id}
        ),
        transfers_sent=aggregator.sum("nexus_transactions", "amount", {"sender_id": user_id}),
    )
