"""
arxledger.engine.drift — Drift Classification Policy
=====================================================

Compares a stored ``user_points`` snapshot with its canonical projection and
decides what the healer should do.  No I/O; the same inputs always produce
the same decision, which is what makes dry runs comparable to real runs.

Actions:
    no_change — |total diff| < 1
    flagged   — drift exceeds a configured safety threshold; not applied
    restored  — overwrite the stored row with the canonical categories
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from arxledger.constants import CATEGORIES, DriftAction

if TYPE_CHECKING:
    from arxledger.config import LedgerConfig
    from arxledger.engine.balance import CanonicalBalance


# ---------------------------------------------------------------------------
# StoredBalance — snapshot of the cached row
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StoredBalance:
    """The ``user_points`` row as read at the start of a user's unit of work.

    ``total`` is kept as stored (not re-derived), since a drifted row may
    violate the category-sum invariant.
    """

    mining: int = 0
    task: int = 0
    social: int = 0
    referral: int = 0
    total: int = 0
    exists: bool = True

    @classmethod
    def from_row(cls, row) -> StoredBalance:
        if row is None:
            return cls(exists=False)
        return cls(
            mining=int(row.mining_points or 0),
            task=int(row.task_points or 0),
            social=int(row.social_points or 0),
            referral=int(row.referral_points or 0),
            total=int(row.total_points or 0),
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "mining": self.mining,
            "task": self.task,
            "social": self.social,
            "referral": self.referral,
            "total": self.total,
        }


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DriftPolicy:
    """When to hold a correction back for human review.

    ``flag_threshold`` is an absolute number of points; ``flag_ratio`` is a
    fraction of the stored total (a stored total of 0 never trips the ratio).
    ``None`` disables a check.
    """

    flag_threshold: int | None = None
    flag_ratio: float | None = None

    @classmethod
    def from_config(cls, cfg: LedgerConfig) -> DriftPolicy:
        return cls(flag_threshold=cfg.flag_threshold, flag_ratio=cfg.flag_ratio)

    def should_flag(self, stored_total: int, total_diff: int) -> bool:
        magnitude = abs(total_diff)
        if self.flag_threshold is not None and magnitude > self.flag_threshold:
            return True
        if self.flag_ratio is not None and stored_total > 0:
            return magnitude > stored_total * self.flag_ratio
        return False


@dataclass(frozen=True, slots=True)
class DriftDecision:
    """Outcome of :func:`detect_drift`."""

    action: DriftAction
    diff: dict[str, int] = field(default_factory=dict)
    points_restored: int = 0

    @property
    def total_diff(self) -> int:
        return self.diff.get("total", 0)


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------
def detect_drift(
    stored: StoredBalance,
    computed: CanonicalBalance,
    policy: DriftPolicy | None = None,
) -> DriftDecision:
    """Classify the difference between *stored* and *computed*.

    ``diff`` is ``computed - stored`` per category and for the total.
    """
    policy = policy or DriftPolicy()
    computed_values = computed.as_dict()
    stored_values = stored.as_dict()
    diff = {
        key: computed_values[key] - stored_values[key]
        for key in (*CATEGORIES, "total")
    }

    if abs(diff["total"]) < 1:
        return DriftDecision(action=DriftAction.NO_CHANGE, diff=diff)

    if policy.should_flag(stored.total, diff["total"]):
        return DriftDecision(action=DriftAction.FLAGGED, diff=diff)

    return DriftDecision(
        action=DriftAction.RESTORED, diff=diff, points_restored=diff["total"],
    )
