"""
arxledger.constants — Shared Constants & Helpers
=================================================

Single source of truth for point categories, reconciliation modes, drift
actions and the numeric coercion used by every sum in the engine.
Import from here instead of re-declaring string literals in services.
"""

from __future__ import annotations

import enum
import math
from decimal import Decimal, InvalidOperation

# ---------------------------------------------------------------------------
# Point categories — ORDER MATTERS
# ---------------------------------------------------------------------------
# A negative arena/transfer net is absorbed in exactly this order.  Mining is
# the least protected category, referral the most.
CATEGORIES: tuple[str, ...] = ("mining", "task", "social", "referral")


class ReconcileMode(enum.StrEnum):
    """Passes exposed through :func:`arxledger.services.reconciliation_service.reconcile`."""
    AUDIT = "audit"
    RESTORE_EARNINGS = "restore_earnings"
    REBUILD_BALANCES = "rebuild_balances"


class DriftAction(enum.StrEnum):
    """Outcome of comparing a stored balance with its canonical projection."""
    NO_CHANGE = "no_change"
    RESTORED = "restored"
    FLAGGED = "flagged"


class AuditType(enum.StrEnum):
    """Values written to ``points_audit_log.audit_type``."""
    RECONCILIATION = "reconciliation"
    EARNINGS_RESTORE = "earnings_restore"


# ---------------------------------------------------------------------------
# Paging / batching defaults
# ---------------------------------------------------------------------------
DEFAULT_PAGE_SIZE = 1000
DEFAULT_BATCH_SIZE = 100
MAX_BATCH_SIZE = 1000

ZERO = Decimal(0)
ONE = Decimal(1)


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------
def to_decimal(value: object, default: Decimal = ZERO) -> Decimal:
    """Coerce a column value to :class:`Decimal`.

    ``None`` and unparseable values fall back to *default*.  Floats go through
    ``str()`` so ``0.1`` stays ``Decimal("0.1")`` instead of its binary
    expansion.
    """
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def floor_points(value: object) -> int:
    """Floor any numeric value to whole points."""
    return math.floor(to_decimal(value))
