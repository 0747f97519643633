"""
arxledger.services.ledger_writer — Audited Balance & Earnings Writes
=====================================================================

The only code path that mutates ``user_points`` or inserts ``arena_earnings``
on behalf of the reconciliation engine.  Every write follows the pattern:

  1. Begin a transaction scoped to ONE user or ONE (battle, user) pair
  2. Re-read the target row and check it still matches the snapshot the
     decision was made against (compare-then-write)
  3. Apply the change (``updated_at`` always refreshed on balance writes)
  4. Append a ``points_audit_log`` row in the same transaction
  5. Commit

No cross-user transaction is ever opened, so a pass can stop between users
without leaving anything half-written.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError

from arxledger.constants import AuditType, DriftAction
from arxledger.database.engine import get_session
from arxledger.database.models import ArenaEarning, PointsAuditLog, UserPoints
from arxledger.engine.balance import CanonicalBalance
from arxledger.engine.drift import DriftDecision, StoredBalance
from arxledger.engine.payout import PlannedEarning

logger = logging.getLogger(__name__)


class WriteConflictError(RuntimeError):
    """The stored row changed between the read and the write."""

    def __init__(self, user_id: str, expected: int | None, found: int | None) -> None:
        super().__init__(
            f"user_points for {user_id} changed during reconciliation "
            f"(expected total {expected}, found {found})"
        )
        self.user_id = user_id
        self.expected = expected
        self.found = found


# ---------------------------------------------------------------------------
# Audit helpers
# ---------------------------------------------------------------------------
def _balance_audit_entry(
    *,
    user_id: str,
    stored: StoredBalance,
    computed: CanonicalBalance,
    decision: DriftDecision,
    sources: dict[str, int] | None,
    actor: str | None,
) -> PointsAuditLog:
    diff = decision.diff
    return PointsAuditLog(
        user_id=user_id,
        audit_type=AuditType.RECONCILIATION.value,
        stored_mining_points=stored.mining,
        stored_task_points=stored.task,
        stored_social_points=stored.social,
        stored_referral_points=stored.referral,
        stored_total_points=stored.total,
        computed_mining_points=computed.mining,
        computed_task_points=computed.task,
        computed_social_points=computed.social,
        computed_referral_points=computed.referral,
        computed_total_points=computed.total,
        mining_diff=diff.get("mining", 0),
        task_diff=diff.get("task", 0),
        social_diff=diff.get("social", 0),
        referral_diff=diff.get("referral", 0),
        total_diff=diff.get("total", 0),
        points_restored=decision.points_restored,
        action_taken=decision.action.value,
        notes=None if stored.exists else "user_points row created",
        details={"sources": sources} if sources else None,
        created_by=actor,
        created_at=datetime.now(UTC),
    )


# ---------------------------------------------------------------------------
# Balance writes
# ---------------------------------------------------------------------------
def apply_balance_correction(
    engine: Engine,
    *,
    user_id: str,
    stored: StoredBalance,
    computed: CanonicalBalance,
    decision: DriftDecision,
    sources: dict[str, int] | None = None,
    actor: str | None = None,
) -> None:
    """Overwrite the user's balance with *computed* and audit the change.

    Raises
    ------
    WriteConflictError
        If the row's ``total_points`` no longer matches ``stored.total``
        (or a row appeared / vanished since it was read).
    ValueError
        If *decision* is not a ``restored`` decision.
    """
    if decision.action is not DriftAction.RESTORED:
        raise ValueError(f"Cannot apply a {decision.action.value!r} decision")

    with get_session(engine) as session:
        row = session.get(UserPoints, user_id, with_for_update=True)
        if row is None:
            if stored.exists:
                raise WriteConflictError(user_id, stored.total, None)
            row = UserPoints(user_id=user_id)
            session.add(row)
        elif not stored.exists or int(row.total_points or 0) != stored.total:
            raise WriteConflictError(
                user_id, stored.total if stored.exists else None, int(row.total_points or 0),
            )

        row.mining_points = computed.mining
        row.task_points = computed.task
        row.social_points = computed.social
        row.referral_points = computed.referral
        row.total_points = computed.total
        row.updated_at = datetime.now(UTC)

        session.add(_balance_audit_entry(
            user_id=user_id,
            stored=stored,
            computed=computed,
            decision=decision,
            sources=sources,
            actor=actor,
        ))

    logger.info(
        "Balance restored for %s: %d → %d (%+d)",
        user_id, stored.total, computed.total, decision.total_diff,
    )


def record_flagged_drift(
    engine: Engine,
    *,
    user_id: str,
    stored: StoredBalance,
    computed: CanonicalBalance,
    decision: DriftDecision,
    sources: dict[str, int] | None = None,
    actor: str | None = None,
) -> bool:
    """Audit a drift that was held back for review.

    Returns ``False`` without writing when the user's latest audit row is
    already this exact flag, so repeated passes over unchanged data write
    nothing.
    """
    with get_session(engine) as session:
        latest = session.scalar(
            select(PointsAuditLog)
            .where(PointsAuditLog.user_id == user_id)
            .order_by(PointsAuditLog.id.desc())
            .limit(1)
        )
        if (
            latest is not None
            and latest.action_taken == DriftAction.FLAGGED.value
            and latest.stored_total_points == stored.total
            and latest.computed_total_points == computed.total
        ):
            return False

        session.add(_balance_audit_entry(
            user_id=user_id,
            stored=stored,
            computed=computed,
            decision=decision,
            sources=sources,
            actor=actor,
        ))

    logger.warning(
        "Drift flagged for %s: stored=%d computed=%d (%+d), not applied",
        user_id, stored.total, computed.total, decision.total_diff,
    )
    return True


# ---------------------------------------------------------------------------
# Earnings writes
# ---------------------------------------------------------------------------
def insert_earning(
    engine: Engine,
    *,
    battle_id: str,
    earning: PlannedEarning,
    actor: str | None = None,
) -> bool:
    """Insert one missing ``arena_earnings`` row and its audit entry.

    Returns ``False`` (and writes nothing) if a row for ``(battle_id,
    user_id)`` already exists, either seen up front or caught by the
    unique constraint when another writer got there first.
    """
    with get_session(engine) as session:
        existing = session.scalar(
            select(ArenaEarning.id).where(
                ArenaEarning.battle_id == battle_id,
                ArenaEarning.user_id == earning.user_id,
            )
        )
        if existing is not None:
            logger.debug(
                "Earning already recorded: battle=%s user=%s", battle_id, earning.user_id,
            )
            return False

        try:
            session.add(ArenaEarning(
                battle_id=battle_id,
                user_id=earning.user_id,
                stake_amount=earning.stake,
                total_earned=earning.total_earned,
                pool_share_earned=earning.pool_share_earned,
                bonus_earned=0,
                streak_bonus=0,
                is_winner=True,
            ))
            session.flush()  # Trigger the (battle_id, user_id) UNIQUE check
        except IntegrityError:
            session.rollback()
            logger.debug(
                "Duplicate earning skipped: battle=%s user=%s", battle_id, earning.user_id,
            )
            return False

        session.add(PointsAuditLog(
            user_id=earning.user_id,
            battle_id=battle_id,
            audit_type=AuditType.EARNINGS_RESTORE.value,
            stored_total_points=0,
            computed_total_points=earning.total_earned,
            total_diff=earning.total_earned,
            points_restored=earning.total_earned,
            action_taken=DriftAction.RESTORED.value,
            details={
                "stake": str(earning.stake),
                "net_profit": str(earning.net_profit),
                "pool_share_earned": str(earning.pool_share_earned),
            },
            created_by=actor,
            created_at=datetime.now(UTC),
        ))

    logger.info(
        "Earning restored: battle=%s user=%s earned=%d (stake=%s)",
        battle_id, earning.user_id, earning.total_earned, earning.stake,
    )
    return True
