"""
arxledger.services.reconciliation_service — Reconciliation Entry Point
=======================================================================

One call, three passes::

    reconcile(engine, "audit")                              # battles, never writes
    reconcile(engine, "restore_earnings", dry_run=False)    # battles, inserts earnings
    reconcile(engine, "rebuild_balances", dry_run=False)    # users, heals user_points

How ``rebuild_balances`` works:
    1. Pick the users: every match of ``user_filter`` (exact ``user_id`` or
       username substring), or one batch of ``user_points`` rows ordered by
       ``user_id`` starting at ``offset``.
    2. For each user (read-only, on the bounded worker pool): snapshot the
       stored row, gather the source sums, compile the canonical balance and
       classify the drift.  Dry runs and real runs share this step exactly.
    3. On the calling thread, in user order: hand ``restored`` and
       ``flagged`` decisions to the ledger writer unless ``dry_run``.

Any failure is attributed to one user or battle and recorded in ``errors``;
only an unreachable store, or a failure while selecting the batch, ends
the pass early (``fatal=True``, nothing processed).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Engine, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from arxledger.config import LedgerConfig
from arxledger.constants import MAX_BATCH_SIZE, DriftAction, ReconcileMode
from arxledger.database.engine import StoreUnavailableError, map_bounded, ping
from arxledger.database.models import Profile, UserPoints
from arxledger.engine.aggregator import SourceAggregator, SourceReadError
from arxledger.engine.balance import (
    CanonicalBalance,
    SourceTotals,
    compile_balance,
    gather_source_totals,
)
from arxledger.engine.drift import DriftDecision, DriftPolicy, StoredBalance, detect_drift
from arxledger.services.earnings_service import scan_battle_earnings
from arxledger.services.ledger_writer import (
    WriteConflictError,
    apply_balance_correction,
    record_flagged_drift,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------
@dataclass
class ReconciliationReport:
    """What one pass looked at and what it did."""

    mode: str
    dry_run: bool
    offset: int = 0
    fatal: bool = False
    processed: int = 0
    restored: int = 0
    flagged: int = 0
    no_change: int = 0
    written: int = 0
    total_points_restored: int = 0
    next_offset: int = 0
    has_more: bool = False
    total: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    earnings: dict[str, Any] = field(default_factory=dict)

    @property
    def errored(self) -> int:
        return len(self.errors)

    def as_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "dry_run": self.dry_run,
            "fatal": self.fatal,
            "processed": self.processed,
            "restored": self.restored,
            "flagged": self.flagged,
            "no_change": self.no_change,
            "errored": self.errored,
            "written": self.written,
            "total_points_restored": self.total_points_restored,
            "offset": self.offset,
            "next_offset": self.next_offset,
            "has_more": self.has_more,
            "total": self.total,
            "results": list(self.results),
            "errors": list(self.errors),
            "earnings": dict(self.earnings),
        }


@dataclass(frozen=True, slots=True)
class _UserOutcome:
    """Read-side result for one user, before any write."""

    user_id: str
    stored: StoredBalance
    totals: SourceTotals
    computed: CanonicalBalance
    decision: DriftDecision


# ---------------------------------------------------------------------------
# User selection
# ---------------------------------------------------------------------------
def match_users(engine: Engine, user_filter: str) -> list[str]:
    """User IDs whose id equals *user_filter* or whose username contains it.

    ``%`` and ``_`` in the filter match themselves, not any text.  A user
    with a profile but no ``user_points`` row still matches.
    """
    needle = user_filter.strip()
    if not needle:
        return []
    with Session(engine) as session:
        profile_ids = session.scalars(
            select(Profile.user_id).where(
                or_(
                    Profile.user_id == needle,
                    Profile.username.icontains(needle, autoescape=True),
                )
            )
        ).all()
        point_ids = session.scalars(
            select(UserPoints.user_id).where(UserPoints.user_id == needle)
        ).all()
    return sorted(set(profile_ids) | set(point_ids))


def count_users(engine: Engine) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(UserPoints)) or 0


def load_user_batch(engine: Engine, *, offset: int, limit: int) -> list[str]:
    """One window of ``user_points`` user IDs in primary-key order."""
    with Session(engine) as session:
        return list(session.scalars(
            select(UserPoints.user_id)
            .order_by(UserPoints.user_id)
            .offset(offset)
            .limit(limit)
        ))


def load_stored_balance(engine: Engine, user_id: str) -> StoredBalance:
    with Session(engine) as session:
        return StoredBalance.from_row(session.get(UserPoints, user_id))


def load_usernames(engine: Engine, user_ids: list[str]) -> dict[str, str | None]:
    if not user_ids:
        return {}
    with Session(engine) as session:
        rows = session.execute(
            select(Profile.user_id, Profile.username).where(Profile.user_id.in_(user_ids))
        ).all()
    return {row.user_id: row.username for row in rows}


# ---------------------------------------------------------------------------
# Per-user unit of work
# ---------------------------------------------------------------------------
def evaluate_user(
    engine: Engine,
    aggregator: SourceAggregator,
    user_id: str,
    policy: DriftPolicy,
) -> _UserOutcome:
    """Read, compile and classify one user.  Never writes."""
    stored = load_stored_balance(engine, user_id)
    totals = gather_source_totals(aggregator, user_id)
    computed = compile_balance(totals)
    decision = detect_drift(stored, computed, policy)
    return _UserOutcome(
        user_id=user_id,
        stored=stored,
        totals=totals,
        computed=computed,
        decision=decision,
    )


def _write_outcome(engine: Engine, outcome: _UserOutcome, actor: str | None) -> bool:
    """Persist a decision.  Returns whether anything was written."""
    kwargs = dict(
        user_id=outcome.user_id,
        stored=outcome.stored,
        computed=outcome.computed,
        decision=outcome.decision,
        sources=outcome.totals.as_dict(),
        actor=actor,
    )
    if outcome.decision.action is DriftAction.RESTORED:
        apply_balance_correction(engine, **kwargs)
        return True
    if outcome.decision.action is DriftAction.FLAGGED:
        return record_flagged_drift(engine, **kwargs)
    return False


def _rebuild_balances(
    engine: Engine,
    report: ReconciliationReport,
    cfg: LedgerConfig,
    *,
    batch_size: int,
    user_filter: str | None,
    actor: str | None,
) -> None:
    aggregator = SourceAggregator.from_config(engine, cfg)
    policy = DriftPolicy.from_config(cfg)

    try:
        report.total = count_users(engine)
        if user_filter is not None:
            user_ids = match_users(engine, user_filter)
        else:
            user_ids = load_user_batch(engine, offset=report.offset, limit=batch_size)
        usernames = load_usernames(engine, user_ids)
    except SQLAlchemyError as exc:
        raise StoreUnavailableError(f"Could not select users: {exc}") from exc

    logger.info(
        "Rebuilding balances for %d users (offset=%d, dry_run=%s)",
        len(user_ids), report.offset, report.dry_run,
    )

    def _evaluate(user_id: str) -> _UserOutcome | Exception:
        try:
            return evaluate_user(engine, aggregator, user_id, policy)
        except (SourceReadError, SQLAlchemyError) as exc:
            return exc

    outcomes = map_bounded(_evaluate, user_ids, cfg.max_workers)

    for user_id, outcome in zip(user_ids, outcomes):
        if isinstance(outcome, Exception):
            logger.error("Could not compute balance for %s: %s", user_id, outcome)
            report.errors.append({"user_id": user_id, "error": str(outcome)})
            continue

        report.processed += 1
        decision = outcome.decision
        written = False
        if not report.dry_run:
            try:
                written = _write_outcome(engine, outcome, actor)
            except WriteConflictError as exc:
                logger.warning("Skipped %s: %s", user_id, exc)
                report.errors.append({"user_id": user_id, "error": str(exc), "conflict": True})
            except SQLAlchemyError as exc:
                logger.exception(
                    "Failed to write balance for %s (stored=%d computed=%d)",
                    user_id, outcome.stored.total, outcome.computed.total,
                )
                report.errors.append({"user_id": user_id, "error": str(exc)})

        if decision.action is DriftAction.RESTORED:
            report.restored += 1
            report.total_points_restored += decision.points_restored
        elif decision.action is DriftAction.FLAGGED:
            report.flagged += 1
        else:
            report.no_change += 1
        report.written += int(written)

        report.results.append({
            "user_id": user_id,
            "username": usernames.get(user_id),
            "stored": outcome.stored.as_dict(),
            "computed": outcome.computed.as_dict(),
            "diff": dict(decision.diff),
            "action": decision.action.value,
            "points_restored": decision.points_restored,
            "written": written,
            "sources": outcome.totals.as_dict(),
        })

    if user_filter is not None:
        report.next_offset, report.has_more = report.offset, False
    else:
        report.next_offset = report.offset + len(user_ids)
        report.has_more = report.next_offset < report.total


def _scan_earnings(
    engine: Engine,
    report: ReconciliationReport,
    cfg: LedgerConfig,
    *,
    apply: bool,
    batch_size: int,
    user_filter: str | None,
    actor: str | None,
) -> None:
    user_ids = None
    if user_filter is not None:
        try:
            user_ids = match_users(engine, user_filter)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Could not select users: {exc}") from exc

    scan = scan_battle_earnings(
        engine,
        SourceAggregator.from_config(engine, cfg),
        apply=apply,
        batch_size=batch_size,
        offset=report.offset,
        user_ids=user_ids,
        sample_limit=cfg.sample_limit,
        max_workers=cfg.max_workers,
        actor=actor,
    )
    report.processed = scan.battles_checked
    report.restored = scan.inserted_count
    report.written = scan.inserted_count
    report.total_points_restored = scan.inserted_points
    report.total = scan.total
    report.next_offset = report.offset if user_filter is not None else scan.next_offset
    report.has_more = scan.has_more
    report.errors.extend(scan.errors)
    report.earnings = scan.as_dict()


def _abort(report: ReconciliationReport, exc: StoreUnavailableError) -> ReconciliationReport:
    # Raised only before any user or battle was processed
    logger.error("Reconciliation aborted: %s", exc)
    report.fatal = True
    report.processed = 0
    report.total = 0
    report.next_offset, report.has_more = report.offset, False
    report.errors.append({"error": str(exc)})
    return report


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def reconcile(
    engine: Engine,
    mode: str | ReconcileMode,
    *,
    dry_run: bool = True,
    batch_size: int | None = None,
    offset: int = 0,
    user_filter: str | None = None,
    config: LedgerConfig | None = None,
    actor: str | None = None,
) -> ReconciliationReport:
    """Run one reconciliation pass and return its report.

    Raises
    ------
    ValueError
        For an unknown *mode*, a *batch_size* outside 1..1000 or a negative
        *offset*.  Nothing else escapes: per-entity failures are listed in
        ``report.errors``; an unreachable store, or one that fails while
        the users or battles are being selected, yields ``fatal=True``.
    """
    try:
        mode = ReconcileMode(mode)
    except ValueError:
        valid = ", ".join(m.value for m in ReconcileMode)
        raise ValueError(f"Unknown mode {mode!r} (expected one of: {valid})") from None

    cfg = config or LedgerConfig()
    batch_size = cfg.batch_size if batch_size is None else batch_size
    if not 1 <= batch_size <= MAX_BATCH_SIZE:
        raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE} (got {batch_size})")
    if offset < 0:
        raise ValueError(f"offset must be >= 0 (got {offset})")

    # audit never writes regardless of the flag
    effective_dry_run = dry_run or mode is ReconcileMode.AUDIT
    report = ReconciliationReport(mode=mode.value, dry_run=effective_dry_run, offset=offset)
    report.next_offset = offset

    try:
        ping(engine)
    except StoreUnavailableError as exc:
        return _abort(report, exc)

    logger.info(
        "Reconciliation started: mode=%s dry_run=%s batch_size=%d offset=%d user_filter=%r",
        mode.value, effective_dry_run, batch_size, offset, user_filter,
    )

    try:
        if mode is ReconcileMode.REBUILD_BALANCES:
            _rebuild_balances(
                engine, report, cfg,
                batch_size=batch_size, user_filter=user_filter, actor=actor,
            )
        else:
            _scan_earnings(
                engine, report, cfg,
                apply=not effective_dry_run,
                batch_size=batch_size, user_filter=user_filter, actor=actor,
            )
    except StoreUnavailableError as exc:
        return _abort(report, exc)

    logger.info(
        "Reconciliation finished: mode=%s processed=%d restored=%d flagged=%d "
        "no_change=%d written=%d errors=%d",
        mode.value, report.processed, report.restored, report.flagged,
        report.no_change, report.written, report.errored,
    )
    return report
