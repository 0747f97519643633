"""
tests/test_reconciliation_service.py — Balance Rebuild Integration Tests
=========================================================================
Covers reconcile("rebuild_balances"): dry-run equivalence, idempotent
re-runs, audit rows, cursors, user filters and per-user failure isolation.

Uses an in-memory SQLite database via the shared conftest fixtures.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from arxledger.config import LedgerConfig
from arxledger.database.engine import StoreUnavailableError
from arxledger.database.models import (
    MiningSession,
    PointsAuditLog,
    Referral,
    UserPoints,
    UserTask,
)
from arxledger.engine.aggregator import SourceReadError
from arxledger.engine.balance import gather_source_totals
from arxledger.services.reconciliation_service import match_users, reconcile
from conftest import add_rows, seed_user


@pytest.fixture
def engine(db_engine):
    """Re-use the shared conftest db_engine (SQLite, StaticPool)."""
    return db_engine


@pytest.fixture
def seeded(engine):
    """Three users: one drifted low, one drifted high, one correct."""
    seed_user(engine, "u-a", username="alice", mining=0, task=0)
    seed_user(engine, "u-b", username="bob", task=50)
    seed_user(engine, "u-c", username="carol", mining=10)
    add_rows(
        engine,
        MiningSession(user_id="u-a", arx_mined=Decimal("10.7"), is_active=False),
        UserTask(user_id="u-a", status="completed", points_awarded=20),
        Referral(referrer_id="u-a", referred_id="u-c", points_awarded=5),
        UserTask(user_id="u-b", status="completed", points_awarded=30),
        MiningSession(user_id="u-c", arx_mined=10, is_active=False),
    )
    return engine


def _audit_count(engine) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(PointsAuditLog))


def _totals(engine) -> dict[str, int]:
    with Session(engine) as session:
        return {row.user_id: row.total_points for row in session.scalars(select(UserPoints))}


class TestRebuildBalances:

    def test_dry_run_reports_without_writing(self, seeded, ledger_config):
        report = reconcile(seeded, "rebuild_balances", dry_run=True, config=ledger_config)

        assert report.processed == 3
        assert report.restored == 2
        assert report.no_change == 1
        assert report.written == 0
        assert report.total_points_restored == 35 - 20
        assert _totals(seeded) == {"u-a": 0, "u-b": 50, "u-c": 10}
        assert _audit_count(seeded) == 0

    def test_apply_heals_balances(self, seeded, ledger_config):
        report = reconcile(seeded, "rebuild_balances", dry_run=False, config=ledger_config)

        assert report.written == 2
        assert _totals(seeded) == {"u-a": 35, "u-b": 30, "u-c": 10}
        with Session(seeded) as session:
            row = session.get(UserPoints, "u-a")
            assert (row.mining_points, row.task_points, row.referral_points) == (10, 20, 5)
        assert _audit_count(seeded) == 2

    def test_dry_run_and_apply_compute_identically(self, seeded, ledger_config):
        dry = reconcile(seeded, "rebuild_balances", dry_run=True, config=ledger_config)
        applied = reconcile(seeded, "rebuild_balances", dry_run=False, config=ledger_config)

        assert [r["computed"] for r in dry.results] == [r["computed"] for r in applied.results]
        assert [r["action"] for r in dry.results] == [r["action"] for r in applied.results]

    def test_second_apply_writes_nothing(self, seeded, ledger_config):
        reconcile(seeded, "rebuild_balances", dry_run=False, config=ledger_config)
        audits_after_first = _audit_count(seeded)

        second = reconcile(seeded, "rebuild_balances", dry_run=False, config=ledger_config)

        assert second.written == 0
        assert second.restored == 0
        assert second.no_change == 3
        assert _audit_count(seeded) == audits_after_first

    def test_result_rows_carry_usernames_and_sources(self, seeded, ledger_config):
        report = reconcile(seeded, "rebuild_balances", config=ledger_config)
        row = report.results[0]

        assert row["user_id"] == "u-a"
        assert row["username"] == "alice"
        assert row["stored"]["total"] == 0
        assert row["computed"] == {"mining": 10, "task": 20, "social": 0, "referral": 5, "total": 35}
        assert row["diff"]["total"] == 35
        assert row["action"] == "restored"
        assert row["points_restored"] == 35
        assert row["sources"]["mining"] == 10

    def test_report_dict_shape(self, seeded, ledger_config):
        data = reconcile(seeded, "rebuild_balances", config=ledger_config).as_dict()
        assert {
            "mode", "dry_run", "fatal", "processed", "restored", "flagged", "no_change",
            "errored", "written", "total_points_restored", "offset", "next_offset",
            "has_more", "total", "results", "errors", "earnings",
        } == set(data)
        assert data["mode"] == "rebuild_balances"


class TestFlagging:

    def test_large_drift_is_flagged_not_applied(self, seeded):
        cfg = LedgerConfig(max_workers=1, flag_threshold=25)
        report = reconcile(seeded, "rebuild_balances", dry_run=False, config=cfg)

        assert report.flagged == 1      # u-a (+35)
        assert report.restored == 1     # u-b (-20)
        assert _totals(seeded)["u-a"] == 0
        with Session(seeded) as session:
            actions = sorted(session.scalars(select(PointsAuditLog.action_taken)))
        assert actions == ["flagged", "restored"]

    def test_repeated_flag_is_not_rewritten(self, seeded):
        cfg = LedgerConfig(max_workers=1, flag_threshold=25)
        reconcile(seeded, "rebuild_balances", dry_run=False, config=cfg)
        second = reconcile(seeded, "rebuild_balances", dry_run=False, config=cfg)

        assert second.flagged == 1
        assert second.written == 0
        assert _audit_count(seeded) == 2


class TestBatching:

    def test_cursor_advances_across_batches(self, seeded, ledger_config):
        first = reconcile(seeded, "rebuild_balances", batch_size=2, config=ledger_config)
        assert [r["user_id"] for r in first.results] == ["u-a", "u-b"]
        assert (first.total, first.next_offset, first.has_more) == (3, 2, True)

        second = reconcile(
            seeded, "rebuild_balances", batch_size=2, offset=first.next_offset,
            config=ledger_config,
        )
        assert [r["user_id"] for r in second.results] == ["u-c"]
        assert (second.next_offset, second.has_more) == (3, False)

    def test_batch_size_defaults_to_config(self, seeded):
        report = reconcile(seeded, "rebuild_balances", config=LedgerConfig(max_workers=1, batch_size=1))
        assert report.processed == 1

    @pytest.mark.parametrize("batch_size", [0, -1, 1001])
    def test_invalid_batch_size(self, engine, batch_size):
        with pytest.raises(ValueError):
            reconcile(engine, "rebuild_balances", batch_size=batch_size)

    def test_invalid_mode(self, engine):
        with pytest.raises(ValueError):
            reconcile(engine, "rebuild_everything")


class TestUserFilter:

    def test_filter_by_username_substring(self, seeded, ledger_config):
        report = reconcile(seeded, "rebuild_balances", user_filter="ALI", config=ledger_config)
        assert [r["user_id"] for r in report.results] == ["u-a"]
        assert report.has_more is False

    def test_filter_by_exact_user_id(self, seeded, ledger_config):
        report = reconcile(seeded, "rebuild_balances", user_filter="u-c", config=ledger_config)
        assert [r["user_id"] for r in report.results] == ["u-c"]

    def test_filter_bypasses_batch_size(self, seeded, ledger_config):
        report = reconcile(
            seeded, "rebuild_balances", user_filter="L", batch_size=1, config=ledger_config,
        )
        assert [r["user_id"] for r in report.results] == ["u-a", "u-c"]

    def test_no_match_processes_nothing(self, seeded, ledger_config):
        report = reconcile(seeded, "rebuild_balances", user_filter="zed", config=ledger_config)
        assert report.processed == 0
        assert report.errors == []

    def test_wildcards_match_literally(self, engine):
        seed_user(engine, "u-1", username="a_b")
        seed_user(engine, "u-2", username="axb")
        seed_user(engine, "u-3", username="50%off")

        assert match_users(engine, "a_b") == ["u-1"]
        assert match_users(engine, "%") == ["u-3"]
        assert match_users(engine, "_") == ["u-1"]

    def test_user_without_points_row_gets_one(self, engine, ledger_config):
        seed_user(engine, "u-new", username="newbie", with_points_row=False)
        add_rows(engine, UserTask(user_id="u-new", status="completed", points_awarded=12))

        assert match_users(engine, "newbie") == ["u-new"]
        report = reconcile(
            engine, "rebuild_balances", dry_run=False, user_filter="newbie", config=ledger_config,
        )

        assert report.results[0]["stored"]["total"] == 0
        assert report.restored == 1
        assert _totals(engine) == {"u-new": 12}


class TestFailures:

    def test_unreachable_store_is_fatal(self, seeded, ledger_config):
        with patch(
            "arxledger.services.reconciliation_service.ping",
            side_effect=StoreUnavailableError("connection refused"),
        ):
            report = reconcile(seeded, "rebuild_balances", dry_run=False, config=ledger_config)

        assert report.fatal is True
        assert report.processed == 0
        assert report.errored == 1
        assert _audit_count(seeded) == 0

    def test_read_failure_skips_only_that_user(self, seeded, ledger_config):
        def flaky(aggregator, user_id):
            if user_id == "u-b":
                raise SourceReadError("user_tasks", 0, 3, OSError("timeout"))
            return gather_source_totals(aggregator, user_id)

        with patch(
            "arxledger.services.reconciliation_service.gather_source_totals", side_effect=flaky,
        ):
            report = reconcile(seeded, "rebuild_balances", dry_run=False, config=ledger_config)

        assert report.processed == 2
        assert report.errors[0]["user_id"] == "u-b"
        assert _totals(seeded) == {"u-a": 35, "u-b": 50, "u-c": 10}

    def test_write_failure_continues_batch(self, seeded, ledger_config):
        from arxledger.services import reconciliation_service

        real_apply = reconciliation_service.apply_balance_correction

        def failing(engine, **kwargs):
            if kwargs["user_id"] == "u-a":
                raise OperationalError("UPDATE user_points", {}, Exception("deadlock"))
            return real_apply(engine, **kwargs)

        with patch.object(reconciliation_service, "apply_balance_correction", side_effect=failing):
            report = reconcile(seeded, "rebuild_balances", dry_run=False, config=ledger_config)

        assert report.errored == 1
        assert report.errors[0]["user_id"] == "u-a"
        assert report.written == 1
        assert _totals(seeded)["u-b"] == 30

    def test_concurrent_change_is_reported_as_conflict(self, seeded, ledger_config):
        from arxledger.services import reconciliation_service

        real_load = reconciliation_service.load_stored_balance

        def stale_then_bump(engine, user_id):
            stored = real_load(engine, user_id)
            if user_id == "u-a":
                with Session(engine) as session:
                    session.get(UserPoints, user_id).total_points = 999
                    session.commit()
            return stored

        with patch.object(reconciliation_service, "load_stored_balance", side_effect=stale_then_bump):
            report = reconcile(seeded, "rebuild_balances", dry_run=False, config=ledger_config)

        assert len(report.errors) == 1
        assert report.errors[0]["user_id"] == "u-a"
        assert report.errors[0]["conflict"] is True
        assert _totals(seeded)["u-a"] == 999

    @pytest.mark.parametrize("target", ["count_users", "load_user_batch", "load_usernames"])
    def test_failed_user_selection_is_fatal(self, seeded, ledger_config, target):
        with patch(
            f"arxledger.services.reconciliation_service.{target}",
            side_effect=OperationalError("SELECT user_points", {}, Exception("server closed")),
        ):
            report = reconcile(seeded, "rebuild_balances", dry_run=False, config=ledger_config)

        assert report.fatal is True
        assert report.processed == 0
        assert report.results == []
        assert report.errored == 1
        assert (report.next_offset, report.has_more) == (0, False)
        assert _audit_count(seeded) == 0

    def test_failed_filter_lookup_is_fatal(self, seeded, ledger_config):
        with patch(
            "arxledger.services.reconciliation_service.match_users",
            side_effect=OperationalError("SELECT profiles", {}, Exception("server closed")),
        ):
            report = reconcile(
                seeded, "rebuild_balances", user_filter="alice", config=ledger_config,
            )

        assert report.fatal is True
        assert report.processed == 0


class TestWorkerPool:

    def test_threaded_pass_keeps_user_order(self, file_engine):
        for index, user_id in enumerate(["u-d", "u-a", "u-c", "u-b", "u-e"]):
            seed_user(file_engine, user_id, mining=1)
            add_rows(file_engine, UserTask(user_id=user_id, status="completed", points_awarded=index))

        cfg = LedgerConfig(max_workers=2, retry_backoff_seconds=0.0)
        report = reconcile(file_engine, "rebuild_balances", dry_run=False, config=cfg)

        assert report.errors == []
        assert [r["user_id"] for r in report.results] == ["u-a", "u-b", "u-c", "u-d", "u-e"]
        assert [r["computed"]["total"] for r in report.results] == [1, 3, 2, 0, 4]
        assert _totals(file_engine) == {"u-a": 1, "u-b": 3, "u-c": 2, "u-d": 0, "u-e": 4}
