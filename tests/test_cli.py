"""
tests/test_cli.py — ``python -m arxledger`` Entry Point Tests
=============================================================
"""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from arxledger import __main__ as cli
from arxledger.database.models import UserTask
from conftest import add_rows, seed_user


@pytest.fixture
def no_config(tmp_path):
    return str(tmp_path / "missing.yaml")


def _run(db_engine, argv, capsys) -> tuple[int, dict]:
    with patch.object(cli, "create_db_engine", return_value=db_engine):
        code = cli.main(argv)
    return code, json.loads(capsys.readouterr().out)


class TestCli:

    def test_dry_run_by_default(self, db_engine, no_config, capsys, tmp_path):
        seed_user(db_engine, "u1", username="alice")
        add_rows(db_engine, UserTask(user_id="u1", status="completed", points_awarded=9))
        config = tmp_path / "config.yaml"
        config.write_text("max_workers: 1\n", encoding="utf-8")

        code, report = _run(
            db_engine, ["--mode", "rebuild_balances", "--config", str(config)], capsys,
        )

        assert code == 0
        assert report["dry_run"] is True
        assert report["restored"] == 1
        assert report["results"][0]["computed"]["total"] == 9
        assert report["written"] == 0

    def test_apply_with_user_filter(self, db_engine, no_config, capsys):
        seed_user(db_engine, "u1", username="alice")
        add_rows(db_engine, UserTask(user_id="u1", status="completed", points_awarded=9))

        code, report = _run(
            db_engine,
            ["--mode", "rebuild_balances", "--apply", "--user", "alice", "--config", no_config],
            capsys,
        )

        assert code == 0
        assert report["written"] == 1

    def test_fatal_run_exits_non_zero(self, db_engine, no_config, capsys):
        from arxledger.database.engine import StoreUnavailableError

        with patch(
            "arxledger.services.reconciliation_service.ping",
            side_effect=StoreUnavailableError("down"),
        ):
            code, report = _run(db_engine, ["--mode", "audit", "--config", no_config], capsys)

        assert code == 2
        assert report["fatal"] is True

    def test_rejects_unknown_mode(self, no_config):
        with pytest.raises(SystemExit):
            cli.main(["--mode", "nonsense", "--config", no_config])
