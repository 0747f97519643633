"""
tests/test_database_engine.py — Worker Pool & Connectivity Tests
================================================================
"""

from __future__ import annotations

import threading
import time

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from arxledger.database.engine import (
    StoreUnavailableError,
    map_bounded,
    ping,
    resolve_database_url,
)
from arxledger.database.models import Profile
from conftest import seed_user


class TestMapBounded:

    def test_single_worker_runs_inline(self):
        names = map_bounded(lambda _: threading.current_thread().name, [1, 2], 1)
        assert names == [threading.current_thread().name] * 2

    def test_threads_keep_input_order(self):
        def slow_for_small(x):
            time.sleep(0.01 * (5 - x))
            return x * 10, threading.current_thread().name

        results = map_bounded(slow_for_small, [1, 2, 3, 4], 2)

        assert [value for value, _ in results] == [10, 20, 30, 40]
        assert all(name.startswith("arxledger-worker") for _, name in results)

    def test_escaping_exception_propagates(self):
        def boom(x):
            raise ValueError(x)

        with pytest.raises(ValueError):
            map_bounded(boom, [1, 2], 2)

    def test_reads_from_file_backed_engine(self, file_engine):
        for user_id in ["u3", "u1", "u2"]:
            seed_user(file_engine, user_id, username=f"name-{user_id}")

        def username(user_id):
            with Session(file_engine) as session:
                return session.scalar(select(Profile.username).where(Profile.user_id == user_id))

        assert map_bounded(username, ["u2", "u3", "u1"], 2) == ["name-u2", "name-u3", "name-u1"]


class TestPing:

    def test_reachable_store(self, db_engine):
        ping(db_engine)

    def test_unreachable_store_raises(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'ledger.db'}")
        with pytest.raises(StoreUnavailableError):
            ping(engine)


class TestResolveDatabaseUrl:

    @pytest.mark.parametrize(("raw", "expected"), [
        ("postgres://u:p@db:5432/arx", "postgresql+psycopg2://u:p@db:5432/arx"),
        ("postgresql://u:p@db/arx", "postgresql+psycopg2://u:p@db/arx"),
        ("postgresql+psycopg2://u:p@db/arx", "postgresql+psycopg2://u:p@db/arx"),
        ("sqlite:///ledger.db", "sqlite:///ledger.db"),
    ])
    def test_normalises_driver(self, raw, expected):
        assert resolve_database_url(raw) == expected

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db/arx")
        assert resolve_database_url() == "postgresql+psycopg2://u:p@db/arx"

    def test_missing_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(RuntimeError):
            resolve_database_url()
