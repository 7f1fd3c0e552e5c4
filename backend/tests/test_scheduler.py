from __future__ import annotations

import json
import logging
import threading

import pytest

from career_compass import access, profile_store
from career_compass.errors import StoreUnavailable
from career_compass.scheduler import MIN_SWEEP_INTERVAL_SECONDS, AutoUpgradeScheduler


@pytest.fixture(autouse=True)
def isolated_runtime(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("CAREER_COMPASS_DB_PATH", str(tmp_path / "career_compass_test.sqlite3"))


def test_interval_is_clamped() -> None:
    scheduler = AutoUpgradeScheduler(sweep=lambda: {"upgraded_count": 0}, interval_seconds=1)
    assert scheduler.interval_seconds == MIN_SWEEP_INTERVAL_SECONDS


def test_run_once_upgrades_eligible_students(caplog) -> None:
    profile_store.upsert_profile(user_id="grad", email="grad@example.edu", role="student", grad_year=2000)
    profile_store.upsert_profile(user_id="current", email="cur@example.edu", role="student", grad_year=2999)
    scheduler = AutoUpgradeScheduler(sweep=access.run_auto_upgrade_sweep)

    with caplog.at_level(logging.INFO, logger="career_compass.scheduler"):
        result = scheduler.run_once()

    assert result is not None
    assert result["upgraded_ids"] == ["grad"]
    assert scheduler.runs == 1
    assert profile_store.fetch_profile("grad")["role"] == "alumni"
    assert profile_store.fetch_profile("current")["role"] == "student"

    events = [json.loads(record.getMessage()) for record in caplog.records if record.name == "career_compass.scheduler"]
    assert events[-1]["event"] == "auto_upgrade_sweep"
    assert events[-1]["upgradedCount"] == 1

    assert scheduler.run_once()["upgraded_count"] == 0
    assert scheduler.runs == 2


def test_run_once_logs_store_failures_and_keeps_going(caplog) -> None:
    def failing_sweep() -> dict:
        raise StoreUnavailable("run_auto_upgrade_sweep: database is locked")

    scheduler = AutoUpgradeScheduler(sweep=failing_sweep)
    with caplog.at_level(logging.WARNING, logger="career_compass.scheduler"):
        assert scheduler.run_once() is None

    assert scheduler.runs == 0
    failure = json.loads(caplog.records[-1].getMessage())
    assert failure["event"] == "auto_upgrade_sweep_failed"
    assert failure["code"] == "STORE_UNAVAILABLE"


def test_start_runs_immediately_and_stop_joins_thread() -> None:
    fired = threading.Event()

    def sweep() -> dict:
        fired.set()
        return {"upgraded_count": 0, "upgraded_ids": []}

    scheduler = AutoUpgradeScheduler(sweep=sweep, interval_seconds=3600)
    scheduler.start()
    try:
        assert fired.wait(timeout=5.0)
        assert scheduler.is_running is True
        scheduler.start()
    finally:
        scheduler.stop(timeout=5.0)

    assert scheduler.is_running is False
    assert scheduler.runs == 1
