#!/usr/bin/env python3
"""
Test script to verify scheduler settings resolve from arguments, environment,
the workspace config file, and defaults in that order.
"""

import tempfile
from pathlib import Path

import pytest

from jobscheduler.config import (
    DEFAULT_POLL_INTERVAL_MS,
    ENV_POLL_MS,
    ENV_STORE,
    SchedulerConfig,
)

ENV_NAMES = [
    "JOBSCHEDULER_WORKSPACE",
    "JOBSCHEDULER_STORE",
    "JOBSCHEDULER_DB_PATH",
    "JOBSCHEDULER_PID_FILE",
    "JOBSCHEDULER_POLL_MS",
    "JOBSCHEDULER_HEARTBEAT_ENABLED",
    "JOBSCHEDULER_HEARTBEAT_SCHEDULE",
    "JOBSCHEDULER_RETRY_DELAY_SECONDS",
    "JOBSCHEDULER_LOG_FILE",
    "JOBSCHEDULER_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_config_defaults():
    """Test that every path lands under the workspace state directory"""

    with tempfile.TemporaryDirectory() as temp_dir:
        workspace = Path(temp_dir).resolve()
        config = SchedulerConfig(workspace=workspace)

        print(f"\nConfig created: {config}")
        print(f"  State dir: {config.state_dir}")
        print(f"  Store: {config.db_path}")
        print(f"  PID file: {config.pid_path}")

        assert config.state_dir == workspace / ".jobscheduler"
        assert config.store_backend == "sqlite"
        assert config.db_path == config.state_dir / "jobs.db"
        assert config.pid_path == config.state_dir / "daemon.pid"
        assert config.log_file == config.state_dir / "logs" / "scheduler.log"
        assert config.heartbeat_path == config.state_dir / "HEARTBEAT.md"
        assert config.poll_interval_ms == DEFAULT_POLL_INTERVAL_MS
        assert config.poll_interval_seconds == DEFAULT_POLL_INTERVAL_MS / 1000.0
        assert config.heartbeat_enabled is True
        assert config.heartbeat_schedule == "30m"
        assert config.retry_delay_seconds == 0.0
        assert config.log_level == "INFO"


def test_environment_overrides_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv(ENV_STORE, "json")
    monkeypatch.setenv(ENV_POLL_MS, "500")
    monkeypatch.setenv("JOBSCHEDULER_HEARTBEAT_ENABLED", "false")

    config = SchedulerConfig(workspace=tmp_path)
    assert config.store_backend == "json"
    assert config.db_path.name == "jobs.json"
    assert config.poll_interval_ms == 500
    assert config.heartbeat_enabled is False


def test_explicit_arguments_win_over_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(ENV_POLL_MS, "500")
    config = SchedulerConfig(workspace=tmp_path, poll_interval_ms=250)
    assert config.poll_interval_ms == 250


def test_workspace_config_file_is_used(tmp_path, monkeypatch):
    first = SchedulerConfig(workspace=tmp_path, heartbeat_schedule="1h", poll_interval_ms=1000)
    first.save()
    assert first.config_path.exists()

    second = SchedulerConfig(workspace=tmp_path)
    assert second.heartbeat_schedule == "1h"
    assert second.poll_interval_ms == 1000

    # Environment beats the file
    monkeypatch.setenv(ENV_POLL_MS, "2000")
    assert SchedulerConfig(workspace=tmp_path).poll_interval_ms == 2000


def test_invalid_poll_interval_falls_back(tmp_path, monkeypatch):
    monkeypatch.setenv(ENV_POLL_MS, "soon")
    assert SchedulerConfig(workspace=tmp_path).poll_interval_ms == DEFAULT_POLL_INTERVAL_MS

    assert SchedulerConfig(workspace=tmp_path, poll_interval_ms=5).poll_interval_ms == DEFAULT_POLL_INTERVAL_MS


def test_relative_paths_resolve_against_workspace(tmp_path):
    config = SchedulerConfig(workspace=tmp_path, db_path="data/jobs.db")
    assert config.db_path == tmp_path.resolve() / "data" / "jobs.db"


def test_unknown_store_backend(tmp_path):
    with pytest.raises(ValueError):
        SchedulerConfig(workspace=tmp_path, store_backend="redis")


def test_child_environment_round_trips(tmp_path, monkeypatch):
    config = SchedulerConfig(workspace=tmp_path, store_backend="json", poll_interval_ms=750)
    for name, value in config.child_environment().items():
        if name.startswith("JOBSCHEDULER_"):
            monkeypatch.setenv(name, value)

    child = SchedulerConfig()
    assert child.workspace == config.workspace
    assert child.store_backend == "json"
    assert child.db_path == config.db_path
    assert child.pid_path == config.pid_path
    assert child.poll_interval_ms == 750
