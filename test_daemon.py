#!/usr/bin/env python3
"""
Tests for the scheduler daemon tick.
"""

from datetime import datetime, timedelta, timezone

import pytest

from jobscheduler.daemon import SchedulerDaemon
from jobscheduler.errors import StoreError
from jobscheduler.jobs import CommandExecutor
from jobscheduler.models import ExecutionResult, HEARTBEAT_JOB_NAME, JobSpec
from jobscheduler.schedule import format_instant, parse_instant
from jobscheduler.store import JSONJobStore, SQLiteJobStore

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class RecordingExecutor:
    """Executor stand-in that remembers which jobs it ran."""

    def __init__(self, result=None):
        self.result = result or ExecutionResult(status="success", output="ran")
        self.calls = []

    def __call__(self, job):
        self.calls.append(job.name)
        return self.result


@pytest.fixture
def store(tmp_path):
    job_store = SQLiteJobStore(tmp_path / "jobs.db")
    yield job_store
    job_store.close()


def _daemon(store, executor=None, heartbeat=False):
    return SchedulerDaemon(
        store,
        executor=executor or RecordingExecutor(),
        heartbeat_enabled=heartbeat,
        clock=lambda: NOW
    )


def _add(store, name, schedule="5m", command="echo hi", next_run_at=None, **kwargs):
    store.create(JobSpec(name=name, schedule=schedule, command=command, **kwargs))
    if next_run_at is not None:
        store.update(name, next_run_at=format_instant(next_run_at))
    return store.get(name)


def test_first_tick_only_schedules(store):
    _add(store, "backup")
    executor = RecordingExecutor()

    entries = _daemon(store, executor).tick(now=NOW)

    assert entries == []
    assert executor.calls == []
    assert parse_instant(store.get("backup").next_run_at) == NOW + timedelta(minutes=5)
    assert store.count_logs("backup") == 0


def test_due_job_runs_once_and_reschedules(store):
    _add(store, "backup", next_run_at=NOW - timedelta(minutes=1))
    executor = RecordingExecutor()
    daemon = _daemon(store, executor)

    entries = daemon.tick(now=NOW)

    assert executor.calls == ["backup"]
    assert len(entries) == 1
    job = store.get("backup")
    assert job.last_status == "success"
    assert job.last_run_at == format_instant(NOW)
    assert parse_instant(job.next_run_at) == NOW + timedelta(minutes=5)
    assert store.count_logs("backup") == 1

    # Same instant again: the job is no longer due
    assert daemon.tick(now=NOW) == []
    assert store.count_logs("backup") == 1


def test_job_due_exactly_now_runs(store):
    _add(store, "backup", next_run_at=NOW)
    executor = RecordingExecutor()
    _daemon(store, executor).tick(now=NOW)
    assert executor.calls == ["backup"]


def test_future_job_is_skipped(store):
    _add(store, "backup", next_run_at=NOW + timedelta(seconds=1))
    executor = RecordingExecutor()
    assert _daemon(store, executor).tick(now=NOW) == []
    assert executor.calls == []


def test_disabled_job_is_skipped(store):
    _add(store, "backup", next_run_at=NOW - timedelta(minutes=1))
    store.set_enabled("backup", False)
    executor = RecordingExecutor()

    _daemon(store, executor).tick(now=NOW)
    assert executor.calls == []
    assert store.get("backup").last_run_at is None


def test_failed_command_is_recorded_not_raised(store, tmp_path):
    _add(store, "broken", command="echo nope >&2; exit 9", next_run_at=NOW - timedelta(seconds=1))
    daemon = _daemon(store, CommandExecutor(workspace=tmp_path))

    entries = daemon.tick(now=NOW)

    assert len(entries) == 1
    assert entries[0].status == "failure"
    assert entries[0].error == "nope"
    assert store.get("broken").last_status == "failure"
    # Failures are rescheduled like successes
    assert parse_instant(store.get("broken").next_run_at) == NOW + timedelta(minutes=5)


def test_executor_exception_becomes_failure(store):
    _add(store, "backup", next_run_at=NOW - timedelta(seconds=1))

    def exploding_executor(job):
        raise RuntimeError("kaboom")

    entries = _daemon(store, exploding_executor).tick(now=NOW)
    assert entries[0].status == "failure"
    assert "kaboom" in entries[0].error


def test_one_shot_job_is_removed_after_run(store):
    _add(store, "once", schedule="at:2026-03-01T11:00:00Z", next_run_at=NOW - timedelta(hours=1))
    executor = RecordingExecutor()

    _daemon(store, executor).tick(now=NOW)

    assert executor.calls == ["once"]
    assert store.get("once") is None


def test_one_shot_job_waits_for_its_instant(store):
    _add(store, "later", schedule="at:2026-03-02T00:00:00Z")
    daemon = _daemon(store)

    daemon.tick(now=NOW)
    assert parse_instant(store.get("later").next_run_at) == datetime(2026, 3, 2, tzinfo=timezone.utc)
    assert daemon.tick(now=NOW) == []


def test_heartbeat_job_created_once(store):
    daemon = _daemon(store, heartbeat=True)

    created = daemon.ensure_system_jobs()
    assert created is not None
    assert created.name == HEARTBEAT_JOB_NAME
    assert daemon.ensure_system_jobs() is None

    daemon.tick(now=NOW)
    assert [job.name for job in store.list()] == [HEARTBEAT_JOB_NAME]


def test_heartbeat_disabled_creates_nothing(store):
    daemon = _daemon(store, heartbeat=False)
    assert daemon.ensure_system_jobs() is None
    daemon.tick(now=NOW)
    assert store.list() == []


def test_start_at_delays_first_run(store):
    start = NOW + timedelta(hours=2)
    _add(store, "windowed", start_at=format_instant(start))
    daemon = _daemon(store)

    daemon.tick(now=NOW)
    assert parse_instant(store.get("windowed").next_run_at) == start


def test_end_at_disables_job(store):
    _add(
        store, "expired",
        end_at=format_instant(NOW - timedelta(minutes=1)),
        next_run_at=NOW - timedelta(minutes=1)
    )
    executor = RecordingExecutor()

    _daemon(store, executor).tick(now=NOW)

    assert executor.calls == []
    assert store.get("expired").enabled is False


def test_max_runs_disables_job(store):
    _add(store, "limited", max_runs=1, next_run_at=NOW - timedelta(minutes=1))
    executor = RecordingExecutor()
    daemon = _daemon(store, executor)

    daemon.tick(now=NOW)
    later = NOW + timedelta(minutes=10)
    daemon.tick(now=later)

    assert executor.calls == ["limited"]
    assert store.get("limited").enabled is False


def test_run_job_without_reschedule_keeps_next_run(store):
    next_run = NOW + timedelta(hours=1)
    job = _add(store, "manual", next_run_at=next_run)

    entry = _daemon(store).run_job(job, reschedule=False)

    assert entry.status == "success"
    assert parse_instant(store.get("manual").next_run_at) == next_run


def test_store_error_propagates(store):
    _add(store, "backup", next_run_at=NOW - timedelta(minutes=1))

    class BrokenStore:
        def __init__(self, inner):
            self.inner = inner

        def __getattr__(self, name):
            return getattr(self.inner, name)

        def append_log(self, job_id, entry):
            raise StoreError("disk full")

    with pytest.raises(StoreError):
        _daemon(BrokenStore(store)).tick(now=NOW)


class MutatingExecutor(RecordingExecutor):
    """Runs a side effect against the store while the first job executes."""

    def __init__(self, side_effect):
        super().__init__()
        self.side_effect = side_effect

    def __call__(self, job):
        if not self.calls:
            self.side_effect()
        return super().__call__(job)


def test_job_removed_during_tick_is_not_run(store):
    # Listed newest first: "first" runs before "second"
    _add(store, "second", next_run_at=NOW - timedelta(minutes=1))
    _add(store, "first", next_run_at=NOW - timedelta(minutes=1))
    executor = MutatingExecutor(lambda: store.remove("second"))

    entries = _daemon(store, executor).tick(now=NOW)

    assert executor.calls == ["first"]
    assert [entry.job_name for entry in entries] == ["first"]
    assert store.get("second") is None
    assert store.count_logs("first") == 1


def test_job_disabled_during_tick_is_not_run(store):
    _add(store, "second", next_run_at=NOW - timedelta(minutes=1))
    _add(store, "first", next_run_at=NOW - timedelta(minutes=1))
    executor = MutatingExecutor(lambda: store.set_enabled("second", False))

    _daemon(store, executor).tick(now=NOW)

    assert executor.calls == ["first"]
    assert store.get("second").last_run_at is None
    assert store.count_logs("second") == 0


def test_job_removed_while_running_is_not_recorded(store):
    _add(store, "doomed", next_run_at=NOW - timedelta(minutes=1))
    _add(store, "other", next_run_at=NOW - timedelta(minutes=1))
    executor = MutatingExecutor(lambda: store.remove("other"))

    # "other" is newest, so it runs first and removes itself
    entries = _daemon(store, executor).tick(now=NOW)

    assert executor.calls == ["other", "doomed"]
    assert [entry.job_name for entry in entries] == ["doomed"]
    assert store.get("other") is None
    assert store.count_logs("other") == 0


def test_run_job_returns_none_for_job_removed_mid_run(store):
    job = _add(store, "doomed")
    executor = MutatingExecutor(lambda: store.remove("doomed"))

    assert _daemon(store, executor).run_job(job) is None
    assert store.get("doomed") is None


def test_max_runs_survives_trimmed_json_logs(tmp_path):
    json_store = JSONJobStore(tmp_path / "jobs.json", max_logs=3)
    _add(json_store, "limited", max_runs=2, next_run_at=NOW - timedelta(minutes=1))
    executor = RecordingExecutor()
    daemon = _daemon(json_store, executor)

    daemon.tick(now=NOW)
    daemon.tick(now=NOW + timedelta(minutes=10))
    assert executor.calls == ["limited", "limited"]

    _add(json_store, "busy", next_run_at=NOW - timedelta(minutes=1))
    busy = json_store.get("busy")
    for _ in range(3):
        daemon.run_job(busy, reschedule=False)
    assert json_store.count_logs("limited") == 0

    daemon.tick(now=NOW + timedelta(minutes=20))

    assert executor.calls.count("limited") == 2
    assert json_store.get("limited").enabled is False
    assert json_store.get("limited").run_count == 2
