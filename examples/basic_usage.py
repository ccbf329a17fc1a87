#!/usr/bin/env python3
"""
Basic Usage Examples for the job scheduler library

This script demonstrates managing jobs from Python and driving the
scheduler by hand, without a background daemon.
"""

import sys
import tempfile
from datetime import timedelta
from pathlib import Path

# Add parent directory to path for imports (if running as standalone script)
sys.path.insert(0, str(Path(__file__).parent.parent))

from jobscheduler import CommandExecutor, JobService, SchedulerConfig, SchedulerDaemon, open_store
from jobscheduler.models import utc_now


def example_1_manage_jobs(config: SchedulerConfig):
    """Example 1: Add, list and disable jobs"""
    print("\n" + "=" * 60)
    print("Example 1: Managing jobs")
    print("=" * 60)

    with open_store(config) as store:
        service = JobService(store)
        service.add("disk-usage", "5m", "df -h .", description="Report free disk space")
        service.add("nightly-report", "@daily", "echo report")
        service.disable("nightly-report")

        for job in service.list():
            state = "enabled" if job.enabled else "disabled"
            print(f"  {job.name:16s} {job.schedule:8s} {state}")

        print(f"\nActive jobs: {[job.name for job in service.list(active=True)]}")


def example_2_manual_ticks(config: SchedulerConfig):
    """Example 2: Drive the scheduler with explicit ticks"""
    print("\n" + "=" * 60)
    print("Example 2: Ticking the scheduler manually")
    print("=" * 60)

    with open_store(config) as store:
        daemon = SchedulerDaemon(
            store,
            executor=CommandExecutor(workspace=config.workspace),
            heartbeat_enabled=False
        )

        # First tick only computes next_run_at
        daemon.tick()
        job = store.get("disk-usage")
        print(f"\nScheduled 'disk-usage' for {job.next_run_at}")

        # Pretend ten minutes have passed
        entries = daemon.tick(now=utc_now() + timedelta(minutes=10))
        for entry in entries:
            print(f"  Ran {entry.job_name}: {entry.status} in {entry.duration_ms}ms")


def example_3_run_now_and_logs(config: SchedulerConfig):
    """Example 3: Run a job immediately and read its history"""
    print("\n" + "=" * 60)
    print("Example 3: Manual runs and execution logs")
    print("=" * 60)

    with open_store(config) as store:
        service = JobService(store)
        service.add("greeting", "1h", "echo hello from the scheduler")
        entry = service.run_now("greeting", CommandExecutor(workspace=config.workspace))
        print(f"\nManual run: {entry.status}, output: {entry.output!r}")

        for log in service.logs("greeting", limit=5):
            print(f"  {log.started_at} {log.status}")


def main():
    with tempfile.TemporaryDirectory() as workspace:
        config = SchedulerConfig(workspace=workspace, heartbeat_enabled=False)
        example_1_manage_jobs(config)
        example_2_manual_ticks(config)
        example_3_run_now_and_logs(config)


if __name__ == "__main__":
    main()
