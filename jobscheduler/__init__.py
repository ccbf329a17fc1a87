"""
Job Scheduler

A persistent recurring-job runner: job definitions and execution logs
live in a durable store, and a background daemon wakes up periodically
to run whatever is due.

Features:
- Interval schedules (30s, 5m, 6h, 1d), @hourly/@daily presets, one-shot instants
- SQLite or JSON job store shared by the CLI and the daemon
- Per-job timeout, retry policy, start/end window and run limit
- Built-in heartbeat job reading a workspace instructions file
- Detached daemon tracked by a PID file
"""

from jobscheduler.api import JobService
from jobscheduler.config import SchedulerConfig
from jobscheduler.daemon import SchedulerDaemon
from jobscheduler.jobs import CommandExecutor
from jobscheduler.service import DaemonSupervisor
from jobscheduler.store import JobStore, SQLiteJobStore, JSONJobStore, open_store

__version__ = "0.1.0"
__all__ = [
    "JobService",
    "SchedulerConfig",
    "SchedulerDaemon",
    "CommandExecutor",
    "DaemonSupervisor",
    "JobStore",
    "SQLiteJobStore",
    "JSONJobStore",
    "open_store",
]
