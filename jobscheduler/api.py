"""
Job management operations.

JobService validates input and turns store results into typed errors
(InvalidInputError, NotFoundError, ConflictError). The CLI is a thin
layer over it, and library users can call it directly with any JobStore.
"""

import logging
from typing import Optional, List

from jobscheduler.daemon import SchedulerDaemon
from jobscheduler.errors import InvalidInputError, NotFoundError
from jobscheduler.jobs import Executor
from jobscheduler.models import (
    ExecutionLogEntry,
    JobRecord,
    JobSpec,
    ON_FAILURE_CHOICES,
)
from jobscheduler.schedule import parse_instant, validate_schedule
from jobscheduler.store import JobStore

logger = logging.getLogger(__name__)


def _require_name(name: Optional[str]):
    if not name or not name.strip():
        raise InvalidInputError("Job name is required.", {"field": "name"})


def _check_instant(value: Optional[str], field: str):
    if value is not None and parse_instant(value) is None:
        raise InvalidInputError(f"'{value}' is not a valid ISO-8601 instant.", {"field": field})


class JobService:
    """Validated CRUD, logs and manual runs over a JobStore."""

    def __init__(self, store: JobStore):
        self.store = store

    def add(
        self,
        name: Optional[str],
        schedule: Optional[str],
        command: Optional[str],
        description: Optional[str] = None,
        on_failure: str = "notify",
        retries: int = 0,
        timeout: Optional[str] = None,
        start_at: Optional[str] = None,
        end_at: Optional[str] = None,
        max_runs: int = 0
    ) -> JobRecord:
        """
        Create a job.

        Raises:
            InvalidInputError: Missing name/schedule/command or bad option values
            ConflictError: A job with this name already exists
        """
        missing = [
            field for field, value in (("name", name), ("schedule", schedule), ("command", command))
            if not value or not str(value).strip()
        ]
        if missing:
            raise InvalidInputError(
                "name, schedule, and command are required.", {"fields": missing}
            )
        validate_schedule(schedule)
        if on_failure not in ON_FAILURE_CHOICES:
            raise InvalidInputError(
                f"on_failure must be one of {', '.join(ON_FAILURE_CHOICES)}.", {"field": "on_failure"}
            )
        if retries is None or retries < 0:
            raise InvalidInputError("retries must be a non-negative integer.", {"field": "retries"})
        if max_runs is None or max_runs < 0:
            raise InvalidInputError("max_runs must be a non-negative integer.", {"field": "max_runs"})
        _check_instant(start_at, "start_at")
        _check_instant(end_at, "end_at")

        return self.store.create(JobSpec(
            name=name.strip(),
            schedule=schedule.strip(),
            command=command,
            description=description,
            enabled=True,
            on_failure=on_failure,
            retries=retries,
            timeout=timeout,
            start_at=start_at,
            end_at=end_at,
            max_runs=max_runs,
        ))

    def list(self, active: bool = False) -> List[JobRecord]:
        jobs = self.store.list()
        return [job for job in jobs if job.enabled] if active else jobs

    def get(self, name: Optional[str]) -> JobRecord:
        """Raises NotFoundError for unknown names."""
        _require_name(name)
        job = self.store.get(name)
        if job is None:
            raise NotFoundError(f"Job '{name}' not found.", {"name": name})
        return job

    def enable(self, name: Optional[str]) -> JobRecord:
        self.get(name)
        self.store.set_enabled(name, True)
        return self.get(name)

    def disable(self, name: Optional[str]) -> JobRecord:
        self.get(name)
        self.store.set_enabled(name, False)
        return self.get(name)

    def remove(self, name: Optional[str], force: bool = False) -> bool:
        """
        Permanently delete a job and its logs.

        Raises:
            InvalidInputError: force was not given
            NotFoundError: Unknown job
        """
        _require_name(name)
        if not force:
            raise InvalidInputError("Use force to remove a job.", {"field": "force"})
        if not self.store.remove(name):
            raise NotFoundError(f"Job '{name}' not found.", {"name": name})
        return True

    def edit(
        self,
        name: Optional[str],
        schedule: Optional[str] = None,
        command: Optional[str] = None,
        description: Optional[str] = None
    ) -> JobRecord:
        """
        Change a job's schedule, command or description.

        A new schedule clears next_run_at so the daemon recomputes it.
        """
        _require_name(name)
        if not schedule and not command and description is None:
            raise InvalidInputError("Provide schedule, command, or description.")
        self.get(name)

        updates = {}
        if schedule:
            validate_schedule(schedule)
            updates['schedule'] = schedule.strip()
            updates['next_run_at'] = None
        if command:
            updates['command'] = command
        if description is not None:
            updates['description'] = description
        return self.store.update(name, **updates)

    def logs(
        self,
        name: Optional[str],
        limit: int = 10,
        since: Optional[str] = None
    ) -> List[ExecutionLogEntry]:
        _require_name(name)
        if limit is None or limit <= 0:
            raise InvalidInputError("limit must be a positive integer.", {"field": "limit"})
        _check_instant(since, "since")
        return self.store.list_logs(name, limit=limit, since=since)

    def run_now(self, name: Optional[str], executor: Executor) -> ExecutionLogEntry:
        """Execute a job immediately and record the outcome; its schedule is untouched."""
        job = self.get(name)
        daemon = SchedulerDaemon(self.store, executor=executor, heartbeat_enabled=False)
        entry = daemon.run_job(job, reschedule=False)
        if entry is None:
            raise NotFoundError(f"Job '{name}' was removed while running.", {"name": name})
        return entry
