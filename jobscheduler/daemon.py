"""
Scheduler daemon: the per-tick job state machine.

Each tick looks at every enabled job once, in store order:

- no next_run_at yet   -> compute and store one, do not run this tick
- next_run_at in future -> skip
- next_run_at <= now    -> run, record a log, then reschedule from the
                           finish time (one-shot jobs are deleted instead)

Jobs run one at a time. Command failures are recorded and never raised;
StoreError is left to propagate so a broken store stops the daemon.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Optional, List

from jobscheduler.errors import NotFoundError, StoreError
from jobscheduler.jobs import CommandExecutor, Executor
from jobscheduler.models import (
    ExecutionLogEntry,
    ExecutionResult,
    HEARTBEAT_COMMAND,
    HEARTBEAT_JOB_NAME,
    JobRecord,
    JobSpec,
    STATUS_FAILURE,
    utc_now,
)
from jobscheduler.schedule import (
    compute_next_run,
    format_instant,
    is_due,
    parse_instant,
    parse_schedule,
)
from jobscheduler.store import JobStore, new_log_entry

logger = logging.getLogger(__name__)


class SchedulerDaemon:
    """
    Evaluates due jobs against a JobStore and runs them with an executor.

    The store and executor are injected; the daemon owns neither's lifecycle.
    """

    def __init__(
        self,
        store: JobStore,
        executor: Optional[Executor] = None,
        heartbeat_enabled: bool = True,
        heartbeat_schedule: str = "30m",
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Args:
            store: Job store shared with the CLI
            executor: Callable turning a JobRecord into an ExecutionResult
                      (default: CommandExecutor in the current directory)
            heartbeat_enabled: Whether to maintain the system heartbeat job
            heartbeat_schedule: Schedule used when creating the heartbeat job
            clock: Source of "now" for start/finish timestamps
        """
        self.store = store
        self.executor = executor or CommandExecutor()
        self.heartbeat_enabled = heartbeat_enabled
        self.heartbeat_schedule = heartbeat_schedule
        self.clock = clock or utc_now

    def ensure_system_jobs(self) -> Optional[JobRecord]:
        """
        Create the heartbeat job if it is enabled and missing.

        Returns:
            The created job, or None when nothing was created
        """
        if not self.heartbeat_enabled:
            return None
        if self.store.get(HEARTBEAT_JOB_NAME) is not None:
            return None

        logger.info(f"Creating heartbeat job (every {self.heartbeat_schedule})")
        return self.store.create(JobSpec(
            name=HEARTBEAT_JOB_NAME,
            schedule=self.heartbeat_schedule,
            command=HEARTBEAT_COMMAND,
            description="Native heartbeat runner",
            enabled=True,
        ))

    def tick(self, now: Optional[datetime] = None) -> List[ExecutionLogEntry]:
        """
        Run one pass over all enabled jobs.

        Args:
            now: Instant used for due-ness checks (default: the clock)

        Returns:
            Log entries written during this tick
        """
        now = parse_instant(now) if now is not None else self.clock()
        self.ensure_system_jobs()

        written = []
        for listed in self.store.list():
            # Earlier jobs in this tick may have run for a while; the CLI can
            # have removed or disabled this one in the meantime
            job = self.store.get(listed.name)
            if job is None or not job.enabled:
                continue
            entry = self._process_job(job, now)
            if entry is not None:
                written.append(entry)

        if written:
            logger.info(f"Tick complete: {len(written)} job(s) executed")
        return written

    def _process_job(self, job: JobRecord, now: datetime) -> Optional[ExecutionLogEntry]:
        if not job.next_run_at:
            next_run = compute_next_run(job.schedule, now)
            start_at = parse_instant(job.start_at)
            if start_at and start_at > next_run:
                next_run = start_at
            self.store.update(job.name, next_run_at=format_instant(next_run))
            logger.debug(f"Scheduled '{job.name}' for {format_instant(next_run)}")
            return None

        end_at = parse_instant(job.end_at)
        if end_at and now > end_at:
            logger.info(f"Job '{job.name}' passed its end time {job.end_at}, disabling")
            self.store.set_enabled(job.name, False)
            return None

        if job.max_runs and job.run_count >= job.max_runs:
            logger.info(f"Job '{job.name}' reached max runs ({job.max_runs}), disabling")
            self.store.set_enabled(job.name, False)
            return None

        start_at = parse_instant(job.start_at)
        if start_at and now < start_at:
            return None

        if not is_due(now, job.next_run_at):
            return None

        return self.run_job(job)

    def run_job(self, job: JobRecord, reschedule: bool = True) -> Optional[ExecutionLogEntry]:
        """
        Execute a job, record the outcome and compute its next run.

        Args:
            job: Job to execute
            reschedule: Whether to update next_run_at (or delete one-shot jobs)

        Returns:
            The recorded log entry, or None if the job was removed while it ran
        """
        logger.info(f"Running job '{job.name}'")
        started = self.clock()
        start_clock = time.monotonic()
        result = self._execute(job)
        duration_ms = int((time.monotonic() - start_clock) * 1000)
        finished = self.clock()

        try:
            entry = self.store.append_log(job.id, new_log_entry(
                job,
                status=result.status,
                started_at=format_instant(started),
                finished_at=format_instant(finished),
                duration_ms=duration_ms,
                output=result.output,
                error=result.error,
            ))
        except NotFoundError:
            logger.warning(f"Job '{job.name}' was removed while running, outcome not recorded")
            return None
        logger.info(f"Job '{job.name}' finished: {result.status} ({duration_ms}ms)")

        if reschedule:
            if parse_schedule(job.schedule).is_one_shot:
                logger.info(f"One-shot job '{job.name}' completed, removing")
                self.store.remove(job.name)
            else:
                next_run = compute_next_run(job.schedule, finished)
                self.store.update(job.name, next_run_at=format_instant(next_run))
        return entry

    def _execute(self, job: JobRecord) -> ExecutionResult:
        try:
            return self.executor(job)
        except StoreError:
            raise
        except Exception as e:
            # A misbehaving executor counts as a failed run, not a daemon crash
            logger.exception(f"Executor raised for job '{job.name}'")
            return ExecutionResult(status=STATUS_FAILURE, error=f"Executor error: {e}")
