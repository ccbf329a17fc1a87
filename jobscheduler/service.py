"""
Daemon process supervision.

Tracks a background daemon through a PID file:

- not running: no PID file, or the file names a dead process (the stale
  file is removed when noticed)
- running: the file holds a PID that answers signal 0

start() spawns a detached process that re-enters this package's CLI with
'daemon run', which calls DaemonSupervisor.run_loop(). The loop is driven
by APScheduler's BlockingScheduler with a single worker thread, so ticks
never overlap, and a termination signal lets the current tick finish.
"""

import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, List, Dict, Any

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler

from jobscheduler.config import SchedulerConfig
from jobscheduler.daemon import SchedulerDaemon
from jobscheduler.jobs import CommandExecutor
from jobscheduler.store import open_store

logger = logging.getLogger(__name__)

TICK_JOB_ID = "scheduler-tick"


@dataclass
class DaemonStatus:
    running: bool
    pid: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


def default_entrypoint() -> List[str]:
    """Command line that runs the daemon loop in the foreground."""
    return [sys.executable, "-m", "jobscheduler.cli", "daemon", "run"]


class DaemonSupervisor:
    """
    Starts, stops and inspects the background scheduler daemon.

    Also provides run_loop(), the blocking entrypoint used inside the
    spawned daemon process.
    """

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        daemon_factory: Optional[Callable[[], SchedulerDaemon]] = None
    ):
        """
        Args:
            config: Resolved settings (default: SchedulerConfig())
            daemon_factory: Builds the SchedulerDaemon used by run_loop();
                            defaults to one bound to the configured store.
                            The caller keeps ownership of a factory-built
                            daemon's store and closes it itself
        """
        self.config = config or SchedulerConfig()
        self.pid_path = Path(self.config.pid_path)
        self._daemon_factory = daemon_factory
        self._scheduler: Optional[BlockingScheduler] = None
        self._daemon: Optional[SchedulerDaemon] = None
        self._stopping = False
        self._fatal_error: Optional[BaseException] = None
        self._owns_store = False

    # ------------------------------------------------------------------
    # PID file bookkeeping
    # ------------------------------------------------------------------

    def _read_pid(self) -> Optional[int]:
        try:
            pid = int(self.pid_path.read_text().strip())
        except FileNotFoundError:
            return None
        except (ValueError, OSError):
            logger.warning(f"Ignoring unreadable PID file {self.pid_path}")
            self._remove_pid_file()
            return None
        if pid <= 0:
            self._remove_pid_file()
            return None
        return pid

    def _write_pid_file(self, pid: int):
        self.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.pid_path.write_text(str(pid))
        logger.debug(f"Wrote PID file: {self.pid_path} ({pid})")

    def _remove_pid_file(self):
        try:
            self.pid_path.unlink()
            logger.debug(f"Removed PID file: {self.pid_path}")
        except FileNotFoundError:
            pass

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def status(self) -> DaemonStatus:
        """Report whether a daemon is running, cleaning up a stale PID file."""
        pid = self._read_pid()
        if pid is None:
            return DaemonStatus(running=False)
        if not _is_process_running(pid):
            logger.info(f"Removing stale PID file for dead process {pid}")
            self._remove_pid_file()
            return DaemonStatus(running=False)
        return DaemonStatus(running=True, pid=pid)

    def start(self, entrypoint: Optional[List[str]] = None) -> DaemonStatus:
        """
        Spawn a detached daemon process unless one is already running.

        Args:
            entrypoint: Command line for the daemon process
                        (default: this package's 'daemon run')

        Returns:
            Status of the running daemon
        """
        current = self.status()
        if current.running:
            logger.info(f"Daemon already running (PID: {current.pid})")
            return current

        command = entrypoint or default_entrypoint()
        self.pid_path.parent.mkdir(parents=True, exist_ok=True)

        # New session: the daemon outlives this process and ignores its terminal
        process = subprocess.Popen(
            command,
            cwd=str(self.config.workspace),
            env=self.config.child_environment(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            close_fds=True
        )
        self._write_pid_file(process.pid)
        logger.info(f"Started daemon (PID: {process.pid})")
        return DaemonStatus(running=True, pid=process.pid)

    def stop(self) -> DaemonStatus:
        """Signal the daemon to terminate and forget its PID."""
        current = self.status()
        if current.running:
            logger.info(f"Stopping daemon (PID: {current.pid})...")
            try:
                os.kill(current.pid, signal.SIGTERM)
            except ProcessLookupError:
                # Exited between the status check and the signal
                pass
            self._remove_pid_file()
        return DaemonStatus(running=False)

    # ------------------------------------------------------------------
    # Foreground loop (runs inside the daemon process)
    # ------------------------------------------------------------------

    def _build_daemon(self) -> SchedulerDaemon:
        if self._daemon_factory is not None:
            self._owns_store = False
            return self._daemon_factory()
        store = open_store(self.config)
        self._owns_store = True
        executor = CommandExecutor(
            workspace=self.config.workspace,
            heartbeat_path=self.config.heartbeat_path,
            retry_delay_seconds=self.config.retry_delay_seconds
        )
        return SchedulerDaemon(
            store,
            executor=executor,
            heartbeat_enabled=self.config.heartbeat_enabled,
            heartbeat_schedule=self.config.heartbeat_schedule
        )

    def _setup_event_listeners(self):
        """Stop the loop when a tick raises (store failure)."""

        def job_error_listener(event):
            self._fatal_error = event.exception
            logger.error(f"Tick failed, stopping daemon: {event.exception}")
            self._stopping = True
            self._scheduler.shutdown(wait=False)

        def job_missed_listener(event):
            logger.warning(f"Tick missed its scheduled time ({event.scheduled_run_time})")

        self._scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self._scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)

    def _setup_signal_handlers(self):
        """Cooperative shutdown: the running tick completes before exit."""

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down after current tick...")
            self.request_stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def request_stop(self):
        """Ask a running loop to exit once the in-flight tick is done."""
        self._stopping = True
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=True)

    def _run_tick(self):
        """One tick, then re-arm the next one poll_interval after it finished."""
        if self._stopping:
            return
        self._daemon.tick()
        if self._stopping:
            return
        self._scheduler.add_job(
            self._run_tick,
            'date',
            run_date=datetime.now() + timedelta(seconds=self.config.poll_interval_seconds),
            id=TICK_JOB_ID,
            replace_existing=True
        )

    def run_loop(self, install_signal_handlers: bool = True):
        """
        Run the scheduler in the foreground until signaled.

        Raises:
            StoreError: If the job store fails during a tick
        """
        self._stopping = False
        self._fatal_error = None
        current = self.status()
        if current.running and current.pid != os.getpid():
            logger.warning(f"Another daemon is recorded as running (PID: {current.pid})")
            owns_pid_file = False
        else:
            self._write_pid_file(os.getpid())
            owns_pid_file = True

        try:
            self._daemon = self._build_daemon()
            self._daemon.ensure_system_jobs()

            self._scheduler = BlockingScheduler(
                executors={'default': ThreadPoolExecutor(1)},
                job_defaults={
                    'coalesce': True,
                    'max_instances': 1,
                    'misfire_grace_time': None
                }
            )
            self._setup_event_listeners()
            if install_signal_handlers:
                self._setup_signal_handlers()

            self._scheduler.add_job(self._run_tick, 'date', run_date=datetime.now(), id=TICK_JOB_ID)
            logger.info(
                f"Scheduler daemon running (PID: {os.getpid()}, poll every {self.config.poll_interval_ms}ms)"
            )
            if not self._stopping:
                self._scheduler.start()
        finally:
            self._scheduler = None
            # A store handed in through daemon_factory belongs to the caller
            if self._daemon is not None and self._owns_store:
                self._daemon.store.close()
            self._daemon = None
            if owns_pid_file and self._read_pid() == os.getpid():
                self._remove_pid_file()

        if self._fatal_error is not None:
            raise self._fatal_error
        logger.info("Scheduler daemon stopped")
