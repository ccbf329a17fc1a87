"""
Command execution for scheduled jobs.

An executor is any callable taking a JobRecord and returning an
ExecutionResult. CommandExecutor is the default: it answers heartbeat
jobs from the instructions file and runs everything else through the
shell. The daemon never lets an execution problem escape as an
exception; failures come back as results with status 'failure'.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Optional, List

from jobscheduler.heartbeat import read_heartbeat
from jobscheduler.models import (
    ExecutionResult,
    JobRecord,
    STATUS_FAILURE,
    STATUS_SUCCESS,
)
from jobscheduler.schedule import parse_duration

logger = logging.getLogger(__name__)

Executor = Callable[[JobRecord], ExecutionResult]


class CommandExecutor:
    """
    Runs job commands through the shell with timeout and retry handling.

    The job's on_failure policy is honoured here rather than in the daemon:
    'retry' re-runs a failed command up to job.retries more times before
    the result is reported; 'notify' and 'ignore' only change how loudly
    the failure is logged.
    """

    def __init__(
        self,
        workspace: Optional[Path] = None,
        heartbeat_path: Optional[Path] = None,
        retry_delay_seconds: float = 0.0
    ):
        """
        Args:
            workspace: Working directory for commands (default: current directory)
            heartbeat_path: Instructions file for heartbeat jobs
            retry_delay_seconds: Pause between retry attempts
        """
        self.workspace = Path(workspace) if workspace else Path.cwd()
        self.heartbeat_path = heartbeat_path or self.workspace / ".jobscheduler" / "HEARTBEAT.md"
        self.retry_delay_seconds = retry_delay_seconds

    def __call__(self, job: JobRecord) -> ExecutionResult:
        return self.execute(job)

    def execute(self, job: JobRecord) -> ExecutionResult:
        """Execute a job and return its outcome."""
        if job.is_heartbeat:
            return self.run_heartbeat()

        attempts = 1 + (max(job.retries, 0) if job.on_failure == "retry" else 0)
        timeout = parse_duration(job.timeout)
        result = None

        for attempt in range(1, attempts + 1):
            if attempts > 1:
                logger.info(f"[{job.name}] Attempt {attempt}/{attempts}")
            result = self.execute_command(job.command, timeout=timeout, job_name=job.name)
            if result.ok:
                break
            if attempt < attempts:
                logger.warning(f"[{job.name}] Failed (attempt {attempt}/{attempts}): {result.error}")
                if self.retry_delay_seconds:
                    time.sleep(self.retry_delay_seconds)

        if not result.ok:
            if job.on_failure == "ignore":
                logger.debug(f"[{job.name}] Failed (ignored): {result.error}")
            else:
                logger.error(f"[{job.name}] Failed: {result.error}")
        return result

    def run_heartbeat(self) -> ExecutionResult:
        """Heartbeat runs report the instructions file and never fail."""
        return ExecutionResult(status=STATUS_SUCCESS, output=read_heartbeat(self.heartbeat_path))

    def execute_command(
        self,
        command: str,
        timeout: Optional[float] = None,
        job_name: Optional[str] = None
    ) -> ExecutionResult:
        """
        Execute a shell command.

        Args:
            command: Shell command to execute
            timeout: Timeout in seconds (None = wait indefinitely)
            job_name: Name of the job (for logging)

        Returns:
            ExecutionResult with trimmed stdout as output and, on failure,
            trimmed stderr (or a synthesized message) as error
        """
        log_prefix = f"[{job_name}] " if job_name else ""
        logger.info(f"{log_prefix}Executing command: {command}")

        try:
            process = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                cwd=str(self.workspace),
                start_new_session=True
            )
        except OSError as e:
            logger.error(f"{log_prefix}Command could not be started: {e}")
            return ExecutionResult(status=STATUS_FAILURE, error=f"Command could not be started: {e}")

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        def read_stream(stream, output_list):
            for line in stream:
                line = line.rstrip('\n')
                output_list.append(line)
                logger.debug(f"{log_prefix}{line}")

        # Drain both pipes concurrently so a chatty command cannot block on a full pipe
        stdout_thread = threading.Thread(target=read_stream, args=(process.stdout, stdout_lines), daemon=True)
        stderr_thread = threading.Thread(target=read_stream, args=(process.stderr, stderr_lines), daemon=True)
        stdout_thread.start()
        stderr_thread.start()

        timed_out = False
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            # Kill the whole process group so grandchildren release the pipes
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            process.wait()

        stdout_thread.join()
        stderr_thread.join()
        process.stdout.close()
        process.stderr.close()

        stdout = '\n'.join(stdout_lines).strip()
        stderr = '\n'.join(stderr_lines).strip()

        if timed_out:
            logger.error(f"{log_prefix}Command timed out after {timeout:g}s: {command}")
            return ExecutionResult(
                status=STATUS_FAILURE,
                output=stdout,
                error=f"Command timed out after {timeout:g}s"
            )

        if process.returncode == 0:
            logger.info(f"{log_prefix}Command completed successfully")
            return ExecutionResult(status=STATUS_SUCCESS, output=stdout)

        return ExecutionResult(
            status=STATUS_FAILURE,
            output=stdout,
            error=stderr or f"Command exited with code {process.returncode}"
        )
