"""
Command-line interface for job management and the scheduler daemon.

Job commands (add/list/remove/...) work directly against the job store
whether or not a daemon is running. 'daemon start|stop|status' manage
the background process; 'daemon run' is the foreground loop it executes.

Exit codes: 0 success, 1 runtime error, 2 invalid input, 3 not found,
4 conflict.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from jobscheduler.api import JobService
from jobscheduler.config import SchedulerConfig
from jobscheduler.errors import SchedulerError
from jobscheduler.heartbeat import ensure_template
from jobscheduler.jobs import CommandExecutor
from jobscheduler.models import ON_FAILURE_CHOICES
from jobscheduler.service import DaemonSupervisor
from jobscheduler.store import open_store

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUNTIME_ERROR = 1
EXIT_CODES = {
    "invalid_input": 2,
    "not_found": 3,
    "conflict": 4,
}

_installed_handlers = []


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False, level: str = "INFO"):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    # Replace handlers from an earlier call in the same process
    while _installed_handlers:
        handler = _installed_handlers.pop()
        root_logger.removeHandler(handler)
        handler.close()

    # Console handler (stderr keeps stdout clean for --json)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(console_handler)
    _installed_handlers.append(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        ))
        root_logger.addHandler(file_handler)
        _installed_handlers.append(file_handler)


def _emit(args, data: Any, text: str):
    if args.json:
        print(json.dumps({"ok": True, "data": data}, indent=2, default=str))
    else:
        print(text)


def _format_job_line(job) -> str:
    status = "enabled" if job.enabled else "disabled"
    last = f"last:{job.last_status}" if job.last_status else "no runs yet"
    return f"[{status}] {job.name} ({job.schedule}) - {last}"


def _format_job_detail(job) -> str:
    lines = [
        f"  Name:      {job.name}",
        f"  ID:        {job.id}",
        f"  Schedule:  {job.schedule}",
        f"  Command:   {job.command}",
        f"  Enabled:   {'yes' if job.enabled else 'no'}",
        f"  On fail:   {job.on_failure} (retries: {job.retries})",
        f"  Last run:  {job.last_run_at or 'N/A'} ({job.last_status or 'no runs yet'})",
        f"  Runs:      {job.run_count}",
        f"  Next run:  {job.next_run_at or 'N/A'}",
    ]
    if job.description:
        lines.insert(4, f"  Description: {job.description}")
    if job.timeout:
        lines.append(f"  Timeout:   {job.timeout}")
    if job.max_runs:
        lines.append(f"  Max runs:  {job.max_runs}")
    if job.start_at or job.end_at:
        lines.append(f"  Window:    {job.start_at or '-'} .. {job.end_at or '-'}")
    return "\n".join(lines)


def _service(config: SchedulerConfig) -> JobService:
    return JobService(open_store(config))


def cmd_init(args, config: SchedulerConfig) -> int:
    """Create the workspace state directory, config file and heartbeat template."""
    config.save()
    created = ensure_template(config.heartbeat_path)
    with open_store(config):
        pass
    _emit(args, config.to_dict(),
          f"Initialized scheduler workspace at {config.state_dir}"
          + ("\nCreated heartbeat template: " + str(config.heartbeat_path) if created else ""))
    return EXIT_OK


def cmd_add(args, config: SchedulerConfig) -> int:
    service = _service(config)
    try:
        job = service.add(
            args.name,
            args.schedule,
            args.job_command,
            description=args.description,
            on_failure=args.on_failure,
            retries=args.retries,
            timeout=args.timeout,
            start_at=args.start_at,
            end_at=args.end_at,
            max_runs=args.max_runs,
        )
    finally:
        service.store.close()
    _emit(args, job.to_dict(), f"Added job '{job.name}' ({job.schedule}): {job.command}")
    return EXIT_OK


def cmd_list(args, config: SchedulerConfig) -> int:
    service = _service(config)
    try:
        jobs = service.list(active=args.active)
    finally:
        service.store.close()
    text = "\n".join(_format_job_line(job) for job in jobs) if jobs else "No jobs defined."
    _emit(args, [job.to_dict() for job in jobs], text)
    return EXIT_OK


def cmd_status(args, config: SchedulerConfig) -> int:
    service = _service(config)
    try:
        job = service.get(args.name)
    finally:
        service.store.close()
    _emit(args, job.to_dict(), _format_job_detail(job))
    return EXIT_OK


def cmd_remove(args, config: SchedulerConfig) -> int:
    service = _service(config)
    try:
        service.remove(args.name, force=args.force)
    finally:
        service.store.close()
    _emit(args, {"removed": True}, f"Removed job '{args.name}'")
    return EXIT_OK


def cmd_enable(args, config: SchedulerConfig) -> int:
    service = _service(config)
    try:
        job = service.enable(args.name)
    finally:
        service.store.close()
    _emit(args, job.to_dict(), f"Enabled job '{job.name}'")
    return EXIT_OK


def cmd_disable(args, config: SchedulerConfig) -> int:
    service = _service(config)
    try:
        job = service.disable(args.name)
    finally:
        service.store.close()
    _emit(args, job.to_dict(), f"Disabled job '{job.name}'")
    return EXIT_OK


def cmd_edit(args, config: SchedulerConfig) -> int:
    service = _service(config)
    try:
        job = service.edit(
            args.name,
            schedule=args.schedule,
            command=args.job_command,
            description=args.description
        )
    finally:
        service.store.close()
    _emit(args, job.to_dict(), f"Updated job '{job.name}'")
    return EXIT_OK


def cmd_run(args, config: SchedulerConfig) -> int:
    """Run a job immediately and record the outcome."""
    service = _service(config)
    executor = CommandExecutor(
        workspace=config.workspace,
        heartbeat_path=config.heartbeat_path,
        retry_delay_seconds=config.retry_delay_seconds
    )
    try:
        entry = service.run_now(args.name, executor)
    finally:
        service.store.close()
    text = f"Job '{entry.job_name}' finished: {entry.status} ({entry.duration_ms}ms)"
    if entry.output:
        text += f"\n{entry.output}"
    if entry.error:
        text += f"\nError: {entry.error}"
    _emit(args, entry.to_dict(), text)
    return EXIT_OK if entry.status == "success" else EXIT_RUNTIME_ERROR


def cmd_logs(args, config: SchedulerConfig) -> int:
    service = _service(config)
    try:
        service.get(args.name)
        entries = service.logs(args.name, limit=args.limit, since=args.since)
    finally:
        service.store.close()

    if not entries:
        text = f"No logs for '{args.name}'."
    else:
        lines = []
        for entry in entries:
            lines.append(f"{entry.started_at}  {entry.status:<7}  {entry.duration_ms}ms")
            if entry.output:
                lines.append(f"    output: {entry.output[:200]}")
            if entry.error:
                lines.append(f"    error:  {entry.error[:200]}")
        text = "\n".join(lines)
    _emit(args, [entry.to_dict() for entry in entries], text)
    return EXIT_OK


def cmd_daemon(args, config: SchedulerConfig) -> int:
    supervisor = DaemonSupervisor(config)

    if args.action == "run":
        setup_logging(log_file=config.log_file, verbose=args.verbose, level=config.log_level)
        supervisor.run_loop()
        return EXIT_OK

    if args.action == "start":
        status = supervisor.start()
        text = f"Daemon running (PID: {status.pid})"
    elif args.action == "stop":
        status = supervisor.stop()
        text = "Daemon stopped"
    else:
        status = supervisor.status()
        text = f"Daemon running (PID: {status.pid})" if status.running else "Daemon not running"
    _emit(args, status.to_dict(), text)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="job-scheduler",
        description="Job Scheduler - persistent recurring jobs with a background daemon",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('-w', '--workspace', type=str, help='Workspace directory (default: current directory)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    parser.add_argument('--json', action='store_true', help='Emit JSON output')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    init_parser = subparsers.add_parser('init', help='Initialize workspace configuration')
    init_parser.set_defaults(func=cmd_init)

    # Add command
    add_parser = subparsers.add_parser('add', help='Add a new job')
    add_parser.add_argument('name', help='Job name')
    add_parser.add_argument('--schedule', '-s', help="Schedule: 5m, 6h, @daily, or at:<ISO instant>")
    add_parser.add_argument('--command', '-c', dest='job_command', help='Shell command to execute')
    add_parser.add_argument('--description', type=str, help='Human-readable description')
    add_parser.add_argument('--on-failure', choices=ON_FAILURE_CHOICES, default='notify',
                            help='Failure policy (default: notify)')
    add_parser.add_argument('--retries', type=int, default=0, help='Retry attempts when --on-failure retry')
    add_parser.add_argument('--timeout', type=str, help='Max runtime (e.g. 30s, 5m)')
    add_parser.add_argument('--start-at', type=str, help='Do not run before this ISO-8601 instant')
    add_parser.add_argument('--end-at', type=str, help='Disable the job after this ISO-8601 instant')
    add_parser.add_argument('--max-runs', type=int, default=0, help='Maximum number of runs (0 = unlimited)')
    add_parser.set_defaults(func=cmd_add)

    list_parser = subparsers.add_parser('list', help='List jobs')
    list_parser.add_argument('--active', action='store_true', help='Only enabled jobs')
    list_parser.set_defaults(func=cmd_list)

    status_parser = subparsers.add_parser('status', help='Show job details')
    status_parser.add_argument('name', help='Job name')
    status_parser.set_defaults(func=cmd_status)

    remove_parser = subparsers.add_parser('remove', help='Remove a job and its logs')
    remove_parser.add_argument('name', help='Job name to remove')
    remove_parser.add_argument('--force', action='store_true', help='Confirm removal')
    remove_parser.set_defaults(func=cmd_remove)

    enable_parser = subparsers.add_parser('enable', aliases=['resume'], help='Enable a job')
    enable_parser.add_argument('name', help='Job name to enable')
    enable_parser.set_defaults(func=cmd_enable)

    disable_parser = subparsers.add_parser('disable', aliases=['pause'], help='Disable a job')
    disable_parser.add_argument('name', help='Job name to disable')
    disable_parser.set_defaults(func=cmd_disable)

    edit_parser = subparsers.add_parser('edit', help='Update a job')
    edit_parser.add_argument('name', help='Job name')
    edit_parser.add_argument('--schedule', '-s', help='New schedule')
    edit_parser.add_argument('--command', '-c', dest='job_command', help='New command')
    edit_parser.add_argument('--description', type=str, help='New description')
    edit_parser.set_defaults(func=cmd_edit)

    run_parser = subparsers.add_parser('run', help='Run a job now')
    run_parser.add_argument('name', help='Job name')
    run_parser.set_defaults(func=cmd_run)

    logs_parser = subparsers.add_parser('logs', aliases=['history'], help='View execution logs for a job')
    logs_parser.add_argument('name', help='Job name')
    logs_parser.add_argument('--limit', '-n', type=int, default=10, help='How many entries (default: 10)')
    logs_parser.add_argument('--since', type=str, help='Only runs started at or after this ISO-8601 instant')
    logs_parser.set_defaults(func=cmd_logs)

    daemon_parser = subparsers.add_parser('daemon', help='Manage the background daemon')
    daemon_parser.add_argument('action', choices=['start', 'stop', 'status', 'run'])
    daemon_parser.set_defaults(func=cmd_daemon)

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_RUNTIME_ERROR

    if args.func is not cmd_daemon or args.action != "run":
        setup_logging(verbose=args.verbose, level="INFO" if args.verbose else "WARNING")

    try:
        config = SchedulerConfig(workspace=args.workspace)
        return args.func(args, config)
    except SchedulerError as e:
        if args.json:
            print(json.dumps({"ok": False, "error": e.to_dict()}, indent=2))
        else:
            print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_CODES.get(e.code, EXIT_RUNTIME_ERROR)
    except Exception as e:
        logger.error(f"Command failed: {e}", exc_info=args.verbose)
        if args.json:
            print(json.dumps({"ok": False, "error": {"code": "runtime_error", "message": str(e)}}, indent=2))
        return EXIT_RUNTIME_ERROR


if __name__ == '__main__':
    sys.exit(main())
