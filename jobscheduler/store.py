"""
Durable storage for job definitions and execution logs.

JobStore defines the contract used by the daemon and the CLI. Two
backends implement it:

- SQLiteJobStore: tables 'cron_jobs' and 'cron_logs' in a SQLite file
- JSONJobStore: a single JSON document, rewritten atomically under a file lock

Stores know nothing about scheduling or execution. Every backend failure
is raised as StoreError; recording a run for a job that was removed
raises NotFoundError instead.
"""

import fcntl
import json
import logging
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, fields
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterator

from jobscheduler.config import SchedulerConfig
from jobscheduler.errors import ConflictError, NotFoundError, StoreError
from jobscheduler.models import (
    JobSpec,
    JobRecord,
    ExecutionLogEntry,
    iso_now,
    new_id,
)
from jobscheduler.schedule import parse_instant

logger = logging.getLogger(__name__)

JOB_COLUMNS = [f.name for f in fields(JobRecord)]
LOG_COLUMNS = [f.name for f in fields(ExecutionLogEntry)]

# Fields callers may never change through update()
IMMUTABLE_FIELDS = {'id', 'name', 'created_at'}


def _check_update_fields(updates: Dict[str, Any]):
    unknown = set(updates) - set(JOB_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown job field(s): {', '.join(sorted(unknown))}")
    frozen = set(updates) & IMMUTABLE_FIELDS
    if frozen:
        raise ValueError(f"Field(s) cannot be updated: {', '.join(sorted(frozen))}")


def _filter_since(entries: List[ExecutionLogEntry], since: Optional[str]) -> List[ExecutionLogEntry]:
    since_at = parse_instant(since)
    if since_at is None:
        return entries
    return [e for e in entries if (parse_instant(e.started_at) or since_at) >= since_at]


class JobStore(ABC):
    """
    Contract for job and log persistence.

    All lookups and edits are by unique job name. Writes other than
    create() are idempotent on a given name.
    """

    @abstractmethod
    def create(self, spec: JobSpec) -> JobRecord:
        """Insert a new job. Raises ConflictError if the name exists."""

    @abstractmethod
    def get(self, name: str) -> Optional[JobRecord]:
        """Return the job with this name, or None."""

    @abstractmethod
    def list(self) -> List[JobRecord]:
        """All jobs, newest first by creation time."""

    @abstractmethod
    def remove(self, name: str) -> bool:
        """Delete a job and its logs. True if something was removed."""

    @abstractmethod
    def update(self, name: str, **fields: Any) -> Optional[JobRecord]:
        """Merge the given fields into the job. None if the job is unknown."""

    @abstractmethod
    def append_log(self, job_id: str, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        """
        Record a run and update the job's last_run_at, last_status and run_count.

        Raises:
            NotFoundError: No job has this id (it was removed)
        """

    @abstractmethod
    def list_logs(
        self,
        job_name: str,
        limit: int = 10,
        since: Optional[str] = None
    ) -> List[ExecutionLogEntry]:
        """Logs for a job, newest first, optionally only those started at/after since."""

    @abstractmethod
    def count_logs(self, job_name: str) -> int:
        """Number of recorded runs for a job."""

    def set_enabled(self, name: str, enabled: bool) -> bool:
        """Enable or disable a job. False if the job is unknown."""
        return self.update(name, enabled=bool(enabled)) is not None

    def close(self):
        """Release backend resources."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class SQLiteJobStore(JobStore):
    """SQLite-backed job store"""

    def __init__(self, db_path: Path):
        """
        Open (and create if needed) the job database.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # The daemon ticks on a worker thread; access is serialized by _lock
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            self._create_tables()
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"Failed to open job database {self.db_path}: {e}") from e
        logger.debug(f"Opened job store: {self.db_path}")

    def _create_tables(self):
        """Create tables if they don't exist and add columns missing from older databases"""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS cron_jobs (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                schedule TEXT NOT NULL,
                command TEXT NOT NULL,
                description TEXT,
                enabled INTEGER DEFAULT 1,
                on_failure TEXT DEFAULT 'notify',
                retries INTEGER DEFAULT 0,
                timeout TEXT,
                start_at TEXT,
                end_at TEXT,
                max_runs INTEGER DEFAULT 0,
                last_run_at TEXT,
                last_status TEXT,
                run_count INTEGER DEFAULT 0,
                next_run_at TEXT,
                created_at TEXT,
                updated_at TEXT
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS cron_logs (
                id TEXT PRIMARY KEY,
                job_id TEXT NOT NULL REFERENCES cron_jobs(id) ON DELETE CASCADE,
                job_name TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT NOT NULL,
                duration_ms INTEGER,
                output TEXT,
                error TEXT,
                created_at TEXT
            )
        """)

        existing = {row['name'] for row in self.conn.execute("PRAGMA table_info(cron_jobs)")}
        missing_columns = [
            ("description", "TEXT"),
            ("on_failure", "TEXT DEFAULT 'notify'"),
            ("retries", "INTEGER DEFAULT 0"),
            ("timeout", "TEXT"),
            ("start_at", "TEXT"),
            ("end_at", "TEXT"),
            ("max_runs", "INTEGER DEFAULT 0"),
            ("last_run_at", "TEXT"),
            ("last_status", "TEXT"),
            ("run_count", "INTEGER DEFAULT 0"),
            ("created_at", "TEXT"),
            ("updated_at", "TEXT"),
        ]
        for column, column_type in missing_columns:
            if column not in existing:
                logger.info(f"Adding missing column cron_jobs.{column}")
                self.conn.execute(f"ALTER TABLE cron_jobs ADD COLUMN {column} {column_type}")

        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_job_started ON cron_logs(job_name, started_at)")
        self.conn.commit()
        logger.debug("Job store tables created/verified")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self.conn:
                    yield self.conn
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as e:
                raise StoreError(f"Job store error ({self.db_path}): {e}") from e

    def create(self, spec: JobSpec) -> JobRecord:
        record = JobRecord.from_spec(spec)
        row = asdict(record)
        row['enabled'] = 1 if record.enabled else 0
        placeholders = ", ".join(f":{c}" for c in JOB_COLUMNS)
        try:
            with self._transaction() as conn:
                conn.execute(
                    f"INSERT INTO cron_jobs ({', '.join(JOB_COLUMNS)}) VALUES ({placeholders})",
                    row
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Job '{spec.name}' already exists.", {"name": spec.name}) from e
        logger.info(f"Created job '{record.name}' ({record.schedule})")
        return record

    def get(self, name: str) -> Optional[JobRecord]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM cron_jobs WHERE name = ?", (name,)).fetchone()
        return JobRecord.from_dict(row) if row else None

    def list(self) -> List[JobRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM cron_jobs ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
        return [JobRecord.from_dict(row) for row in rows]

    def remove(self, name: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM cron_jobs WHERE name = ?", (name,))
        removed = cursor.rowcount > 0
        if removed:
            logger.info(f"Removed job '{name}'")
        return removed

    def update(self, name: str, **fields: Any) -> Optional[JobRecord]:
        _check_update_fields(fields)
        if fields:
            values = dict(fields)
            if 'enabled' in values:
                values['enabled'] = 1 if values['enabled'] else 0
            values['updated_at'] = iso_now()
            assignments = ", ".join(f"{column} = :{column}" for column in values)
            values['_name'] = name
            with self._transaction() as conn:
                conn.execute(f"UPDATE cron_jobs SET {assignments} WHERE name = :_name", values)
        return self.get(name)

    def append_log(self, job_id: str, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        entry.job_id = job_id
        placeholders = ", ".join(f":{c}" for c in LOG_COLUMNS)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    "UPDATE cron_jobs SET last_run_at = ?, last_status = ?, "
                    "run_count = COALESCE(run_count, 0) + 1, updated_at = ? WHERE id = ?",
                    (entry.started_at, entry.status, iso_now(), job_id)
                )
                if cursor.rowcount == 0:
                    # Rolled back with the transaction
                    raise NotFoundError(f"Job id {job_id} no longer exists.", {"job_id": job_id})
                conn.execute(
                    f"INSERT INTO cron_logs ({', '.join(LOG_COLUMNS)}) VALUES ({placeholders})",
                    asdict(entry)
                )
        except sqlite3.IntegrityError as e:
            raise StoreError(f"Cannot record log for unknown job id {job_id}: {e}") from e
        return entry

    def list_logs(
        self,
        job_name: str,
        limit: int = 10,
        since: Optional[str] = None
    ) -> List[ExecutionLogEntry]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM cron_logs WHERE job_name = ? ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (job_name, limit)
            ).fetchall()
        entries = [ExecutionLogEntry.from_dict(row) for row in rows]
        return _filter_since(entries, since)

    def count_logs(self, job_name: str) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM cron_logs WHERE job_name = ?", (job_name,)
            ).fetchone()
        return row[0]

    def close(self):
        with self._lock:
            self.conn.close()

    def __repr__(self):
        return f"SQLiteJobStore({self.db_path})"


class JSONJobStore(JobStore):
    """
    Flat-file job store.

    The whole document is read, changed and rewritten (temp file + rename)
    while holding an exclusive lock, so the CLI and the daemon can share it.
    Log history is trimmed to the most recent max_logs entries.
    """

    def __init__(self, path: Path, max_logs: int = 1000):
        """
        Args:
            path: Path to the JSON document
            max_logs: Maximum number of log entries to keep (all jobs)
        """
        self.path = Path(path)
        self.max_logs = max_logs
        self._lock_path = self.path.with_name(self.path.name + ".lock")
        self._thread_lock = threading.RLock()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Failed to create store directory for {self.path}: {e}") from e
        with self._locked():
            if not self.path.exists():
                self._write({"jobs": [], "logs": []})

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._thread_lock:
            try:
                lockf = open(self._lock_path, "a+")
            except OSError as e:
                raise StoreError(f"Failed to open lock file {self._lock_path}: {e}") from e
            with lockf:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except FileNotFoundError:
            return {"jobs": [], "logs": []}
        except (json.JSONDecodeError, OSError) as e:
            raise StoreError(f"Failed to read job store {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"Corrupted job store {self.path}: expected a JSON object")
        data.setdefault("jobs", [])
        data.setdefault("logs", [])
        return data

    def _write(self, data: Dict[str, Any]):
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(tmp_path, 'w') as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StoreError(f"Failed to write job store {self.path}: {e}") from e

    @staticmethod
    def _find(data: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
        for job in data["jobs"]:
            if job.get("name") == name:
                return job
        return None

    def create(self, spec: JobSpec) -> JobRecord:
        record = JobRecord.from_spec(spec)
        with self._locked():
            data = self._read()
            if self._find(data, spec.name) is not None:
                raise ConflictError(f"Job '{spec.name}' already exists.", {"name": spec.name})
            data["jobs"].append(asdict(record))
            self._write(data)
        logger.info(f"Created job '{record.name}' ({record.schedule})")
        return record

    def get(self, name: str) -> Optional[JobRecord]:
        with self._locked():
            job = self._find(self._read(), name)
        return JobRecord.from_dict(job) if job else None

    def list(self) -> List[JobRecord]:
        with self._locked():
            jobs = self._read()["jobs"]
        # Stable sort keeps later insertions ahead on equal timestamps
        ordered = list(reversed(jobs))
        ordered.sort(key=lambda job: job.get("created_at") or "", reverse=True)
        return [JobRecord.from_dict(job) for job in ordered]

    def remove(self, name: str) -> bool:
        with self._locked():
            data = self._read()
            job = self._find(data, name)
            if job is None:
                return False
            data["jobs"] = [j for j in data["jobs"] if j.get("name") != name]
            data["logs"] = [entry for entry in data["logs"] if entry.get("job_id") != job.get("id")]
            self._write(data)
        logger.info(f"Removed job '{name}'")
        return True

    def update(self, name: str, **fields: Any) -> Optional[JobRecord]:
        _check_update_fields(fields)
        with self._locked():
            data = self._read()
            job = self._find(data, name)
            if job is None:
                return None
            if fields:
                job.update(fields)
                if 'enabled' in fields:
                    job['enabled'] = bool(fields['enabled'])
                job['updated_at'] = iso_now()
                self._write(data)
        return JobRecord.from_dict(job)

    def append_log(self, job_id: str, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        entry.job_id = job_id
        with self._locked():
            data = self._read()
            job = next((j for j in data["jobs"] if j.get("id") == job_id), None)
            if job is None:
                raise NotFoundError(f"Job id {job_id} no longer exists.", {"job_id": job_id})
            data["logs"].append(asdict(entry))
            if len(data["logs"]) > self.max_logs:
                data["logs"] = data["logs"][-self.max_logs:]
            job['last_run_at'] = entry.started_at
            job['last_status'] = entry.status
            job['run_count'] = (job.get('run_count') or 0) + 1
            job['updated_at'] = iso_now()
            self._write(data)
        return entry

    def list_logs(
        self,
        job_name: str,
        limit: int = 10,
        since: Optional[str] = None
    ) -> List[ExecutionLogEntry]:
        with self._locked():
            logs = [entry for entry in self._read()["logs"] if entry.get("job_name") == job_name]
        logs = list(reversed(logs))
        logs.sort(key=lambda entry: entry.get("started_at") or "", reverse=True)
        entries = [ExecutionLogEntry.from_dict(entry) for entry in logs[:limit]]
        return _filter_since(entries, since)

    def count_logs(self, job_name: str) -> int:
        with self._locked():
            return sum(1 for entry in self._read()["logs"] if entry.get("job_name") == job_name)

    def __repr__(self):
        return f"JSONJobStore({self.path})"


def open_store(config: SchedulerConfig) -> JobStore:
    """Open the store backend selected by configuration."""
    if config.store_backend == "json":
        return JSONJobStore(config.db_path)
    return SQLiteJobStore(config.db_path)


def new_log_entry(
    job: JobRecord,
    status: str,
    started_at: str,
    finished_at: str,
    duration_ms: int,
    output: Optional[str] = None,
    error: Optional[str] = None
) -> ExecutionLogEntry:
    """Build a log entry for a run of the given job."""
    return ExecutionLogEntry(
        id=new_id(),
        job_id=job.id,
        job_name=job.name,
        status=status,
        started_at=started_at,
        finished_at=finished_at,
        duration_ms=duration_ms,
        output=output,
        error=error,
        created_at=iso_now(),
    )
