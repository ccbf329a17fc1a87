"""
Data models for scheduled jobs and their execution logs.
"""

import uuid
from dataclasses import dataclass, asdict, fields
from datetime import datetime, timezone
from typing import Optional, Dict, Any

HEARTBEAT_JOB_NAME = "__system_heartbeat__"
HEARTBEAT_COMMAND = "heartbeat:run"

ON_FAILURE_CHOICES = ("notify", "retry", "ignore")

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    return utc_now().isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class JobSpec:
    """Input for creating a job"""
    name: str
    schedule: str  # '5m', '@daily', or a one-shot instant 'at:2026-01-01T09:00:00Z'
    command: str  # Shell command, or HEARTBEAT_COMMAND
    description: Optional[str] = None
    enabled: bool = True
    on_failure: str = "notify"  # notify | retry | ignore
    retries: int = 0
    timeout: Optional[str] = None  # '30s', '5m', or plain seconds
    start_at: Optional[str] = None
    end_at: Optional[str] = None
    max_runs: int = 0  # 0 = unlimited


@dataclass
class JobRecord:
    """A persisted job with its scheduling state"""
    id: str
    name: str
    schedule: str
    command: str
    description: Optional[str]
    enabled: bool
    on_failure: str
    retries: int
    timeout: Optional[str]
    start_at: Optional[str]
    end_at: Optional[str]
    max_runs: int
    last_run_at: Optional[str]
    last_status: Optional[str]
    run_count: int  # total recorded runs; not reduced by log trimming
    next_run_at: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_spec(cls, spec: JobSpec, job_id: Optional[str] = None) -> 'JobRecord':
        """Build a fresh record from a JobSpec"""
        now = iso_now()
        return cls(
            id=job_id or new_id(),
            name=spec.name,
            schedule=spec.schedule,
            command=spec.command,
            description=spec.description,
            enabled=bool(spec.enabled),
            on_failure=spec.on_failure or "notify",
            retries=spec.retries or 0,
            timeout=spec.timeout,
            start_at=spec.start_at,
            end_at=spec.end_at,
            max_runs=spec.max_runs or 0,
            last_run_at=None,
            last_status=None,
            run_count=0,
            next_run_at=None,
            created_at=now,
            updated_at=now,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobRecord':
        """Create from a mapping (sqlite3.Row or decoded JSON)"""
        values = {f.name: data[f.name] if f.name in data.keys() else None for f in fields(cls)}
        values['enabled'] = bool(values['enabled'])
        values['retries'] = values['retries'] or 0
        values['max_runs'] = values['max_runs'] or 0
        values['run_count'] = values['run_count'] or 0
        values['on_failure'] = values['on_failure'] or "notify"
        return cls(**values)

    @property
    def is_heartbeat(self) -> bool:
        return self.command == HEARTBEAT_COMMAND

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionLogEntry:
    """One recorded run of a job"""
    id: str
    job_id: str
    job_name: str
    status: str  # 'success' or 'failure'
    started_at: str
    finished_at: str
    duration_ms: int
    output: Optional[str]
    error: Optional[str]
    created_at: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExecutionLogEntry':
        return cls(**{f.name: data[f.name] if f.name in data.keys() else None for f in fields(cls)})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionResult:
    """Outcome returned by an executor"""
    status: str
    output: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS
