"""
Error taxonomy for job management.

Validation, lookup and conflict errors are raised to the caller (CLI or
library user) and never reach the daemon loop. Command failures are not
errors at all: they are recorded as execution logs with status 'failure'.
StoreError is the only error allowed to stop a running daemon.
"""

from typing import Any, Dict, Optional


class SchedulerError(Exception):
    """Base class for errors surfaced to callers."""

    code = "runtime_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class InvalidInputError(SchedulerError):
    """A required field is missing or malformed."""

    code = "invalid_input"


class NotFoundError(SchedulerError):
    """Operation on an unknown job name."""

    code = "not_found"


class ConflictError(SchedulerError):
    """A job with the same name already exists."""

    code = "conflict"


class StoreError(SchedulerError):
    """The backing store could not be read or written."""

    code = "runtime_error"
