"""
Schedule parsing and next-run computation.

Supported schedule strings:
- Interval: '<N><unit>' with unit s, m, h or d (e.g. '30s', '5m', '6h', '1d')
- Presets: '@hourly', '@daily'
- One-shot: an ISO-8601 instant, optionally prefixed with 'at:'
  (e.g. 'at:2026-01-01T09:00:00Z')

Anything else falls back to "try again in 60 seconds" at run time so a
malformed row never crashes the daemon loop. New jobs are checked with
validate_schedule() before they are stored.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from jobscheduler.errors import InvalidInputError

logger = logging.getLogger(__name__)

INTERVAL_PATTERN = re.compile(r'^(\d+)([smhd])$', re.IGNORECASE)

UNIT_SECONDS = {
    's': 1,
    'm': 60,
    'h': 3600,
    'd': 86400,
}

PRESETS = {
    '@hourly': 3600,
    '@daily': 86400,
}

FALLBACK_SECONDS = 60

KIND_EVERY = "every"
KIND_AT = "at"
KIND_INVALID = "invalid"


@dataclass
class Schedule:
    """Parsed form of a schedule string."""
    kind: str  # 'every', 'at' or 'invalid'
    every_seconds: Optional[int] = None
    run_at: Optional[datetime] = None

    @property
    def is_one_shot(self) -> bool:
        return self.kind == KIND_AT


def parse_instant(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO-8601 instant into an aware UTC datetime.

    Naive values are taken as UTC. Returns None for empty or unparsable input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if not text:
            return None
        if text.endswith(('Z', 'z')):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_schedule(text: str) -> Schedule:
    """Parse a schedule string. Never raises."""
    trimmed = (text or '').strip()

    match = INTERVAL_PATTERN.match(trimmed)
    if match:
        amount = int(match.group(1))
        unit = match.group(2).lower()
        return Schedule(kind=KIND_EVERY, every_seconds=amount * UNIT_SECONDS[unit])

    if trimmed in PRESETS:
        return Schedule(kind=KIND_EVERY, every_seconds=PRESETS[trimmed])

    instant_text = trimmed[3:] if trimmed.lower().startswith('at:') else trimmed
    # Require a date part so bare numbers are not read as instants
    if '-' in instant_text:
        run_at = parse_instant(instant_text)
        if run_at is not None:
            return Schedule(kind=KIND_AT, run_at=run_at)

    return Schedule(kind=KIND_INVALID)


def compute_next_run(schedule: str, from_instant: datetime) -> datetime:
    """
    Compute the next due instant for a schedule.

    Args:
        schedule: Schedule string
        from_instant: Reference instant (usually the finish time of the last run)

    Returns:
        Aware UTC datetime of the next run
    """
    start = parse_instant(from_instant)
    parsed = parse_schedule(schedule)

    if parsed.kind == KIND_EVERY:
        return start + timedelta(seconds=parsed.every_seconds)
    if parsed.kind == KIND_AT:
        return parsed.run_at

    logger.warning(
        f"Unrecognized schedule '{schedule}', retrying in {FALLBACK_SECONDS}s"
    )
    return start + timedelta(seconds=FALLBACK_SECONDS)


def is_due(now: datetime, next_run_at: Optional[str]) -> bool:
    """True iff next_run_at is a valid instant at or before now."""
    next_run = parse_instant(next_run_at)
    if next_run is None:
        return False
    return next_run <= parse_instant(now)


def validate_schedule(text: Optional[str]) -> Schedule:
    """
    Validate a schedule string before it is stored.

    Raises:
        InvalidInputError: If the schedule would only hit the run-time fallback
    """
    parsed = parse_schedule(text or '')
    if parsed.kind == KIND_INVALID:
        raise InvalidInputError(
            f"Invalid schedule '{text}'. Use <N><s|m|h|d>, @hourly, @daily, "
            "or an ISO-8601 instant (at:2026-01-01T09:00:00Z).",
            {"field": "schedule"}
        )
    if parsed.kind == KIND_EVERY and parsed.every_seconds <= 0:
        raise InvalidInputError(
            "Interval schedules must be greater than zero.",
            {"field": "schedule"}
        )
    return parsed


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """
    Parse a timeout duration into seconds.

    Accepts '<N><s|m|h|d>' or a plain number of seconds. Returns None when
    unset or unparsable.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None

    text = value.strip()
    if not text:
        return None
    match = INTERVAL_PATTERN.match(text)
    if match:
        seconds = int(match.group(1)) * UNIT_SECONDS[match.group(2).lower()]
        return float(seconds) if seconds > 0 else None
    try:
        seconds = float(text)
    except ValueError:
        logger.warning(f"Ignoring unparsable timeout '{value}'")
        return None
    return seconds if seconds > 0 else None


def format_instant(dt: datetime) -> str:
    """Serialize an instant the way the store keeps it."""
    return parse_instant(dt).isoformat()
