"""
Scheduler configuration management.

Every setting is resolved in this order (highest priority first):
1. Explicit argument to SchedulerConfig
2. Environment variable (a .env file in the working directory is loaded first)
3. Workspace config file (<workspace>/.jobscheduler/config.json)
4. Default

All paths default to locations under <workspace>/.jobscheduler/ so a
workspace carries its own jobs, logs and daemon PID file.
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, Any

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".jobscheduler"
CONFIG_FILE_NAME = "config.json"

DEFAULT_POLL_INTERVAL_MS = 30_000
MIN_POLL_INTERVAL_MS = 100
DEFAULT_HEARTBEAT_SCHEDULE = "30m"
STORE_BACKENDS = ("sqlite", "json")

# Environment variable names
ENV_WORKSPACE = "JOBSCHEDULER_WORKSPACE"
ENV_STORE = "JOBSCHEDULER_STORE"
ENV_DB_PATH = "JOBSCHEDULER_DB_PATH"
ENV_PID_FILE = "JOBSCHEDULER_PID_FILE"
ENV_POLL_MS = "JOBSCHEDULER_POLL_MS"
ENV_HEARTBEAT_ENABLED = "JOBSCHEDULER_HEARTBEAT_ENABLED"
ENV_HEARTBEAT_SCHEDULE = "JOBSCHEDULER_HEARTBEAT_SCHEDULE"
ENV_RETRY_DELAY = "JOBSCHEDULER_RETRY_DELAY_SECONDS"
ENV_LOG_FILE = "JOBSCHEDULER_LOG_FILE"
ENV_LOG_LEVEL = "JOBSCHEDULER_LOG_LEVEL"


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in ("0", "false", "no", "off", "")


def _parse_poll_interval(value: Any) -> int:
    """Poll interval in ms; invalid or too-small values fall back to the default."""
    try:
        interval = int(float(value))
    except (TypeError, ValueError):
        logger.warning(f"Invalid poll interval '{value}', using {DEFAULT_POLL_INTERVAL_MS}ms")
        return DEFAULT_POLL_INTERVAL_MS
    if interval < MIN_POLL_INTERVAL_MS:
        logger.warning(f"Poll interval {interval}ms below minimum, using {DEFAULT_POLL_INTERVAL_MS}ms")
        return DEFAULT_POLL_INTERVAL_MS
    return interval


@dataclass
class SchedulerConfig:
    """
    Resolved scheduler settings.

    Unset fields are filled in by __post_init__ from the environment,
    the workspace config file, and defaults.
    """
    workspace: Optional[Path] = None
    store_backend: Optional[str] = None  # 'sqlite' or 'json'
    db_path: Optional[Path] = None
    pid_path: Optional[Path] = None
    poll_interval_ms: Optional[int] = None
    heartbeat_enabled: Optional[bool] = None
    heartbeat_schedule: Optional[str] = None
    retry_delay_seconds: Optional[float] = None
    log_file: Optional[Path] = None
    log_level: Optional[str] = None
    _file_values: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if self.workspace is None:
            self.workspace = os.environ.get(ENV_WORKSPACE) or os.getcwd()
        self.workspace = Path(self.workspace).expanduser().resolve()

        self._file_values = self._load_config_file()

        self.store_backend = (self._resolve('store_backend', ENV_STORE) or "sqlite").lower()
        if self.store_backend not in STORE_BACKENDS:
            raise ValueError(
                f"Unknown store backend '{self.store_backend}' (expected one of {', '.join(STORE_BACKENDS)})"
            )

        default_db = "jobs.json" if self.store_backend == "json" else "jobs.db"
        self.db_path = self._resolve_path('db_path', ENV_DB_PATH, self.state_dir / default_db)
        self.pid_path = self._resolve_path('pid_path', ENV_PID_FILE, self.state_dir / "daemon.pid")
        self.log_file = self._resolve_path('log_file', ENV_LOG_FILE, self.state_dir / "logs" / "scheduler.log")

        poll = self._resolve('poll_interval_ms', ENV_POLL_MS)
        self.poll_interval_ms = _parse_poll_interval(poll) if poll is not None else DEFAULT_POLL_INTERVAL_MS

        heartbeat = self._resolve('heartbeat_enabled', ENV_HEARTBEAT_ENABLED)
        self.heartbeat_enabled = _parse_bool(heartbeat) if heartbeat is not None else True

        self.heartbeat_schedule = (
            self._resolve('heartbeat_schedule', ENV_HEARTBEAT_SCHEDULE) or DEFAULT_HEARTBEAT_SCHEDULE
        )

        delay = self._resolve('retry_delay_seconds', ENV_RETRY_DELAY)
        try:
            self.retry_delay_seconds = max(float(delay), 0.0) if delay is not None else 0.0
        except ValueError:
            logger.warning(f"Invalid retry delay '{delay}', using 0")
            self.retry_delay_seconds = 0.0

        self.log_level = (self._resolve('log_level', ENV_LOG_LEVEL) or "INFO").upper()

    @property
    def state_dir(self) -> Path:
        """Directory holding the store, PID file, logs and heartbeat file."""
        return self.workspace / STATE_DIR_NAME

    @property
    def config_path(self) -> Path:
        return self.state_dir / CONFIG_FILE_NAME

    @property
    def heartbeat_path(self) -> Path:
        return self.state_dir / "HEARTBEAT.md"

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    def _resolve(self, name: str, env_var: str) -> Any:
        """Explicit value, then environment, then config file."""
        explicit = getattr(self, name)
        if explicit is not None:
            return explicit
        env_value = os.environ.get(env_var)
        if env_value is not None and env_value != "":
            return env_value
        return self._file_values.get(name)

    def _resolve_path(self, name: str, env_var: str, default: Path) -> Path:
        value = self._resolve(name, env_var)
        if value is None:
            return default
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self.workspace / path
        return path

    def _load_config_file(self) -> Dict[str, Any]:
        """Load settings from the workspace config file if it exists."""
        config_path = self.config_path
        if not config_path.exists():
            return {}
        try:
            with open(config_path, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load config file {config_path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring config file {config_path}: expected a JSON object")
            return {}
        logger.debug(f"Loaded settings from {config_path}")
        return data

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop('_file_values', None)
        return {key: str(value) if isinstance(value, Path) else value for key, value in data.items()}

    def save(self):
        """Save the current settings to the workspace config file."""
        data = self.to_dict()
        data.pop('workspace', None)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w') as f:
            json.dump(data, f, indent=2)
        logger.info(f"Saved configuration to {self.config_path}")

    def child_environment(self) -> Dict[str, str]:
        """Environment for a spawned daemon so it resolves the same settings."""
        env = dict(os.environ)
        env[ENV_WORKSPACE] = str(self.workspace)
        env[ENV_STORE] = self.store_backend
        env[ENV_DB_PATH] = str(self.db_path)
        env[ENV_PID_FILE] = str(self.pid_path)
        env[ENV_POLL_MS] = str(self.poll_interval_ms)
        env[ENV_HEARTBEAT_ENABLED] = "1" if self.heartbeat_enabled else "0"
        env[ENV_HEARTBEAT_SCHEDULE] = self.heartbeat_schedule
        env[ENV_RETRY_DELAY] = str(self.retry_delay_seconds)
        env[ENV_LOG_FILE] = str(self.log_file)
        env[ENV_LOG_LEVEL] = self.log_level
        return env

    def __repr__(self):
        return f"SchedulerConfig(workspace={self.workspace}, store={self.store_backend}:{self.db_path})"
