"""
Heartbeat instructions file.

The heartbeat job does not run a shell command. Instead it reads
<workspace>/.jobscheduler/HEARTBEAT.md and reports its trimmed contents,
or HEARTBEAT_OK when there is nothing in it.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

HEARTBEAT_OK = "HEARTBEAT_OK"

DEFAULT_TEMPLATE = """# Periodic Tasks

- Check inbox and urgent notifications.
- Check next 24h calendar events.
- Summarize meaningful project updates.
- If nothing needs attention, return HEARTBEAT_OK.
"""


def read_heartbeat(path: Path) -> str:
    """Return the trimmed instructions, or HEARTBEAT_OK if empty or unreadable."""
    try:
        content = Path(path).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return HEARTBEAT_OK
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read heartbeat file {path}: {e}")
        return HEARTBEAT_OK
    return content or HEARTBEAT_OK


def ensure_template(path: Path) -> bool:
    """
    Create the heartbeat file with the default template if it is missing.

    Returns:
        True if the file was created
    """
    path = Path(path)
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_TEMPLATE, encoding="utf-8")
    logger.info(f"Created heartbeat template: {path}")
    return True
