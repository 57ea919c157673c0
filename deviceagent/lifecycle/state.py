"""Session cache (~/.cbx-runner/session.json).

Records how the last DeviceAgent session was started so follow-up tools
(the CLI, console sessions) can attach to the same device and launcher
without repeating the discovery.
"""

from __future__ import annotations

import fcntl
import json
import logging
from datetime import datetime, timezone
from typing import TypedDict

from deviceagent.config import CONFIG_DIR

logger = logging.getLogger(__name__)

SESSION_FILE = CONFIG_DIR / "session.json"


class SessionCache(TypedDict, total=False):
    """Schema for session.json."""

    cbx_launcher: str
    udid: str
    device_type: str
    device_name: str
    app: str
    gesture_performer: str
    code_sign_identity: str | None
    url: str
    written_at: str  # ISO 8601


def read_session_cache() -> SessionCache | None:
    """Read session.json with shared file lock.

    Returns None if the file doesn't exist or contains invalid JSON.
    """
    if not SESSION_FILE.exists():
        return None

    try:
        fd = SESSION_FILE.open("r")
        try:
            fcntl.flock(fd, fcntl.LOCK_SH)
            content = fd.read()
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            fd.close()

        if not content.strip():
            return None
        return json.loads(content)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to read session cache: %s", e)
        return None


def write_session_cache(cache: SessionCache) -> None:
    """Write session.json with exclusive file lock, stamping written_at."""
    SESSION_FILE.parent.mkdir(parents=True, exist_ok=True)
    cache = {**cache, "written_at": datetime.now(timezone.utc).isoformat()}

    fd = SESSION_FILE.open("a+")
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        fd.seek(0)
        fd.truncate()
        fd.write(json.dumps(cache, indent=2))
        fd.flush()
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        fd.close()


def clear_session_cache() -> None:
    SESSION_FILE.unlink(missing_ok=True)
