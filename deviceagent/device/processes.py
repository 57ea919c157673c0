"""Find processes by name and terminate them with an escalating signal ladder.

Nothing in this module raises: a pid that survives every step is only
observable by enumerating the process table again.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time

logger = logging.getLogger("device-agent.processes")

POLL_INTERVAL = 0.05

# Ordered (signal, seconds to wait for the pid to exit) steps.
SHUTDOWN_LADDER: tuple[tuple[signal.Signals, float], ...] = (
    (signal.SIGQUIT, 0.5),
    (signal.SIGTERM, 0.5),
    (signal.SIGKILL, 0.5),
)
XCODEBUILD_LADDER: tuple[tuple[signal.Signals, float], ...] = (
    (signal.SIGTERM, 0.5),
    (signal.SIGKILL, 0.5),
)


def pids_for_name(process_name: str) -> list[int]:
    """Return pids whose executable name is exactly process_name."""
    try:
        result = subprocess.run(
            ["pgrep", "-x", process_name],
            capture_output=True, text=True, timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("pgrep for %s failed: %s", process_name, e)
        return []
    # pgrep exits 1 when nothing matched
    if result.returncode != 0:
        return []
    return [int(line) for line in result.stdout.split() if line.strip().isdigit()]


def is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by someone else.
        return True
    return True


def send_signal(pid: int, sig: signal.Signals) -> None:
    os.kill(pid, sig)


class ProcessTerminator:
    """Sends one signal to a pid and waits up to ``timeout`` for it to exit."""

    def __init__(
        self, pid: int, sig: signal.Signals, process_name: str, timeout: float = 0.5,
    ) -> None:
        self.pid = pid
        self.signal = sig
        self.process_name = process_name
        self.timeout = timeout

    def kill_process(self) -> bool:
        """Return True if the process is confirmed gone."""
        try:
            send_signal(self.pid, self.signal)
        except ProcessLookupError:
            return True
        except PermissionError as e:
            logger.debug(
                "Not allowed to send %s to %s (%d): %s",
                self.signal.name, self.process_name, self.pid, e,
            )
            return False

        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if not is_process_alive(self.pid):
                break
            time.sleep(POLL_INTERVAL)

        killed = not is_process_alive(self.pid)
        if killed:
            logger.debug("Terminated %s (%d) with %s", self.process_name, self.pid, self.signal.name)
        else:
            logger.debug(
                "%s (%d) survived %s for %.1fs",
                self.process_name, self.pid, self.signal.name, self.timeout,
            )
        return killed


def terminate_pid(
    pid: int,
    process_name: str,
    ladder: tuple[tuple[signal.Signals, float], ...] = SHUTDOWN_LADDER,
) -> bool:
    """Walk the ladder until the pid is gone. Returns False if it survived every step."""
    for sig, timeout in ladder:
        if ProcessTerminator(pid, sig, process_name, timeout).kill_process():
            return True
    logger.warning("%s (%d) survived %s", process_name, pid, [s.name for s, _ in ladder])
    return False


def terminate_processes(
    process_name: str,
    ladder: tuple[tuple[signal.Signals, float], ...] = SHUTDOWN_LADDER,
) -> dict[int, bool]:
    """Terminate every process named process_name. Returns {pid: terminated}."""
    results: dict[int, bool] = {}
    for pid in pids_for_name(process_name):
        results[pid] = terminate_pid(pid, process_name, ladder)
    return results
