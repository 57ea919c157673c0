"""SimctlBackend: thin sync wrapper around xcrun simctl and Simulator.app."""

from __future__ import annotations

import logging
import subprocess
import time

from deviceagent.models import Device, DeviceAgentError

logger = logging.getLogger("device-agent.simctl")

SIMCTL_TIMEOUT = 30
SIMULATOR_QUIT_WAIT = 1.0


class SimctlBackend:
    """The simulator operations the launch flow needs, and nothing more."""

    def _run(self, *args: str, timeout: float = SIMCTL_TIMEOUT) -> subprocess.CompletedProcess:
        logger.debug("$ %s", " ".join(args))
        try:
            return subprocess.run(args, capture_output=True, text=True, timeout=timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise DeviceAgentError(f"{args[0]} {args[1]} failed: {e}", tool="simctl") from e

    def app_installed(self, device: Device, bundle_id: str) -> bool:
        """Check for the app's container. The simulator must be booted.

        simctl cannot look up containers on a shut-down simulator, so the app
        reads as not installed there.
        """
        result = self._run(
            "xcrun", "simctl", "get_app_container", device.udid, bundle_id,
        )
        if result.returncode != 0:
            logger.debug("get_app_container %s: %s", bundle_id, result.stderr.strip())
            return False
        return bool(result.stdout.strip())

    def relaunch_simulator(self, device: Device) -> None:
        """Quit Simulator.app and relaunch it showing the device under test."""
        self._run("osascript", "-e", 'tell application "Simulator" to quit')
        time.sleep(SIMULATOR_QUIT_WAIT)

        result = self._run(
            "open", "-a", "Simulator", "--args", "-CurrentDeviceUDID", device.udid,
        )
        if result.returncode != 0:
            raise DeviceAgentError(
                f"Could not launch Simulator.app for {device}: {result.stderr.strip()}",
                tool="simctl",
            )
        logger.info("Relaunched Simulator.app for %s", device.udid)
