"""Launcher strategies that start the CBX-Runner on a device.

Two backends:

- ``XcodebuildLauncher`` builds and runs the CBXAppStub test target with
  ``xcodebuild test``. Maintainers only; needs the CBXWS workspace.
- ``IOSDeviceManagerLauncher`` (the default) asks the iOSDeviceManager
  binary to start the pre-built runner.

Both spawn a detached process and return its pid immediately. The process is
not owned: it is found again only by name.
"""

from __future__ import annotations

import abc
import logging
import os
import shutil
import subprocess
import threading
import time
from collections.abc import Mapping
from pathlib import Path

from deviceagent import config
from deviceagent.device.simctl import SimctlBackend
from deviceagent.models import (
    Device,
    DeviceAgentError,
    InvalidArgumentError,
    LauncherName,
    LaunchOptions,
    PreconditionError,
)

logger = logging.getLogger("device-agent.launcher")

DEFAULT_CODE_SIGN_IDENTITY = "iPhone Developer"
CBX_SCHEME = "CBXAppStub"


def _spawn_detached(args: list[str], log_file: Path, env: Mapping[str, str] | None = None) -> int:
    """Start args in a new session with output appended to log_file. Returns the pid."""
    command = " ".join(f"{k}={v}" for k, v in (env or {}).items())
    logger.debug("$ %s %s >& %s", command, " ".join(args), log_file)

    with open(log_file, "ab") as log:
        proc = subprocess.Popen(
            args,
            env={**os.environ, **(env or {})},
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    # Reaped in the background; a zombie would still answer kill(pid, 0).
    threading.Thread(target=proc.wait, name=f"reap-{proc.pid}", daemon=True).start()
    return proc.pid


class Launcher(abc.ABC):
    """Starts the CBX-Runner and answers whether an app is installed."""

    name: LauncherName
    log_file_name: str

    def __init__(
        self,
        device: Device,
        environ: Mapping[str, str] | None = None,
        simctl: SimctlBackend | None = None,
    ) -> None:
        self.device = device
        self._environ = environ
        self._simctl = simctl or SimctlBackend()

    @classmethod
    def log_file(cls) -> Path:
        """Append-only log of the launcher's process. Created on first access."""
        config.CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        path = config.CONFIG_DIR / cls.log_file_name
        path.touch(exist_ok=True)
        return path

    @abc.abstractmethod
    def launch(self, options: LaunchOptions) -> int:
        """Start the runner without waiting for it. Returns the spawned pid."""

    @abc.abstractmethod
    def app_installed(self, bundle_id: str) -> bool:
        ...

    def __str__(self) -> str:
        return f"#<{type(self).__name__} {self.device.udid}>"


class XcodebuildLauncher(Launcher):
    name = LauncherName.XCODEBUILD
    log_file_name = "xcodebuild.log"

    @property
    def workspace(self) -> str:
        path = config.cbx_workspace(self._environ)
        if path is None:
            raise PreconditionError(
                "The CBXWS env var is undefined. Are you a maintainer?", tool="xcodebuild",
            )
        return path

    def launch(self, options: LaunchOptions) -> int:
        workspace = self.workspace

        if self.device.is_simulator:
            self._simctl.relaunch_simulator(self.device)

        start = time.monotonic()
        logger.debug("Waiting for CBX-Runner to build...")
        pid = self._xcodebuild(workspace, options)
        logger.debug(
            "Took %.2f seconds to start xcodebuild (pid %d)", time.monotonic() - start, pid,
        )
        return pid

    def _xcodebuild(self, workspace: str, options: LaunchOptions) -> int:
        env = {"COMMAND_LINE_BUILD": "1", "CLOBBER": "1"}
        if self.device.is_physical:
            env["CODE_SIGN_IDENTITY"] = (
                options.code_sign_identity
                or config.code_sign_identity(self._environ)
                or DEFAULT_CODE_SIGN_IDENTITY
            )

        args = [
            "xcrun", "xcodebuild",
            "-scheme", CBX_SCHEME,
            "-workspace", workspace,
            "-config", "Debug",
            "-destination", f"id={self.device.udid}",
            "test",
        ]
        return _spawn_detached(args, self.log_file(), env)

    def app_installed(self, bundle_id: str) -> bool:
        # xcodebuild users manage installation themselves.
        return True


class IOSDeviceManagerLauncher(Launcher):
    name = LauncherName.IOS_DEVICE_MANAGER
    log_file_name = "ios-device-manager.log"
    process_name = "iOSDeviceManager"

    @property
    def binary(self) -> str:
        path = config.ios_device_manager_path(self._environ) or shutil.which(self.process_name)
        if path is None:
            raise PreconditionError(
                "iOSDeviceManager not found. Put it on your PATH or set IOS_DEVICE_MANAGER.",
                tool="iOSDeviceManager",
            )
        return path

    def launch(self, options: LaunchOptions) -> int:
        args = [self.binary, "start_test", "-d", self.device.udid]
        identity = options.code_sign_identity or config.code_sign_identity(self._environ)
        if self.device.is_physical and identity:
            args.extend(["-c", identity])
        return _spawn_detached(args, self.log_file())

    def app_installed(self, bundle_id: str) -> bool:
        args = [self.binary, "is_installed", "-b", bundle_id, "-d", self.device.udid]
        logger.debug("$ %s", " ".join(args))
        try:
            result = subprocess.run(args, capture_output=True, text=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise DeviceAgentError(
                f"iOSDeviceManager is_installed failed: {e}", tool="iOSDeviceManager",
            ) from e
        return result.returncode == 0 and result.stdout.strip() == "true"


_LAUNCHERS: dict[LauncherName, type[Launcher]] = {
    LauncherName.XCODEBUILD: XcodebuildLauncher,
    LauncherName.IOS_DEVICE_MANAGER: IOSDeviceManagerLauncher,
}


def detect_launcher(
    device: Device,
    name: LauncherName | str | None = None,
    environ: Mapping[str, str] | None = None,
    simctl: SimctlBackend | None = None,
) -> Launcher:
    """Build the launcher for ``name``; iOSDeviceManager when no name is given."""
    if name is None:
        return IOSDeviceManagerLauncher(device, environ=environ, simctl=simctl)
    try:
        key = LauncherName(name)
    except ValueError:
        valid = ", ".join(n.value for n in LauncherName)
        raise InvalidArgumentError(
            f"Expected cbx_launcher {name!r} to be one of: {valid}",
        ) from None
    return _LAUNCHERS[key](device, environ=environ, simctl=simctl)


def require_code_sign_identity(device: Device, launcher: Launcher, identity: str | None) -> None:
    """Physical devices launched through iOSDeviceManager need a signing identity."""
    if not device.is_physical or launcher.name != LauncherName.IOS_DEVICE_MANAGER:
        return
    if identity and identity.strip():
        return
    raise PreconditionError(
        "\nTargeting a physical device requires a code signing identity.\n\n"
        "Rerun your test with:\n\n"
        '$ CODE_SIGN_IDENTITY="iPhone Developer: Your Name (ABCDEF1234)" cucumber\n\n'
        "To see the valid code signing identities on your device run:\n\n"
        "$ xcrun security find-identity -v -p codesigning\n",
        tool="iOSDeviceManager",
    )
