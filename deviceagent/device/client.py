"""DeviceAgentClient: launches the CBX-Runner and speaks its HTTP protocol.

Launch flow:

1. optionally shut down a running DeviceAgent
2. ping /health; an already-running, non-stale runner is reused
3. (xcodebuild) terminate leftover xcodebuild processes
4. start the runner through the Launcher
5. poll /health until it answers or the launch deadline passes
6. check the app under test is installed and POST /session

The endpoint is resolved once, when the client is constructed. A client is
not safe to share between threads.
"""

from __future__ import annotations

import copy
import json
import logging
import subprocess
import time
from collections.abc import Callable, Mapping
from typing import Any

import httpx

from deviceagent import config
from deviceagent.device.endpoint import resolve_endpoint
from deviceagent.device.gestures import (
    coordinate_from_query_result,
    coordinate_gesture,
    drag_gesture,
    enter_text_gesture,
    normalize_orientation_position,
)
from deviceagent.device.http import RetryingClient, expect_200_response
from deviceagent.device.launchers import (
    IOSDeviceManagerLauncher,
    Launcher,
    detect_launcher,
    require_code_sign_identity,
)
from deviceagent.device.processes import (
    SHUTDOWN_LADDER,
    XCODEBUILD_LADDER,
    terminate_processes,
)
from deviceagent.device.simctl import SimctlBackend
from deviceagent.lifecycle.state import write_session_cache
from deviceagent.models import (
    Device,
    DeviceAgentError,
    GestureRequest,
    InvalidArgumentError,
    LauncherName,
    LaunchOptions,
    LaunchTimeoutError,
    PreconditionError,
    RetryPolicy,
    TransportError,
)

logger = logging.getLogger("device-agent.client")

SHUTDOWN_POLL_TIMEOUT = 10.0
SHUTDOWN_POLL_INTERVAL = 0.1
XCODEBUILD_SHUTDOWN_SETTLE = 5.0
XCODEBUILD_TERMINATE_SETTLE = 2.0
XCODEBUILD_LAUNCH_SETTLE = 2.0
VOLUME_SETTLE = 0.2
SESSION_DELETE_TIMEOUT = 10

QUERY_DEFAULTS = {"all": False, "specifier": "id"}


def runner_is_stale(client: DeviceAgentClient) -> bool:
    """Whether the running CBX-Runner is older than the one we would launch.

    Always False for now: comparing the running bundle version against the
    runner on disk needs versions that understand build timestamps.
    """
    return False


def _rewrapped(exc: DeviceAgentError, message: str) -> DeviceAgentError:
    """Same error class and attributes, new message."""
    wrapped = copy.copy(exc)
    wrapped.args = (message,)
    return wrapped


class DeviceAgentClient:
    """Drives one CBX-Runner on one device for one app under test."""

    def __init__(
        self,
        bundle_id: str,
        device: Device,
        launcher: Launcher,
        *,
        options: LaunchOptions | Mapping[str, Any] | None = None,
        http: httpx.Client | None = None,
        environ: Mapping[str, str] | None = None,
        stale_check: Callable[[DeviceAgentClient], bool] = runner_is_stale,
        simctl: SimctlBackend | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bundle_id = bundle_id
        self.device = device
        self.launcher = launcher
        self._environ = environ
        self._stale_check = stale_check
        self._simctl = simctl or SimctlBackend()
        self._sleep = sleep
        self._clock = clock

        # port, simulator_ip, route_version and http_timeout are fixed from here on.
        self.options = config.default_launch_options(environ).merged(options)
        self.url = resolve_endpoint(device, self.options, environ)
        self._client = RetryingClient(self.url, http=http, sleep=sleep, clock=clock)
        self.launch_options: LaunchOptions | None = None

    def __repr__(self) -> str:
        return f"#<DeviceAgent {self.url} : {self.bundle_id} : {self.device} : {self.launcher}>"

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> DeviceAgentClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @classmethod
    def run(
        cls,
        device: Device,
        bundle_id: str,
        options: LaunchOptions | Mapping[str, Any] | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        http: httpx.Client | None = None,
        simctl: SimctlBackend | None = None,
    ) -> DeviceAgentClient:
        """Pick a launcher, launch the runner and the app, and cache the session."""
        merged = config.default_launch_options(environ).merged(options)
        launcher = detect_launcher(device, merged.cbx_launcher, environ=environ, simctl=simctl)

        identity = merged.code_sign_identity or config.code_sign_identity(environ)
        require_code_sign_identity(device, launcher, identity)
        merged = merged.merged({"code_sign_identity": identity})

        client = cls(
            bundle_id, device, launcher,
            options=merged, http=http, environ=environ, simctl=simctl,
        )
        try:
            client.launch()
        except BaseException:
            client.close()
            raise

        if not config.is_xtc(environ):
            write_session_cache({
                "cbx_launcher": launcher.name.value,
                "udid": device.udid,
                "device_type": device.device_type.value,
                "device_name": device.name,
                "app": bundle_id,
                "gesture_performer": "device_agent",
                "code_sign_identity": identity,
                "url": client.url,
            })
        return client

    # ------------------------------------------------------------------
    # Policies and requests
    # ------------------------------------------------------------------

    @property
    def _is_xcodebuild(self) -> bool:
        return self.launcher.name == LauncherName.XCODEBUILD

    def _operational_policy(self) -> RetryPolicy:
        return RetryPolicy.operational(self.options.http_timeout, self.launcher.name)

    def _route(self, route: str) -> str:
        return f"{self.options.route_version}/{route}"

    def _get(self, route: str) -> Any:
        response = self._client.get(self._route(route), self._operational_policy())
        return expect_200_response(response)

    def _post(self, route: str, parameters: dict[str, Any] | None = None) -> Any:
        response = self._client.post(
            self._route(route), self._operational_policy(), json=parameters or {},
        )
        return expect_200_response(response)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def launch(self, options: LaunchOptions | Mapping[str, Any] | None = None) -> bool:
        merged = self.options.merged(options)
        self.launch_options = merged

        identity = merged.code_sign_identity or config.code_sign_identity(self._environ)
        require_code_sign_identity(self.device, self.launcher, identity)

        start = self._clock()
        self.launch_cbx_runner(merged)
        self.launch_aut()
        logger.info(
            "Took %.2f seconds to launch %s on %s",
            self._clock() - start, self.bundle_id, self.device,
        )
        return True

    def launch_cbx_runner(self, options: LaunchOptions) -> Any:
        """Make sure a healthy runner is up. Returns its pid."""
        if options.shutdown_device_agent_before_launch:
            logger.debug("Launch options insist that the DeviceAgent be shut down")
            self.shutdown()
            if self._is_xcodebuild:
                self._sleep(XCODEBUILD_SHUTDOWN_SETTLE)

        if self.running() is not None:
            logger.debug("DeviceAgent is already running")
            if self._stale_check(self):
                logger.info("Running DeviceAgent is stale; shutting it down")
                self.shutdown()
            else:
                return _pid_from(self.server_pid())

        if self._is_xcodebuild:
            logger.debug("xcodebuild is the launcher - terminating existing xcodebuild processes")
            terminate_processes("xcodebuild", XCODEBUILD_LADDER)
            self._sleep(XCODEBUILD_TERMINATE_SETTLE)

        start = self._clock()
        logger.debug("Waiting for CBX-Runner to launch...")
        pid = self.launcher.launch(options)

        if self._is_xcodebuild:
            self._sleep(XCODEBUILD_LAUNCH_SETTLE)

        try:
            self.health(RetryPolicy.launch_health(config.is_ci(self._environ)))
        except TransportError as exc:
            raise LaunchTimeoutError(
                "\n\nCould not connect to the DeviceAgent service.\n\n"
                f"device: {self.device}\n"
                f"   url: {self.url}\n\n"
                "To diagnose the problem tail the launcher log file:\n\n"
                f"$ tail -1000 -F {self.launcher.log_file()}\n",
            ) from exc

        logger.debug("Took %.2f seconds to launch and respond to /health", self._clock() - start)
        return pid

    def launch_aut(self, bundle_id: str | None = None) -> Any:
        """Start a session for the app under test; it must already be installed."""
        bundle_id = bundle_id or self.bundle_id

        if self.device.is_simulator:
            installed = self._simctl.app_installed(self.device, bundle_id)
        elif self._is_xcodebuild:
            logger.debug("Detected xcodebuild launcher; skipping app installed check")
            installed = True
        else:
            installed = self.launcher.app_installed(bundle_id)

        if not installed:
            raise PreconditionError(
                "\nThe app you are trying to launch is not installed on the target device:\n\n"
                f"bundle identifier: {bundle_id}\n"
                f"           device: {self.device}\n\n"
                "Please install it.\n",
            )

        try:
            body = self._post("session", {"bundleID": bundle_id})
        except DeviceAgentError as exc:
            raise _rewrapped(
                exc,
                f"\n\nCould not launch {bundle_id} on {self.device}:\n\n{exc}\n\n"
                "Something went wrong.\n",
            ) from exc
        logger.debug("Launched %s on %s: %s", bundle_id, self.device, body)
        return body

    def launch_other_app(self, bundle_id: str) -> Any:
        return self.launch_aut(bundle_id)

    def running(self) -> str | None:
        """The /health body if the runner answers a ping, else None."""
        try:
            return self.health(RetryPolicy.ping())
        except Exception:
            return None

    def stop(self) -> str | None:
        try:
            return self.shutdown()
        except Exception:
            return None

    def health(self, policy: RetryPolicy | None = None) -> str:
        response = self._client.get(self._route("health"), policy or self._operational_policy())
        body = response.text
        logger.debug('CBX-Runner driver says, "%s"', body)
        return body

    def session_delete(self) -> None:
        # httpx's Client.delete() takes no body, so DELETE /session goes through curl.
        args = ["curl", "-X", "DELETE", f"{self.url}{self._route('session')}"]
        logger.debug("$ %s", " ".join(args))
        try:
            result = subprocess.run(
                args, capture_output=True, text=True, timeout=SESSION_DELETE_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("CBX-Runner session delete error: %s", e)
            return
        if result.returncode != 0:
            logger.debug(
                "CBX-Runner session delete exited %d: %s",
                result.returncode, result.stderr.strip(),
            )

    def shutdown(self) -> str | None:
        """Ask the runner to exit, wait for it to go away, then make sure it did."""
        self.session_delete()
        body = None
        try:
            try:
                response = self._client.post(self._route("shutdown"), RetryPolicy.ping())
                body = response.text
                logger.debug('DeviceAgent-Runner says, "%s"', body)
            except DeviceAgentError as e:
                logger.debug("DeviceAgent-Runner shutdown error: %s", e)

            start = self._clock()
            while self._clock() - start < SHUTDOWN_POLL_TIMEOUT:
                if self.running() is None:
                    break
                self._sleep(SHUTDOWN_POLL_INTERVAL)
            logger.debug(
                "Waited for %.2f seconds for DeviceAgent to shutdown", self._clock() - start,
            )
        finally:
            terminate_processes(IOSDeviceManagerLauncher.process_name, SHUTDOWN_LADDER)
        return body

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def device_info(self) -> Any:
        return self._get("device")

    # Older DeviceAgent builds called this "runtime".
    runtime = device_info

    def server_pid(self) -> Any:
        return self._get("pid")

    def server_version(self) -> Any:
        return self._get("version")

    def session_identifier(self) -> Any:
        return self._get("sessionIdentifier")

    def tree(self) -> Any:
        return self._get("tree")

    def keyboard_visible(self) -> bool:
        body = self._post("query", {"type": "Keyboard"})
        return len(body["result"]) != 0

    def alert_visible(self) -> bool:
        body = self._post("query", {"type": "Alert"})
        return len(body["result"]) != 0

    def enter_text(self, string: str) -> Any:
        if not self.keyboard_visible():
            raise PreconditionError("Keyboard must be visible")
        return self._gesture(enter_text_gesture(string))

    def query(self, mark: str, **options: Any) -> list[dict[str, Any]]:
        """Elements matching mark; only hitable ones unless all=True."""
        merged = {**QUERY_DEFAULTS, **options}
        parameters = {merged["specifier"]: mark}
        logger.debug("Sending query with parameters:\n\n%s\n", json.dumps(parameters, indent=2))

        elements = self._post("query", parameters)["result"]
        if merged["all"]:
            return elements
        return [element for element in elements if element.get("hitable")]

    def query_for_coordinate(self, mark: str) -> dict[str, float]:
        return coordinate_from_query_result(self.query(mark))

    def touch(self, mark: str, **options: Any) -> Any:
        coordinate = self.query_for_coordinate(mark)
        return self._gesture(coordinate_gesture("touch", coordinate["x"], coordinate["y"], options))

    tap = touch

    def double_tap(self, mark: str, **options: Any) -> Any:
        coordinate = self.query_for_coordinate(mark)
        return self._gesture(
            coordinate_gesture("double_tap", coordinate["x"], coordinate["y"], options),
        )

    def two_finger_tap(self, mark: str, **options: Any) -> Any:
        coordinate = self.query_for_coordinate(mark)
        return self._gesture(
            coordinate_gesture("two_finger_tap", coordinate["x"], coordinate["y"], options),
        )

    def pan_between_coordinates(
        self, start_point: dict[str, float], end_point: dict[str, float], **options: Any,
    ) -> Any:
        return self._gesture(drag_gesture(start_point, end_point, options))

    def rotate_home_button_to(self, position: str | int, sleep_for: float = 1.0) -> Any:
        orientation = normalize_orientation_position(position)
        body = self._post("rotate_home_button_to", {"orientation": orientation})
        self._sleep(sleep_for)
        return body

    def change_volume(self, up_or_down: str) -> Any:
        direction = str(up_or_down).lower()
        if direction not in ("up", "down"):
            raise InvalidArgumentError(f"Expected volume direction 'up' or 'down', found {up_or_down!r}")
        body = self._post("volume", {"volume": direction})
        self._sleep(VOLUME_SETTLE)
        return body

    def _gesture(self, request: GestureRequest) -> Any:
        payload = request.payload()
        logger.debug(
            "Sending request to perform '%s' with:\n\n%s\n",
            request.gesture, json.dumps(payload, indent=2),
        )
        return self._post("gesture", payload)


def _pid_from(body: Any) -> Any:
    if isinstance(body, dict) and "pid" in body:
        return body["pid"]
    return body
