"""Shared fixtures: isolated config dir, fake clock, and a fake CBX-Runner.

The fake runner is a FastAPI app served through TestClient behind an
httpx.MockTransport, so the real RetryingClient/httpx stack is exercised end
to end. While the runner is "down" every request fails with
httpx.ConnectError, like a refused port.
"""

from __future__ import annotations

import itertools
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient

from deviceagent import config
from deviceagent.device.launchers import Launcher
from deviceagent.device.simctl import SimctlBackend
from deviceagent.lifecycle import state
from deviceagent.models import Device, DeviceType, LauncherName


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep ~/.cbx-runner out of the tests."""
    monkeypatch.setattr(config, "CONFIG_DIR", tmp_path)
    monkeypatch.setattr(config, "USER_CONFIG_FILE", tmp_path / "config.json")
    monkeypatch.setattr(state, "SESSION_FILE", tmp_path / "session.json")
    return tmp_path


class FakeClock:
    """A monotonic clock that only moves when something sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Devices and collaborators
# ---------------------------------------------------------------------------


def simulator(udid: str = "AAAA-1111", name: str = "iPhone 16 Pro") -> Device:
    return Device(udid=udid, device_type=DeviceType.SIMULATOR, name=name)


def physical_device(udid: str = "00008030-AABBCCDD", name: str = "Joshua's iPhone") -> Device:
    return Device(udid=udid, device_type=DeviceType.DEVICE, name=name)


@pytest.fixture
def simctl() -> MagicMock:
    backend = MagicMock(spec=SimctlBackend)
    backend.app_installed.return_value = True
    return backend


class FakeRunner:
    """State of the pretend CBX-Runner."""

    def __init__(self) -> None:
        self.up = False
        self.pid = 4242
        self.sessions: list[str] = []
        self.gestures: list[dict] = []
        self.queries: list[dict] = []
        self.orientations: list[int] = []
        self.volumes: list[str] = []
        self.shutdowns = 0
        self.keyboard_visible = True
        self.elements = [
            {
                "id": "login",
                "type": "Button",
                "rect": {"x": 10, "y": 20, "width": 30, "height": 40},
                "hitable": True,
            },
            {
                "id": "login",
                "type": "Button",
                "rect": {"x": 0, "y": 900, "width": 30, "height": 40},
                "hitable": False,
            },
        ]


class FakeLauncher(Launcher):
    """Launcher whose launch() brings the fake runner up (unless told not to)."""

    name = LauncherName.IOS_DEVICE_MANAGER
    log_file_name = "fake-launcher.log"

    def __init__(self, device, runner: FakeRunner, *, starts_runner: bool = True,
                 installed: bool = True, name: LauncherName | None = None) -> None:
        super().__init__(device, environ={}, simctl=MagicMock(spec=SimctlBackend))
        self.runner = runner
        self.starts_runner = starts_runner
        self.installed = installed
        self.launches = 0
        self._pids = itertools.count(1000)
        if name is not None:
            self.name = name

    def launch(self, options) -> int:
        self.launches += 1
        if self.starts_runner:
            self.runner.up = True
        return next(self._pids)

    def app_installed(self, bundle_id: str) -> bool:
        return self.installed


def make_runner_app(runner: FakeRunner) -> FastAPI:
    app = FastAPI()

    @app.get("/1.0/health", response_class=PlainTextResponse)
    async def health():
        return "I am in good health"

    @app.get("/1.0/pid")
    async def pid():
        return {"pid": runner.pid}

    @app.get("/1.0/version")
    async def version():
        return {"bundle_version": "1.0.4", "bundle_short_version": "1.0"}

    @app.get("/1.0/device")
    async def device():
        return {"simulator": True, "model_identifier": "iPhone17,1"}

    @app.get("/1.0/sessionIdentifier")
    async def session_identifier():
        return {"sessionId": "D4F1-0001"}

    @app.get("/1.0/tree")
    async def tree():
        return {"type": "Application", "children": runner.elements}

    @app.post("/1.0/session")
    async def session(body: dict):
        runner.sessions.append(body["bundleID"])
        return {"status": "launched"}

    @app.post("/1.0/query")
    async def query(body: dict):
        runner.queries.append(body)
        if body.get("type") == "Keyboard":
            return {"result": [{"type": "Keyboard"}] if runner.keyboard_visible else []}
        if body.get("type") == "Alert":
            return {"result": []}
        key, value = next(iter(body.items()))
        return {"result": [e for e in runner.elements if e.get(key) == value]}

    @app.post("/1.0/gesture")
    async def gesture(body: dict):
        runner.gestures.append(body)
        return {"status": "success", "gesture": body["gesture"]}

    @app.post("/1.0/rotate_home_button_to")
    async def rotate(body: dict):
        runner.orientations.append(body["orientation"])
        return {"orientation": body["orientation"]}

    @app.post("/1.0/volume")
    async def volume(body: dict):
        runner.volumes.append(body["volume"])
        return {"volume": body["volume"]}

    @app.post("/1.0/shutdown", response_class=PlainTextResponse)
    async def shutdown():
        runner.shutdowns += 1
        runner.up = False
        return "Goodbye."

    return app


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def runner_http(runner) -> httpx.Client:
    """An httpx.Client whose requests land on the fake runner, whatever the host.

    Requests are refused with httpx.ConnectError while runner.up is False.
    """
    with TestClient(make_runner_app(runner)) as app_client:

        def handler(request: httpx.Request) -> httpx.Response:
            if not runner.up:
                raise httpx.ConnectError("Connection refused", request=request)
            response = app_client.request(
                request.method,
                request.url.path,
                content=request.content,
                headers={"content-type": request.headers.get("content-type", "application/json")},
            )
            return httpx.Response(
                response.status_code,
                headers={"content-type": response.headers.get("content-type", "")},
                content=response.content,
            )

        with httpx.Client(transport=httpx.MockTransport(handler)) as client:
            yield client
