"""Core data models and the error taxonomy."""

from __future__ import annotations

import enum
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class DeviceAgentError(Exception):
    """Base error for everything that goes wrong while driving DeviceAgent."""

    def __init__(self, message: str, tool: str = "device-agent") -> None:
        super().__init__(message)
        self.tool = tool


class TransportError(DeviceAgentError):
    """No response after exhausting the retry policy (refused, timed out)."""

    def __init__(self, message: str, attempts: int = 0, tool: str = "http") -> None:
        super().__init__(message, tool=tool)
        self.attempts = attempts


class ProtocolError(DeviceAgentError):
    """Unusable response: not JSON (the app has probably crashed), undecodable, or redirect-looping."""


class HTTPStatusError(DeviceAgentError):
    """Status code >= 300, or a 2xx response whose body carries an error."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error: Any = None,
        tool: str = "http",
    ) -> None:
        super().__init__(message, tool=tool)
        self.status_code = status_code
        self.error = error


class PreconditionError(DeviceAgentError):
    """Fatal, not retried: missing identity, app not installed, bad arguments."""


class InvalidArgumentError(PreconditionError, ValueError):
    pass


class LaunchTimeoutError(DeviceAgentError):
    """DeviceAgent did not answer /health before the launch deadline."""


# ---------------------------------------------------------------------------
# Devices and launch options
# ---------------------------------------------------------------------------


class DeviceType(str, enum.Enum):
    SIMULATOR = "simulator"
    DEVICE = "device"


class LauncherName(str, enum.Enum):
    """Mechanisms that can start the CBX-Runner."""

    XCODEBUILD = "xcodebuild"
    IOS_DEVICE_MANAGER = "ios_device_manager"


class Device(BaseModel):
    """The device under test. Immutable for the lifetime of a session."""

    model_config = ConfigDict(frozen=True)

    udid: str
    device_type: DeviceType
    name: str = Field(default="", description="Display name, e.g. \"Joshua's iPhone\"")

    @property
    def is_simulator(self) -> bool:
        return self.device_type == DeviceType.SIMULATOR

    @property
    def is_physical(self) -> bool:
        return self.device_type == DeviceType.DEVICE

    def __str__(self) -> str:
        return f"#<{self.device_type.value} {self.name} ({self.udid})>"


class LaunchOptions(BaseModel):
    """Options for launching the CBX-Runner.

    These defaults may change at any time. Use ``merged`` to override
    individual keys.
    """

    model_config = ConfigDict(extra="forbid")

    port: int = 27753
    simulator_ip: str = "127.0.0.1"
    http_timeout: float = Field(default=10.0, gt=0)
    route_version: str = "1.0"
    shutdown_device_agent_before_launch: bool = False
    code_sign_identity: str | None = None
    cbx_launcher: LauncherName | None = None

    def merged(self, overrides: Mapping[str, Any] | LaunchOptions | None = None) -> LaunchOptions:
        """Return a copy with ``overrides`` taking precedence per key.

        Raises pydantic.ValidationError (a ValueError) on unknown keys or bad values.
        """
        if overrides is None:
            return self.model_copy()
        if isinstance(overrides, LaunchOptions):
            overrides = overrides.model_dump(exclude_unset=True)
        return LaunchOptions.model_validate({**self.model_dump(), **dict(overrides)})


# ---------------------------------------------------------------------------
# Retry policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Deadline, sleep interval and attempt bound for one HTTP request."""

    timeout: float
    interval: float = 0.1
    retries: int | None = None

    def __post_init__(self) -> None:
        if self.timeout <= 0 or self.interval <= 0:
            raise ValueError(f"timeout and interval must be positive: {self}")
        if self.retries is None:
            object.__setattr__(self, "retries", self.deadline_attempts)

    @property
    def deadline_attempts(self) -> int:
        """Attempts that fit before the deadline: k failures are retried iff k * interval < timeout."""
        # Rounded so 0.3 / 0.1 counts as 3, not 2.999...
        return max(1, math.ceil(round(self.timeout / self.interval, 9)))

    @property
    def max_attempts(self) -> int:
        """Upper bound on attempts: the retry count, capped by the deadline."""
        return min(self.retries, self.deadline_attempts)

    @classmethod
    def ping(cls) -> RetryPolicy:
        """Short liveness check."""
        return cls(timeout=0.5, interval=0.1, retries=1)

    @classmethod
    def operational(cls, http_timeout: float, launcher: LauncherName | None = None) -> RetryPolicy:
        """Policy for protocol calls; xcodebuild-launched runners are slower to settle."""
        timeout = http_timeout * 2 if launcher == LauncherName.XCODEBUILD else http_timeout
        return cls(timeout=timeout, interval=0.1)

    @classmethod
    def launch_health(cls, ci: bool) -> RetryPolicy:
        """Policy for waiting on /health after a fresh launch."""
        return cls(timeout=120.0 if ci else 60.0, interval=0.1)


# ---------------------------------------------------------------------------
# Query results and gestures
# ---------------------------------------------------------------------------


class Rect(BaseModel):
    x: float
    y: float
    width: float
    height: float

    def center(self) -> dict[str, float]:
        return {"x": self.x + self.width / 2.0, "y": self.y + self.height / 2.0}


class Element(BaseModel):
    """One element of a query result. Unknown attributes are kept as-is."""

    model_config = ConfigDict(extra="allow")

    rect: Rect
    hitable: bool = False


class GestureRequest(BaseModel):
    gesture: str
    specifiers: dict[str, Any] = Field(default_factory=dict)
    options: dict[str, Any] = Field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return self.model_dump()
