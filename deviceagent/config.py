"""Configuration: user config file, environment accessors, launch defaults."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path

from deviceagent.models import LaunchOptions

logger = logging.getLogger("device-agent.config")

CONFIG_DIR = Path.home() / ".cbx-runner"
USER_CONFIG_FILE = CONFIG_DIR / "config.json"

# Environment variables set by the CI services we know about.
_CI_MARKERS = (
    "CI",
    "JENKINS_HOME",
    "TRAVIS",
    "CIRCLECI",
    "TEAMCITY_PROJECT_NAME",
    "GITLAB_CI",
    "GITHUB_ACTIONS",
)


def _env(environ: Mapping[str, str] | None) -> Mapping[str, str]:
    return os.environ if environ is None else environ


def _non_empty(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value


def read_user_config() -> dict:
    """Read user config from ~/.cbx-runner/config.json. Returns {} if missing or invalid."""
    if not USER_CONFIG_FILE.exists():
        return {}
    try:
        return json.loads(USER_CONFIG_FILE.read_text())
    except Exception as e:
        logger.warning("Failed to read config file %s: %s", USER_CONFIG_FILE, e)
        return {}


def default_launch_options(environ: Mapping[str, str] | None = None) -> LaunchOptions:
    """Built-in launch defaults overlaid with the user config's ``launch_options``.

    The HTTP timeout baseline depends on whether we are running on CI.
    """
    base = LaunchOptions(http_timeout=120.0 if is_ci(environ) else 10.0)
    overrides = read_user_config().get("launch_options")
    if not isinstance(overrides, dict):
        return base
    try:
        return base.merged(overrides)
    except ValueError as e:
        logger.warning("Ignoring invalid launch_options in %s: %s", USER_CONFIG_FILE, e)
        return base


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


def device_agent_url(environ: Mapping[str, str] | None = None) -> str | None:
    """Explicit DeviceAgent base URL override."""
    return _non_empty(_env(environ).get("DEVICE_AGENT_URL"))


def device_endpoint(environ: Mapping[str, str] | None = None) -> str | None:
    """Legacy calabash server endpoint, e.g. ``http://10.0.0.3:37265``."""
    return _non_empty(_env(environ).get("DEVICE_ENDPOINT"))


def code_sign_identity(environ: Mapping[str, str] | None = None) -> str | None:
    return _non_empty(_env(environ).get("CODE_SIGN_IDENTITY"))


def cbx_workspace(environ: Mapping[str, str] | None = None) -> str | None:
    """Path to the CBXDriver workspace; only maintainers have one."""
    return _non_empty(_env(environ).get("CBXWS"))


def ios_device_manager_path(environ: Mapping[str, str] | None = None) -> str | None:
    return _non_empty(_env(environ).get("IOS_DEVICE_MANAGER"))


def is_ci(environ: Mapping[str, str] | None = None) -> bool:
    env = _env(environ)
    return any(_non_empty(env.get(name)) for name in _CI_MARKERS)


def is_xtc(environ: Mapping[str, str] | None = None) -> bool:
    """True when running on Xamarin Test Cloud."""
    return _env(environ).get("XAMARIN_TEST_CLOUD") == "1"


def is_debug(environ: Mapping[str, str] | None = None) -> bool:
    return _env(environ).get("DEBUG") == "1"
