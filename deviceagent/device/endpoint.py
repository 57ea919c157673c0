"""Resolve the base URL of the DeviceAgent service for a device.

Resolution order, first non-empty wins:

1. ``DEVICE_AGENT_URL`` from the environment
2. Simulators: the loopback address and configured port
3. ``DEVICE_ENDPOINT`` from the environment: its host with the configured port
4. A Bonjour name derived from the device's display name
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping

from unidecode import unidecode

from deviceagent import config
from deviceagent.models import Device, LaunchOptions

logger = logging.getLogger("device-agent.endpoint")


def url_from_environment(environ: Mapping[str, str] | None = None) -> str | None:
    url = config.device_agent_url(environ)
    if url is None:
        return None
    return url if url.endswith("/") else f"{url}/"


def url_for_simulator(device: Device, options: LaunchOptions) -> str | None:
    if not device.is_simulator:
        return None
    return f"http://{options.simulator_ip}:{options.port}/"


def url_from_device_endpoint(
    options: LaunchOptions, environ: Mapping[str, str] | None = None,
) -> str | None:
    endpoint = config.device_endpoint(environ)
    if endpoint is None:
        return None
    # "http://10.0.0.3:37265/" -> "http://10.0.0.3"
    base = ":".join(endpoint.split(":")[:2]).rstrip("/")
    return f"{base}:{options.port}/"


def dns_name_from_device_name(name: str) -> str:
    """Transform a display name like "Joshua's iPhone" into "Joshuas-iPhone"."""
    # Closest ASCII form (ø -> o, ß -> ss); characters without one become "".
    transliterated = unidecode(name)
    stripped = transliterated.replace("'", "")
    return re.sub(r"\s", "-", stripped)


def url_from_device_name(device: Device, options: LaunchOptions) -> str:
    return f"http://{dns_name_from_device_name(device.name)}.local:{options.port}/"


def resolve_endpoint(
    device: Device,
    options: LaunchOptions,
    environ: Mapping[str, str] | None = None,
) -> str:
    url = (
        url_from_environment(environ)
        or url_for_simulator(device, options)
        or url_from_device_endpoint(options, environ)
        or url_from_device_name(device, options)
    )
    logger.debug("DeviceAgent endpoint for %s: %s", device.udid, url)
    return url
