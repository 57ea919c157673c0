"""Command-line entry point: launch, inspect and stop a DeviceAgent session.

Commands other than ``launch`` default to the device, launcher and app
recorded in the session cache by the last ``launch``.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from deviceagent import config
from deviceagent.device.client import DeviceAgentClient
from deviceagent.device.launchers import detect_launcher
from deviceagent.lifecycle.state import clear_session_cache, read_session_cache
from deviceagent.models import Device, DeviceAgentError, DeviceType, LauncherName

logger = logging.getLogger("device-agent")


def _add_device_flags(parser: argparse.ArgumentParser) -> None:
    """Add shared device/app flags to a subcommand parser."""
    parser.add_argument("--udid", default=None, help="Device or simulator UDID")
    parser.add_argument("--name", default=None, help="Device display name (physical devices)")
    kind = parser.add_mutually_exclusive_group()
    kind.add_argument(
        "--simulator", dest="device_type", action="store_const",
        const=DeviceType.SIMULATOR, help="Target is a simulator",
    )
    kind.add_argument(
        "--device", dest="device_type", action="store_const",
        const=DeviceType.DEVICE, help="Target is a physical device",
    )
    parser.add_argument("--bundle-id", "-b", default=None, help="Bundle identifier of the app under test")
    parser.add_argument(
        "--launcher", default=None, choices=[n.value for n in LauncherName],
        help="How to start the CBX-Runner (default: ios_device_manager)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")


def _resolve_session(args: argparse.Namespace) -> tuple[Device, str, str | None]:
    """Device, bundle id and launcher name from flags, falling back to the session cache."""
    cache = read_session_cache() or {}

    udid = args.udid or cache.get("udid")
    bundle_id = args.bundle_id or cache.get("app")
    if not udid or not bundle_id:
        raise DeviceAgentError(
            "No device/app given and no cached session. Pass --udid and --bundle-id.",
            tool="cli",
        )

    device_type = args.device_type or DeviceType(cache.get("device_type", DeviceType.SIMULATOR.value))
    name = args.name or cache.get("device_name", "")
    launcher = args.launcher or cache.get("cbx_launcher")
    return Device(udid=udid, device_type=device_type, name=name), bundle_id, launcher


def _client(args: argparse.Namespace) -> DeviceAgentClient:
    device, bundle_id, launcher = _resolve_session(args)
    return DeviceAgentClient(bundle_id, device, detect_launcher(device, launcher))


def _cmd_launch(args: argparse.Namespace) -> None:
    device, bundle_id, launcher = _resolve_session(args)
    options = {"shutdown_device_agent_before_launch": args.shutdown_first}
    if launcher:
        options["cbx_launcher"] = launcher
    if args.code_sign_identity:
        options["code_sign_identity"] = args.code_sign_identity

    with DeviceAgentClient.run(device, bundle_id, options) as client:
        print(f"DeviceAgent running at {client.url}")
        print(f"  Device:     {device}")
        print(f"  App:        {bundle_id}")
        print(f"  Launcher:   {client.launcher.name.value}")
        print(f"  Log file:   {client.launcher.log_file()}")


def _cmd_stop(args: argparse.Namespace) -> None:
    with _client(args) as client:
        body = client.stop()
    clear_session_cache()
    print(f"DeviceAgent stopped: {body}" if body else "DeviceAgent was not running")


def _cmd_status(args: argparse.Namespace) -> None:
    with _client(args) as client:
        body = client.running()
    if body is None:
        print(f"DeviceAgent is not responding at {client.url}")
        sys.exit(1)
    print(f"DeviceAgent running at {client.url}")
    print(f"  Health:     {body}")


def _cmd_tree(args: argparse.Namespace) -> None:
    with _client(args) as client:
        tree = client.tree()
    print(json.dumps(tree, indent=2))


def _cmd_query(args: argparse.Namespace) -> None:
    with _client(args) as client:
        elements = client.query(args.mark, specifier=args.specifier, all=args.all)
    print(json.dumps(elements, indent=2))


def _cmd_touch(args: argparse.Namespace) -> None:
    with _client(args) as client:
        result = client.touch(args.mark)
    print(json.dumps(result, indent=2))


def cli(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Launch and drive the DeviceAgent CBX-Runner on iOS devices and simulators",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    launch_parser = subparsers.add_parser("launch", help="Launch the CBX-Runner and the app")
    _add_device_flags(launch_parser)
    launch_parser.add_argument(
        "--shutdown-first", action="store_true", default=False,
        help="Shut down a running DeviceAgent before launching",
    )
    launch_parser.add_argument(
        "--code-sign-identity", default=None,
        help="Signing identity for physical devices (default: $CODE_SIGN_IDENTITY)",
    )

    for command, help_text in (
        ("stop", "Shut down the CBX-Runner"),
        ("status", "Ping the CBX-Runner"),
        ("tree", "Print the UI tree"),
    ):
        _add_device_flags(subparsers.add_parser(command, help=help_text))

    query_parser = subparsers.add_parser("query", help="Query for elements")
    _add_device_flags(query_parser)
    query_parser.add_argument("mark", help="Value to match")
    query_parser.add_argument("--specifier", default="id", help="Attribute to match (default: id)")
    query_parser.add_argument("--all", action="store_true", default=False, help="Include non-hitable elements")

    touch_parser = subparsers.add_parser("touch", help="Touch the first hitable match")
    _add_device_flags(touch_parser)
    touch_parser.add_argument("mark", help="Value to match (by id)")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose or config.is_debug() else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    commands = {
        "launch": _cmd_launch,
        "stop": _cmd_stop,
        "status": _cmd_status,
        "tree": _cmd_tree,
        "query": _cmd_query,
        "touch": _cmd_touch,
    }
    try:
        commands[args.command](args)
    except DeviceAgentError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli()
