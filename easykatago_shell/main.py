"""CLI entrypoint: run one shell command through the backend bridge."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import yaml

from .constants import PING_COMMAND, EventTopic
from .core.errors import BridgeError
from .core.event_bus import Event
from .services.bridge_client import BridgeClient
from .services.command_router import CommandResponse, CommandRouter
from .utils.config_loader import load_bridge_config
from .utils.logger import setup_logging

_logger = logging.getLogger("entrypoint")


def _log_event(event: Event) -> None:
    _logger.info("Event[%s] -> %s", event.topic, event.payload)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="easykatago shell bridge")
    parser.add_argument("command", help="ping, or a backend command such as settings.read")
    parser.add_argument("--payload", default=None,
                        help="JSON value sent as the command payload")
    parser.add_argument("--root", type=Path, default=Path.cwd(),
                        help="Project root directory containing the config folder")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Request deadline in seconds (overrides config)")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    parser.add_argument("--events", action="store_true",
                        help="Log backend events while the command runs")
    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> CommandResponse:
    if args.command == PING_COMMAND:
        return CommandResponse(ok=True, result=CommandRouter.ping())

    payload = json.loads(args.payload) if args.payload is not None else None
    try:
        config = load_bridge_config(args.root)
    except (TypeError, ValueError, yaml.YAMLError) as exc:
        return CommandResponse(ok=False, error=f"CONFIG_ERROR: {exc}")
    setup_logging(config.log_root or args.root / "logs", level="DEBUG" if args.verbose else "WARNING")

    client = BridgeClient(config)
    if args.events:
        client.subscribe(EventTopic.ANY.value, _log_event)
    try:
        client.start()
    except (BridgeError, ValueError) as exc:
        message = exc.to_error_string() if isinstance(exc, BridgeError) else str(exc)
        return CommandResponse(ok=False, error=message)
    try:
        return CommandRouter(client).dispatch(args.command, payload, timeout=args.timeout)
    finally:
        client.stop()


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    try:
        response = run(args)
    except json.JSONDecodeError as exc:
        response = CommandResponse(ok=False, error=f"INVALID_PAYLOAD: {exc}")
    print(json.dumps(response.to_dict(), ensure_ascii=False))
    return 0 if response.ok else 1


if __name__ == "__main__":  # pragma: no cover - manual execution
    sys.exit(main())
