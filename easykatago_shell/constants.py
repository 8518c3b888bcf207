"""Centralised constants for bridge states, command names, and defaults."""

from __future__ import annotations

from enum import Enum


class BridgeState(str, Enum):
    """Lifecycle state of the supervised backend process."""

    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    CRASHED = "crashed"
    STOPPING = "stopping"
    UNAVAILABLE = "unavailable"


class Command(str, Enum):
    """Named operations the shell forwards to the backend."""

    SETTINGS_READ = "settings.read"
    SETTINGS_WRITE = "settings.write"
    PROFILES_READ = "profiles.read"
    PROFILES_WRITE = "profiles.write"
    INSTALL_RUN = "install.run"
    LAUNCH_RUN = "launch.run"


class EventTopic(str, Enum):
    """Topics published by the bridge itself (backend events use their own names)."""

    BRIDGE_STATE = "bridge.state"
    ANY = "*"


SHELL_IDENTITY = "easykatago"
PING_COMMAND = "ping"

# Request ids are positive and stay inside a signed 32-bit range.
MAX_REQUEST_ID = 2**31 - 1

DEFAULT_MAX_MESSAGE_BYTES = 16 * 1024 * 1024
DEFAULT_READ_CHUNK = 64 * 1024
DEFAULT_STOP_TIMEOUT = 5.0
DEFAULT_RESTART_WAIT = 5.0
DEFAULT_MAX_RESTARTS = 5
DEFAULT_BACKOFF_INITIAL = 0.5
DEFAULT_BACKOFF_MAX = 30.0
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_RESET_AFTER = 60.0
DEFAULT_READER_DRAIN_TIMEOUT = 1.0

ENV_BRIDGE_PATH = "EASYKATAGO_BRIDGE_PATH"
ENV_BRIDGE_ARGS = "EASYKATAGO_BRIDGE_ARGS"
