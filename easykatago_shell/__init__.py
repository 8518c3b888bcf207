"""Desktop shell bridge to the easykatago backend process."""

from .core.bridge import Bridge
from .core.errors import (
    BackendError,
    BridgeError,
    MalformedResponse,
    ProcessCrashed,
    ProcessNotRunning,
    ProcessSpawnFailed,
    ProcessUnavailable,
    RequestTimeout,
)
from .services.bridge_client import BridgeClient
from .services.command_router import CommandResponse, CommandRouter

__all__ = [
    "Bridge",
    "BridgeClient",
    "CommandRouter",
    "CommandResponse",
    "BridgeError",
    "BackendError",
    "MalformedResponse",
    "ProcessCrashed",
    "ProcessNotRunning",
    "ProcessSpawnFailed",
    "ProcessUnavailable",
    "RequestTimeout",
]
