"""Shell-side services layered over the backend bridge."""

from .bridge_client import BridgeClient
from .command_router import CommandResponse, CommandRouter

__all__ = ["BridgeClient", "CommandResponse", "CommandRouter"]
