"""Routes named shell operations to the backend bridge."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from ..constants import PING_COMMAND, SHELL_IDENTITY, Command
from ..core.codec import JsonValue
from ..core.errors import BridgeError

_COMMANDS: Dict[str, Command] = {}
for _command in Command:
    _COMMANDS[_command.value] = _command
    _COMMANDS[_command.value.replace(".", "_")] = _command


class SupportsInvoke(Protocol):
    def invoke_sync(self, method: str, payload: JsonValue = None, *,
                    timeout: Optional[float] = None, wait: Optional[float] = None) -> JsonValue:
        ...


@dataclass(frozen=True)
class CommandResponse:
    ok: bool
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"status": "ok", "result": self.result}
        return {"status": "error", "error": self.error}


def resolve_command(name: str) -> Optional[Command]:
    """Map ``settings.read`` or ``settings_read`` to its :class:`Command`."""
    return _COMMANDS.get(name)


class CommandRouter:
    """Dispatches UI commands; every failure becomes an error string."""

    def __init__(self, client: SupportsInvoke, *, logger: Optional[logging.Logger] = None) -> None:
        self.client = client
        self.logger = logger or logging.getLogger("shell.command")

    @staticmethod
    def ping() -> str:
        """Liveness check of the shell itself; never touches the backend."""
        return SHELL_IDENTITY

    def dispatch(self, command: str, payload: JsonValue = None, *,
                 timeout: Optional[float] = None) -> CommandResponse:
        if command == PING_COMMAND:
            return CommandResponse(ok=True, result=self.ping())

        resolved = resolve_command(command)
        if resolved is None:
            self.logger.warning("Unsupported command %s", command)
            return CommandResponse(ok=False, error=f"UNKNOWN_COMMAND: Unsupported command: {command}")

        self.logger.debug("Handling command %s", resolved.value)
        try:
            result = self.client.invoke_sync(resolved.value, payload, timeout=timeout)
        except BridgeError as exc:
            self.logger.warning("Command %s failed: %s", resolved.value, exc.to_error_string())
            return CommandResponse(ok=False, error=exc.to_error_string())
        except (TypeError, ValueError) as exc:
            # payload not JSON-encodable, or the encoded request is over the size limit
            self.logger.warning("Command %s rejected: %s", resolved.value, exc)
            return CommandResponse(ok=False, error=f"INVALID_PAYLOAD: {exc}")
        return CommandResponse(ok=True, result=result)

    # Named operations ------------------------------------------------------------
    def settings_read(self) -> CommandResponse:
        return self.dispatch(Command.SETTINGS_READ.value)

    def settings_write(self, payload: JsonValue) -> CommandResponse:
        return self.dispatch(Command.SETTINGS_WRITE.value, payload)

    def profiles_read(self) -> CommandResponse:
        return self.dispatch(Command.PROFILES_READ.value)

    def profiles_write(self, payload: JsonValue) -> CommandResponse:
        return self.dispatch(Command.PROFILES_WRITE.value, payload)

    def install_run(self) -> CommandResponse:
        return self.dispatch(Command.INSTALL_RUN.value)

    def launch_run(self) -> CommandResponse:
        return self.dispatch(Command.LAUNCH_RUN.value)


__all__ = ["CommandResponse", "CommandRouter", "SupportsInvoke", "resolve_command"]
