"""Error types surfaced by the backend bridge."""

from __future__ import annotations

from typing import Any, Optional


class BridgeError(RuntimeError):
    """Base class for every failure an ``invoke`` call can surface."""

    code = "BRIDGE_ERROR"

    def __init__(self, message: str, *, request_id: Optional[int] = None,
                 method: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id
        self.method = method

    def to_error_string(self) -> str:
        return f"{self.code}: {self.message}"


class ProcessSpawnFailed(BridgeError):
    """The backend executable could not be launched."""

    code = "PROCESS_SPAWN_FAILED"


class ProcessNotRunning(BridgeError):
    """A call was attempted while the backend was not ready."""

    code = "PROCESS_NOT_RUNNING"


class ProcessUnavailable(BridgeError):
    """The restart budget is exhausted; the bridge no longer attempts I/O."""

    code = "PROCESS_UNAVAILABLE"


class ProcessCrashed(BridgeError):
    """The backend exited while the request was pending."""

    code = "PROCESS_CRASHED"

    def __init__(self, message: str, *, request_id: Optional[int] = None,
                 method: Optional[str] = None, returncode: Optional[int] = None) -> None:
        super().__init__(message, request_id=request_id, method=method)
        self.returncode = returncode


class RequestTimeout(BridgeError, TimeoutError):
    """No response arrived before the request deadline."""

    code = "TIMEOUT"


class MalformedResponse(BridgeError):
    """The backend wrote bytes that do not decode to a valid envelope.

    ``raw`` holds the offending frame so it can be logged or inspected;
    ``request_id`` is set when the id could still be recovered from it.
    """

    code = "MALFORMED_RESPONSE"

    def __init__(self, message: str, *, raw: bytes = b"", request_id: Optional[int] = None,
                 method: Optional[str] = None) -> None:
        super().__init__(message, request_id=request_id, method=method)
        self.raw = raw


class BackendError(BridgeError):
    """The backend reported a failure for one specific request."""

    code = "BACKEND_ERROR"

    def __init__(self, payload: Any, *, request_id: Optional[int] = None,
                 method: Optional[str] = None) -> None:
        self.payload = payload
        if isinstance(payload, dict):
            self.backend_code = payload.get("code")
            message = payload.get("message")
        else:
            self.backend_code = None
            message = None
        if message is None:
            message = str(payload)
        super().__init__(str(message), request_id=request_id, method=method)

    def to_error_string(self) -> str:
        code = self.backend_code or self.code
        return f"{code}: {self.message}"


__all__ = [
    "BridgeError",
    "ProcessSpawnFailed",
    "ProcessNotRunning",
    "ProcessUnavailable",
    "ProcessCrashed",
    "RequestTimeout",
    "MalformedResponse",
    "BackendError",
]
