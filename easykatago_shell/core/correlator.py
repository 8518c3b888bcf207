"""Request/response correlation for calls multiplexed onto one backend stream."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Type

from ..constants import MAX_REQUEST_ID
from .codec import JsonValue, ResponseEnvelope
from .errors import BackendError, BridgeError, ProcessCrashed, RequestTimeout


@dataclass
class PendingRequest:
    id: int
    method: str
    future: asyncio.Future
    timeout_handle: Optional[asyncio.TimerHandle] = None

    @property
    def done(self) -> bool:
        return self.future.done()


class RpcCorrelator:
    """Tracks in-flight requests by id and routes each response to its caller.

    All methods must be called from the event loop that owns the bridge; the
    pending table is never touched from another thread, so each method runs
    atomically with respect to the others.
    """

    def __init__(self, *, loop: Optional[asyncio.AbstractEventLoop] = None,
                 logger: Optional[logging.Logger] = None) -> None:
        self._loop = loop
        self._pending: Dict[int, PendingRequest] = {}
        self._next_id = 1
        self.logger = logger or logging.getLogger("bridge.correlator")

    def __len__(self) -> int:
        return len(self._pending)

    def get(self, request_id: int) -> Optional[PendingRequest]:
        return self._pending.get(request_id)

    def _allocate_id(self) -> int:
        # ids wrap at MAX_REQUEST_ID and skip any id that is still pending
        for _ in range(MAX_REQUEST_ID):
            candidate = self._next_id
            self._next_id = 1 if candidate >= MAX_REQUEST_ID else candidate + 1
            if candidate not in self._pending:
                return candidate
        raise RuntimeError("request id space exhausted")

    def submit(self, method: str, payload: JsonValue = None, *,
               timeout: Optional[float] = None) -> PendingRequest:
        """Allocate an id and register a pending slot for it.

        ``payload`` is not stored; it only travels in the encoded envelope.
        """
        loop = self._loop or asyncio.get_running_loop()
        pending = PendingRequest(id=self._allocate_id(), method=method, future=loop.create_future())
        self._pending[pending.id] = pending
        if timeout is not None and timeout > 0:
            pending.timeout_handle = loop.call_later(timeout, self._expire, pending.id, timeout)
        return pending

    def _pop(self, request_id: int) -> Optional[PendingRequest]:
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
            pending.timeout_handle = None
        return pending

    def _expire(self, request_id: int, timeout: float) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        self.logger.warning("Request %s (%s) timed out after %.1fs", request_id, pending.method, timeout)
        self.fail(request_id, RequestTimeout(
            f"{pending.method} did not respond within {timeout:g}s",
            request_id=request_id, method=pending.method,
        ))

    def resolve_from_response(self, response: ResponseEnvelope) -> bool:
        """Complete the caller waiting on ``response.id``.

        Returns False when no such request is pending; the response is then
        dropped (it belongs to a timed-out, failed or unknown request).
        """
        pending = self._pop(response.id)
        if pending is None:
            self.logger.warning("Discarding response for unknown request id %s", response.id)
            return False
        if pending.future.done():
            # caller was cancelled between lookup and delivery
            return False
        if response.is_error:
            pending.future.set_exception(BackendError(response.error, request_id=pending.id,
                                                      method=pending.method))
        else:
            pending.future.set_result(response.result)
        return True

    def fail(self, request_id: int, error: BaseException) -> bool:
        pending = self._pop(request_id)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_exception(error)
        return True

    def fail_all(self, reason: str, error_cls: Type[BridgeError] = ProcessCrashed, **extra) -> int:
        """Resolve every pending request with ``error_cls`` and clear the table."""
        entries = list(self._pending.values())
        for pending in entries:
            self._pop(pending.id)
            if not pending.future.done():
                pending.future.set_exception(error_cls(
                    f"{pending.method}: {reason}", request_id=pending.id,
                    method=pending.method, **extra,
                ))
        if entries:
            self.logger.warning("Failed %d pending request(s): %s", len(entries), reason)
        return len(entries)

    def discard(self, request_id: int) -> None:
        """Forget a request whose caller stopped waiting."""
        pending = self._pop(request_id)
        if pending is not None and not pending.future.done():
            pending.future.cancel()


__all__ = ["PendingRequest", "RpcCorrelator"]
