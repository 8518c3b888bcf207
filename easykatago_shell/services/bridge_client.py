"""Thread-hosted bridge for synchronous callers (UI and command layer)."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Dict, Optional

from ..core.bridge import Bridge
from ..core.codec import JsonValue
from ..core.errors import ProcessNotRunning, RequestTimeout
from ..core.event_bus import EventBus, Subscriber
from ..utils.config_loader import BridgeConfig


class BridgeClient:
    """Owns an event loop thread running one :class:`Bridge`.

    ``invoke_future`` may be called from any thread; event subscribers are
    called on the loop thread and must not block.
    """

    def __init__(self, config: BridgeConfig, *, event_bus: Optional[EventBus] = None,
                 thread_name: str = "shell-bridge-loop") -> None:
        self.config = config
        self.events = event_bus or EventBus()
        self._thread_name = thread_name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._bridge: Optional[Bridge] = None
        self._running = False
        self._logger = logging.getLogger("shell.bridge_client")

    # Lifecycle -----------------------------------------------------------------
    def start(self, timeout: Optional[float] = 30.0) -> None:
        """Start the loop thread and spawn the backend.

        Raises:
            ProcessSpawnFailed: the backend could not be launched.
            ValueError: no backend executable is configured.
        """
        if self._running:
            return
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, args=(self._loop,),
                                        name=self._thread_name, daemon=True)
        self._thread.start()
        try:
            self._bridge = asyncio.run_coroutine_threadsafe(self._open(), self._loop).result(timeout)
        except BaseException:
            self._shutdown_loop()
            raise
        self._running = True
        self._logger.info("Bridge client started (PID: %s)", self._bridge.supervisor.pid)

    def stop(self, timeout: Optional[float] = None) -> None:
        if not self._running:
            return
        self._running = False
        bridge, loop = self._bridge, self._loop
        if bridge is not None and loop is not None:
            wait = timeout if timeout is not None else self.config.stop_timeout * 3 + 5.0
            try:
                asyncio.run_coroutine_threadsafe(bridge.aclose(), loop).result(wait)
            except concurrent.futures.TimeoutError:
                self._logger.warning("Bridge did not shut down within %.1fs", wait)
        self._bridge = None
        self._shutdown_loop()
        self._logger.info("Bridge client stopped")

    def is_running(self) -> bool:
        return self._running

    def __enter__(self) -> "BridgeClient":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    @staticmethod
    def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        loop.run_forever()

    async def _open(self) -> Bridge:
        bridge = Bridge.from_config(self.config, event_bus=self.events)
        await bridge.start()
        return bridge

    def _shutdown_loop(self) -> None:
        loop, thread = self._loop, self._thread
        if loop is not None:
            loop.call_soon_threadsafe(loop.stop)
        if thread is not None and thread.is_alive():
            thread.join(timeout=5.0)
        if loop is not None and not loop.is_running():
            loop.close()
        self._loop = None
        self._thread = None

    # Calls -----------------------------------------------------------------------
    def invoke_future(self, method: str, payload: JsonValue = None, *,
                      timeout: Optional[float] = None) -> concurrent.futures.Future:
        bridge, loop = self._bridge, self._loop
        if not self._running or bridge is None or loop is None:
            future: concurrent.futures.Future = concurrent.futures.Future()
            future.set_exception(ProcessNotRunning(f"{method}: bridge client not running", method=method))
            return future
        return asyncio.run_coroutine_threadsafe(bridge.invoke(method, payload, timeout=timeout), loop)

    def invoke_sync(self, method: str, payload: JsonValue = None, *,
                    timeout: Optional[float] = None, wait: Optional[float] = None) -> JsonValue:
        """Block until the backend answers.

        ``timeout`` is the bridge-side request deadline; ``wait`` bounds how
        long this thread blocks and abandons the request when it expires.
        """
        future = self.invoke_future(method, payload, timeout=timeout)
        try:
            return future.result(timeout=wait)
        except concurrent.futures.TimeoutError:
            if future.done():
                # RequestTimeout raised by the bridge itself
                raise
            future.cancel()
            raise RequestTimeout(f"{method}: no response within {wait}s", method=method) from None

    def status(self) -> Dict[str, Any]:
        bridge, loop = self._bridge, self._loop
        if bridge is None or loop is None:
            return {"state": "stopped", "running": False}

        async def _snapshot() -> Dict[str, Any]:
            return bridge.status()

        status = asyncio.run_coroutine_threadsafe(_snapshot(), loop).result(timeout=5.0)
        status["running"] = self._running
        return status

    # Events ----------------------------------------------------------------------
    def subscribe(self, topic: str, callback: Subscriber) -> None:
        self.events.subscribe(topic, callback)

    def unsubscribe(self, topic: str, callback: Subscriber) -> None:
        self.events.unsubscribe(topic, callback)


__all__ = ["BridgeClient"]
