"""Bridge facade: one ``invoke`` call-and-wait operation over the backend process."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Sequence

from ..constants import (
    DEFAULT_MAX_MESSAGE_BYTES,
    DEFAULT_READER_DRAIN_TIMEOUT,
    DEFAULT_RESTART_WAIT,
    DEFAULT_STOP_TIMEOUT,
    BridgeState,
    EventTopic,
)
from .codec import EventEnvelope, JsonValue, LineCodec, RequestEnvelope, StreamDecoder, ensure_json_value
from .correlator import PendingRequest, RpcCorrelator
from .errors import (
    MalformedResponse,
    ProcessCrashed,
    ProcessNotRunning,
    ProcessSpawnFailed,
    ProcessUnavailable,
)
from .event_bus import Event, EventBus, Subscriber
from .supervisor import ExitInfo, Process, ProcessSupervisor, RestartPolicy

if TYPE_CHECKING:  # pragma: no cover
    from ..utils.config_loader import BridgeConfig


class Bridge:
    """Multiplexes concurrent callers onto the backend's stdin/stdout.

    The bridge is an explicitly owned context object: construct it once,
    ``await bridge.start()`` (or use ``async with``) and pass it to whatever
    needs to talk to the backend. Every coroutine must run on the same loop.
    """

    def __init__(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        policy: Optional[RestartPolicy] = None,
        request_timeout: Optional[float] = None,
        restart_wait: float = DEFAULT_RESTART_WAIT,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
        event_bus: Optional[EventBus] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger("bridge")
        self.request_timeout = request_timeout
        self.restart_wait = restart_wait
        self.codec = LineCodec(max_message_bytes=max_message_bytes)
        self.correlator = RpcCorrelator(logger=self.logger.getChild("correlator"))
        self.events = event_bus or EventBus()
        self.supervisor = ProcessSupervisor(
            executable,
            args,
            cwd=cwd,
            env=env,
            policy=policy,
            stop_timeout=stop_timeout,
            on_ready=self._attach,
            on_exit=self._on_backend_exit,
            on_state_change=self._publish_state,
            logger=self.logger.getChild("supervisor"),
        )
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._write_lock: Optional[asyncio.Lock] = None

    @classmethod
    def from_config(cls, config: "BridgeConfig", *, event_bus: Optional[EventBus] = None) -> "Bridge":
        if not config.executable:
            raise ValueError("no backend executable configured")
        return cls(
            config.executable,
            config.args,
            cwd=config.cwd,
            env=config.process_env(),
            policy=config.restart,
            request_timeout=config.request_timeout,
            restart_wait=config.restart_wait,
            stop_timeout=config.stop_timeout,
            max_message_bytes=config.max_message_bytes,
            event_bus=event_bus,
        )

    # Lifecycle -------------------------------------------------------------------
    async def start(self) -> "Bridge":
        """Spawn the backend. Raises ``ProcessSpawnFailed`` if it cannot launch."""
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        await self.supervisor.start()
        return self

    async def aclose(self) -> None:
        """Stop the backend and fail whatever is still pending."""
        await self.supervisor.stop()
        reader_task, self._reader_task = self._reader_task, None
        if reader_task is not None and not reader_task.done():
            reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader_task
        self._writer = None
        self.correlator.fail_all("bridge shut down", ProcessNotRunning)

    async def __aenter__(self) -> "Bridge":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def state(self) -> BridgeState:
        return self.supervisor.state

    def status(self) -> Dict[str, Any]:
        status = self.supervisor.status()
        status["pending"] = len(self.correlator)
        return status

    def subscribe(self, topic: str, callback: Subscriber) -> None:
        self.events.subscribe(topic, callback)

    def unsubscribe(self, topic: str, callback: Subscriber) -> None:
        self.events.unsubscribe(topic, callback)

    # Calls -----------------------------------------------------------------------
    async def invoke(self, method: str, payload: JsonValue = None, *,
                     timeout: Optional[float] = None) -> JsonValue:
        """Send ``method`` to the backend and wait for its result.

        Args:
            method: backend method name, e.g. ``"settings.read"``.
            payload: JSON value sent as ``params``.
            timeout: per-call deadline in seconds; ``None`` uses the bridge
                default, ``0`` disables the deadline for this call.

        Raises:
            TypeError: ``payload`` is not a JSON value.
            ProcessNotRunning, ProcessUnavailable: the backend is not ready.
            ProcessCrashed: the backend died before answering.
            RequestTimeout: the deadline passed.
            MalformedResponse: the answer could not be decoded.
            BackendError: the backend reported a failure.
        """
        ensure_json_value(payload)
        await self._ensure_ready(method)

        effective_timeout = self.request_timeout if timeout is None else timeout
        pending = self.correlator.submit(method, payload, timeout=effective_timeout)
        try:
            data = self.codec.encode(RequestEnvelope(id=pending.id, method=method, payload=payload))
            await self._write(pending, data)
            return await pending.future
        finally:
            self.correlator.discard(pending.id)

    async def _ensure_ready(self, method: str) -> None:
        state = self.supervisor.state
        if state in (BridgeState.STARTING, BridgeState.CRASHED) and self.restart_wait > 0:
            state = await self.supervisor.wait_ready(self.restart_wait)
        if state is BridgeState.READY:
            return
        if state is BridgeState.UNAVAILABLE:
            raise ProcessUnavailable(
                f"{method}: backend unavailable after {self.supervisor.restart_count} restart attempt(s)",
                method=method,
            )
        raise ProcessNotRunning(f"{method}: backend is {state.value}", method=method)

    async def _write(self, pending: PendingRequest, data: bytes) -> None:
        if self._write_lock is None:
            raise ProcessNotRunning(f"{pending.method}: bridge was not started",
                                    request_id=pending.id, method=pending.method)
        async with self._write_lock:
            if pending.done:
                # failed by a crash or timeout while waiting for the lock
                return
            writer = self._writer
            if writer is None or writer.is_closing() or self.supervisor.state is not BridgeState.READY:
                self.correlator.fail(pending.id, ProcessCrashed(
                    f"{pending.method}: backend went away before the request was sent",
                    request_id=pending.id, method=pending.method,
                ))
                return
            try:
                writer.write(data)
                await writer.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                self.logger.warning("Write of request %s failed: %s", pending.id, exc)
                self.correlator.fail(pending.id, ProcessCrashed(
                    f"{pending.method}: write to backend failed: {exc}",
                    request_id=pending.id, method=pending.method,
                ))

    # Process hooks ---------------------------------------------------------------
    def _attach(self, process: Process) -> None:
        if process.stdin is None or process.stdout is None:
            raise ProcessSpawnFailed(f"backend PID {process.pid} started without stdio pipes")
        self._writer = process.stdin
        decoder = self.codec.decoder(process.stdout)
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(process, decoder))

    async def _read_loop(self, process: Process, decoder: StreamDecoder) -> None:
        try:
            while True:
                try:
                    message = await decoder.decode()
                except MalformedResponse as exc:
                    self._handle_malformed(exc)
                    continue
                if message is None:
                    break
                if isinstance(message, EventEnvelope):
                    self.events.publish(Event(message.event, message.data))
                else:
                    self.correlator.resolve_from_response(message)
        except Exception:
            self.logger.exception("Backend reader failed; killing PID %d", process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            return
        self.logger.debug("Backend output closed (PID %d)", process.pid)

    def _handle_malformed(self, exc: MalformedResponse) -> None:
        preview = exc.raw[:200]
        pending = self.correlator.get(exc.request_id) if exc.request_id is not None else None
        if pending is None:
            self.logger.warning("Skipping malformed backend output: %s (%r)", exc.message, preview)
            return
        self.logger.warning("Malformed response for request %s: %s (%r)", pending.id, exc.message, preview)
        self.correlator.fail(pending.id, MalformedResponse(
            f"{pending.method}: {exc.message}", raw=exc.raw,
            request_id=pending.id, method=pending.method,
        ))

    async def _on_backend_exit(self, process: Process, info: ExitInfo) -> None:
        # let the reader deliver responses that were written before the exit
        reader_task = self._reader_task
        if reader_task is not None and not reader_task.done():
            try:
                await asyncio.wait_for(asyncio.shield(reader_task), DEFAULT_READER_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                reader_task.cancel()
        self._reader_task = None
        self._writer = None
        self.correlator.fail_all(f"backend {info.reason}", ProcessCrashed, returncode=info.returncode)

    def _publish_state(self, old_state: BridgeState, new_state: BridgeState) -> None:
        self.events.publish(Event(EventTopic.BRIDGE_STATE.value, {
            "state": new_state.value,
            "previous": old_state.value,
            "pid": self.supervisor.pid,
        }))


__all__ = ["Bridge"]
