"""Backend process supervision: spawn, crash detection, restart, termination."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Mapping, Optional, Sequence

from ..constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BACKOFF_INITIAL,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_MAX_RESTARTS,
    DEFAULT_RESET_AFTER,
    DEFAULT_STOP_TIMEOUT,
    BridgeState,
)
from .errors import ProcessNotRunning, ProcessSpawnFailed, ProcessUnavailable

Process = asyncio.subprocess.Process
ReadyHook = Callable[[Process], None]
ExitHook = Callable[[Process, "ExitInfo"], Awaitable[None]]
StateHook = Callable[[BridgeState, BridgeState], None]


@dataclass(frozen=True)
class ExitInfo:
    returncode: Optional[int]
    reason: str
    timestamp: float
    uptime: float


@dataclass(frozen=True)
class RestartPolicy:
    max_restarts: int = DEFAULT_MAX_RESTARTS
    backoff_initial: float = DEFAULT_BACKOFF_INITIAL
    backoff_max: float = DEFAULT_BACKOFF_MAX
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    reset_after: float = DEFAULT_RESET_AFTER

    def delay(self, attempt: int) -> float:
        """Backoff before restart ``attempt`` (1-based)."""
        return min(self.backoff_initial * self.backoff_factor ** max(attempt - 1, 0), self.backoff_max)


def describe_exit(returncode: Optional[int]) -> str:
    if returncode is None:
        return "unknown exit status"
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"killed by signal {name}"
    return f"exit code {returncode}"


class ProcessSupervisor:
    """Owns the single backend process and its state machine.

    ``stopped -> starting -> ready <-> crashed -> starting | unavailable``;
    ``stop()`` passes through ``stopping`` to ``stopped`` from any state.
    Must be driven from one event loop.
    """

    def __init__(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        policy: Optional[RestartPolicy] = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        on_ready: Optional[ReadyHook] = None,
        on_exit: Optional[ExitHook] = None,
        on_state_change: Optional[StateHook] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.executable = executable
        self.args = list(args)
        self.cwd = cwd
        self.env = dict(env) if env is not None else None
        self.policy = policy or RestartPolicy()
        self.stop_timeout = stop_timeout
        self.logger = logger or logging.getLogger("bridge.supervisor")
        self._on_ready = on_ready
        self._on_exit = on_exit
        self._on_state_change = on_state_change

        self._state = BridgeState.STOPPED
        self._state_changed: Optional[asyncio.Event] = None
        self._process: Optional[Process] = None
        self._started_at = 0.0
        self._last_exit: Optional[ExitInfo] = None
        self._restart_count = 0
        self._consecutive_failures = 0
        self._generation = 0
        self._watch_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None

    # Introspection ---------------------------------------------------------------
    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def process(self) -> Optional[Process]:
        return self._process

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def restart_count(self) -> int:
        return self._restart_count

    @property
    def last_exit(self) -> Optional[ExitInfo]:
        return self._last_exit

    @property
    def generation(self) -> int:
        """Incremented for every process instance that was spawned."""
        return self._generation

    def status(self) -> Dict[str, object]:
        last_exit = self._last_exit
        return {
            "state": self._state.value,
            "pid": self.pid,
            "executable": self.executable,
            "restart_count": self._restart_count,
            "generation": self._generation,
            "last_exit": None if last_exit is None else {
                "returncode": last_exit.returncode,
                "reason": last_exit.reason,
                "timestamp": last_exit.timestamp,
                "uptime": last_exit.uptime,
            },
        }

    def _set_state(self, new_state: BridgeState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        self.logger.info("Backend state %s -> %s", old_state.value, new_state.value)
        if self._state_changed is not None:
            self._state_changed.set()
            self._state_changed = None
        if self._on_state_change is not None:
            try:
                self._on_state_change(old_state, new_state)
            except Exception:
                self.logger.exception("State change listener failed")

    async def wait_ready(self, timeout: Optional[float] = None) -> BridgeState:
        """Wait while a (re)start is in progress; return the state reached."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._state in (BridgeState.STARTING, BridgeState.CRASHED):
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                break
            if self._state_changed is None:
                self._state_changed = asyncio.Event()
            try:
                await asyncio.wait_for(self._state_changed.wait(), remaining)
            except asyncio.TimeoutError:
                break
        return self._state

    # Lifecycle -------------------------------------------------------------------
    async def start(self) -> None:
        """Spawn the backend and transition to ``ready``.

        Raises:
            ProcessSpawnFailed: the executable could not be launched.
            ProcessUnavailable: the restart budget was already exhausted.
        """
        if self._state is BridgeState.READY:
            return
        if self._state is BridgeState.UNAVAILABLE:
            raise ProcessUnavailable("backend restart budget exhausted")
        if self._state is not BridgeState.STOPPED:
            raise ProcessNotRunning(f"cannot start backend while {self._state.value}")

        self._consecutive_failures = 0
        self._set_state(BridgeState.STARTING)
        try:
            await self._spawn()
        except ProcessSpawnFailed:
            self._set_state(BridgeState.STOPPED)
            raise

    async def _spawn(self) -> None:
        command = [self.executable, *self.args]
        self.logger.info("Starting backend: %s", " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=self.env,
            )
        except OSError as exc:
            self.logger.error("Failed to launch backend %s: %s", self.executable, exc)
            raise ProcessSpawnFailed(f"cannot launch {self.executable}: {exc}") from exc

        self._process = process
        self._started_at = time.monotonic()
        self._generation += 1
        loop = asyncio.get_running_loop()
        self._stderr_task = loop.create_task(self._drain_stderr(process))
        self._watch_task = loop.create_task(self._watch(process))
        if self._on_ready is not None:
            self._on_ready(process)
        self.logger.info("Backend ready (PID: %d)", process.pid)
        self._set_state(BridgeState.READY)

    async def _watch(self, process: Process) -> None:
        returncode = await process.wait()
        if process is not self._process or self._state in (BridgeState.STOPPING, BridgeState.STOPPED):
            return

        uptime = time.monotonic() - self._started_at
        info = ExitInfo(returncode=returncode, reason=describe_exit(returncode),
                        timestamp=time.time(), uptime=uptime)
        self._last_exit = info
        self.logger.warning("Backend exited unexpectedly (%s) after %.1fs", info.reason, uptime)
        self._set_state(BridgeState.CRASHED)

        if self._on_exit is not None:
            try:
                await self._on_exit(process, info)
            except Exception:
                self.logger.exception("Backend exit handler failed")

        if self._state is not BridgeState.CRASHED:
            return
        if uptime >= self.policy.reset_after:
            self._consecutive_failures = 0
        self._restart_task = asyncio.get_running_loop().create_task(self._restart())

    async def _restart(self) -> None:
        while self._state is BridgeState.CRASHED:
            if self._consecutive_failures >= self.policy.max_restarts:
                self.logger.error("Backend restart budget exhausted after %d attempt(s)",
                                  self._consecutive_failures)
                self._set_state(BridgeState.UNAVAILABLE)
                return

            self._consecutive_failures += 1
            self._restart_count += 1
            delay = self.policy.delay(self._consecutive_failures)
            self.logger.info("Restarting backend in %.2fs (attempt %d/%d)", delay,
                             self._consecutive_failures, self.policy.max_restarts)
            await asyncio.sleep(delay)
            if self._state is not BridgeState.CRASHED:
                return

            self._set_state(BridgeState.STARTING)
            try:
                await self._spawn()
                return
            except ProcessSpawnFailed:
                self._set_state(BridgeState.CRASHED)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Close the backend's stdin, wait, then terminate and finally kill it."""
        if self._state is BridgeState.STOPPED:
            return
        timeout = self.stop_timeout if timeout is None else timeout
        self._set_state(BridgeState.STOPPING)

        restart_task, self._restart_task = self._restart_task, None
        if restart_task is not None and restart_task is not asyncio.current_task():
            restart_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await restart_task

        process = self._process
        if process is not None and process.returncode is None:
            await self._terminate(process, timeout)

        for task in (self._watch_task, self._stderr_task):
            if task is None or task is asyncio.current_task():
                continue
            try:
                await asyncio.wait_for(task, timeout)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
        self._watch_task = None
        self._stderr_task = None
        self._process = None
        self._set_state(BridgeState.STOPPED)

    async def _terminate(self, process: Process, timeout: float) -> None:
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout)
            self.logger.info("Backend stopped (exit code %s)", process.returncode)
            return
        except asyncio.TimeoutError:
            self.logger.warning("Backend did not exit within %.1fs, terminating", timeout)

        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout)
            return
        except asyncio.TimeoutError:
            self.logger.warning("Backend ignored terminate, killing PID %d", process.pid)

        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def _drain_stderr(self, process: Process) -> None:
        """Log backend diagnostics written to stderr."""
        stream = process.stderr
        if stream is None:
            return
        backend_logger = logging.getLogger("backend")
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                backend_logger.warning("[Backend] stderr line exceeded buffer limit, skipped")
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                backend_logger.info("[Backend] %s", text)


__all__ = ["ExitInfo", "RestartPolicy", "ProcessSupervisor", "describe_exit"]
