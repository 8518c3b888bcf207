"""Helpers for loading the bridge YAML configuration."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from ..constants import (
    DEFAULT_MAX_MESSAGE_BYTES,
    DEFAULT_RESTART_WAIT,
    DEFAULT_STOP_TIMEOUT,
    ENV_BRIDGE_ARGS,
    ENV_BRIDGE_PATH,
)
from ..core.supervisor import RestartPolicy

CONFIG_RELATIVE_PATH = Path("config") / "bridge.yaml"


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable wrapper holding a configuration payload and metadata."""

    content: Dict[str, Any]
    path: Path
    mtime: float


class ConfigLoader:
    """Load a YAML file into a :class:`ConfigSnapshot`.

    A missing file is not an error: the snapshot is empty and ``mtime`` is 0.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._snapshot = self._load()

    def _load(self) -> ConfigSnapshot:
        if not self._path.exists():
            return ConfigSnapshot(content={}, path=self._path, mtime=0.0)
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self._path}: top level must be a mapping")
        return ConfigSnapshot(content=data, path=self._path, mtime=self._path.stat().st_mtime)

    def get(self) -> ConfigSnapshot:
        return self._snapshot


def _optional_float(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    number = float(value)
    if number < 0:
        raise ValueError(f"{name} must not be negative")
    return number or None


@dataclass(frozen=True)
class BridgeConfig:
    """Resolved settings the bridge needs to run the backend."""

    executable: str = ""
    args: Tuple[str, ...] = ()
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    inherit_env: bool = True
    request_timeout: Optional[float] = None
    restart_wait: float = DEFAULT_RESTART_WAIT
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES
    restart: RestartPolicy = field(default_factory=RestartPolicy)
    log_root: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, base_dir: Optional[Path] = None) -> "BridgeConfig":
        backend = data.get("backend") or {}
        restart = data.get("restart") or {}
        bridge = data.get("bridge") or {}
        logging_cfg = data.get("logging") or {}

        args = backend.get("args") or []
        if isinstance(args, str):
            args = shlex.split(args)
        executable = str(backend.get("executable") or "")
        # bare names are looked up on PATH; relative paths are relative to the root
        if executable and base_dir is not None and os.sep in executable \
                and not Path(executable).is_absolute():
            executable = str(base_dir / executable)
        cwd = backend.get("cwd")
        if cwd and base_dir is not None and not Path(cwd).is_absolute():
            cwd = str(base_dir / cwd)
        log_root = logging_cfg.get("root")
        if log_root and base_dir is not None and not Path(log_root).is_absolute():
            log_root = str(base_dir / log_root)

        defaults = RestartPolicy()
        policy = RestartPolicy(
            max_restarts=int(restart.get("max_restarts", defaults.max_restarts)),
            backoff_initial=float(restart.get("backoff_initial", defaults.backoff_initial)),
            backoff_max=float(restart.get("backoff_max", defaults.backoff_max)),
            backoff_factor=float(restart.get("backoff_factor", defaults.backoff_factor)),
            reset_after=float(restart.get("reset_after", defaults.reset_after)),
        )
        if policy.max_restarts < 0:
            raise ValueError("restart.max_restarts must not be negative")

        return cls(
            executable=executable,
            args=tuple(str(arg) for arg in args),
            cwd=cwd,
            env={str(k): str(v) for k, v in (backend.get("env") or {}).items()},
            inherit_env=bool(backend.get("inherit_env", True)),
            request_timeout=_optional_float(bridge.get("request_timeout"), "bridge.request_timeout"),
            restart_wait=float(bridge.get("restart_wait", DEFAULT_RESTART_WAIT)),
            stop_timeout=float(bridge.get("stop_timeout", DEFAULT_STOP_TIMEOUT)),
            max_message_bytes=int(bridge.get("max_message_bytes", DEFAULT_MAX_MESSAGE_BYTES)),
            restart=policy,
            log_root=log_root,
        )

    def with_environment(self, environ: Optional[Mapping[str, str]] = None) -> "BridgeConfig":
        """Apply ``EASYKATAGO_BRIDGE_PATH`` / ``EASYKATAGO_BRIDGE_ARGS`` overrides."""
        environ = os.environ if environ is None else environ
        executable = environ.get(ENV_BRIDGE_PATH) or self.executable
        raw_args = environ.get(ENV_BRIDGE_ARGS)
        args = tuple(shlex.split(raw_args)) if raw_args is not None else self.args
        if executable == self.executable and args == self.args:
            return self
        return replace(self, executable=executable, args=args)

    def process_env(self) -> Optional[Dict[str, str]]:
        """Environment for the child; ``None`` means inherit ours unchanged."""
        if self.inherit_env and not self.env:
            return None
        merged = dict(os.environ) if self.inherit_env else {}
        merged.update(self.env)
        return merged


def load_bridge_config(root: str | Path, *, environ: Optional[Mapping[str, str]] = None) -> BridgeConfig:
    """Read ``<root>/config/bridge.yaml`` and apply environment overrides."""
    root = Path(root)
    snapshot = ConfigLoader(root / CONFIG_RELATIVE_PATH).get()
    return BridgeConfig.from_mapping(snapshot.content, base_dir=root).with_environment(environ)


__all__ = ["ConfigLoader", "ConfigSnapshot", "BridgeConfig", "load_bridge_config"]
