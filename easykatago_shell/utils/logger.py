"""Project-wide logging utilities."""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Dict, Optional

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def ensure_log_directories(base_dir: Path) -> None:
    """Ensure that the standard log directories exist."""

    for directory in (base_dir / "bridge", base_dir / "backend"):
        directory.mkdir(parents=True, exist_ok=True)


def build_default_dict(log_root: Path, *, level: str = "INFO") -> Dict[str, Any]:
    """Create a dictConfig-compatible logging configuration.

    Bridge internals and the backend's stderr get their own files so a crash
    can be diagnosed from the backend log without the shell's noise.
    """

    ensure_log_directories(log_root)

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": _DEFAULT_FORMAT,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "standard",
            },
            "bridge_file": {
                "class": "logging.FileHandler",
                "level": "DEBUG",
                "formatter": "standard",
                "filename": str(log_root / "bridge" / "bridge.log"),
                "encoding": "utf-8",
            },
            "backend_file": {
                "class": "logging.FileHandler",
                "level": "DEBUG",
                "formatter": "standard",
                "filename": str(log_root / "backend" / "backend.log"),
                "encoding": "utf-8",
            },
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
        "loggers": {
            "bridge": {
                "level": "DEBUG",
                "handlers": ["bridge_file", "console"],
                "propagate": False,
            },
            "backend": {
                "level": "DEBUG",
                "handlers": ["backend_file"],
                "propagate": False,
            },
        },
    }


def setup_logging(log_root: Optional[str | os.PathLike[str]] = None, *, level: str = "INFO",
                  config: Optional[Dict[str, Any]] = None) -> None:
    """Initialise the logging subsystem.

    Args:
        log_root: Optional override for the root directory. Defaults to ``./logs``.
        level: Console/root level used by the default configuration.
        config: Optional dictConfig mapping. When omitted, a pragmatic default is used.
    """

    resolved_root = Path(log_root or "logs")
    resolved_root.mkdir(parents=True, exist_ok=True)

    logging_config = config or build_default_dict(resolved_root, level=level)
    logging.config.dictConfig(logging_config)


__all__ = ["setup_logging", "ensure_log_directories", "build_default_dict"]
