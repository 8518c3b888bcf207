from __future__ import annotations

import sys
from pathlib import Path

import pytest

from easykatago_shell.core.bridge import Bridge
from easykatago_shell.core.supervisor import RestartPolicy
from easykatago_shell.utils.config_loader import BridgeConfig

FAKE_BACKEND = Path(__file__).resolve().parent / "fixtures" / "fake_backend.py"

FAST_RESTARTS = RestartPolicy(max_restarts=3, backoff_initial=0.05, backoff_max=0.2,
                              backoff_factor=2.0, reset_after=60.0)


@pytest.fixture
def make_bridge():
    """Build (not start) a Bridge around the fake backend script."""

    def _make(*backend_args: str, **kwargs) -> Bridge:
        kwargs.setdefault("policy", FAST_RESTARTS)
        kwargs.setdefault("stop_timeout", 2.0)
        return Bridge(sys.executable, [str(FAKE_BACKEND), *backend_args], **kwargs)

    return _make


@pytest.fixture
def fake_backend_config() -> BridgeConfig:
    return BridgeConfig(
        executable=sys.executable,
        args=(str(FAKE_BACKEND),),
        stop_timeout=2.0,
        restart=FAST_RESTARTS,
    )
