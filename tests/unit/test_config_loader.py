from __future__ import annotations

import os
from pathlib import Path

import pytest

from easykatago_shell.constants import DEFAULT_MAX_MESSAGE_BYTES, DEFAULT_RESTART_WAIT
from easykatago_shell.core.supervisor import RestartPolicy
from easykatago_shell.utils.config_loader import BridgeConfig, ConfigLoader, load_bridge_config

SAMPLE = """
backend:
  executable: backend/Launcher.Bridge
  args: ["--mode", "bridge"]
  cwd: backend
  inherit_env: true
  env:
    KATAGO_HOME: /opt/katago
bridge:
  request_timeout: 12
  restart_wait: 2.5
  stop_timeout: 3
  max_message_bytes: 4096
restart:
  max_restarts: 4
  backoff_initial: 0.25
  backoff_max: 8
  backoff_factor: 3
  reset_after: 120
logging:
  root: logs
"""


def _write_config(root: Path, text: str) -> Path:
    path = root / "config" / "bridge.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_load_bridge_config_reads_all_sections(tmp_path):
    _write_config(tmp_path, SAMPLE)

    config = load_bridge_config(tmp_path, environ={})

    assert config.executable == str(tmp_path / "backend" / "Launcher.Bridge")
    assert config.args == ("--mode", "bridge")
    assert config.cwd == str(tmp_path / "backend")
    assert config.env == {"KATAGO_HOME": "/opt/katago"}
    assert config.request_timeout == 12.0
    assert config.restart_wait == 2.5
    assert config.stop_timeout == 3.0
    assert config.max_message_bytes == 4096
    assert config.restart == RestartPolicy(max_restarts=4, backoff_initial=0.25, backoff_max=8.0,
                                           backoff_factor=3.0, reset_after=120.0)
    assert config.log_root == str(tmp_path / "logs")


def test_missing_file_yields_defaults(tmp_path):
    config = load_bridge_config(tmp_path, environ={})

    assert config.executable == ""
    assert config.args == ()
    assert config.request_timeout is None
    assert config.restart_wait == DEFAULT_RESTART_WAIT
    assert config.max_message_bytes == DEFAULT_MAX_MESSAGE_BYTES
    assert config.restart == RestartPolicy()


def test_environment_overrides_executable_and_args(tmp_path):
    _write_config(tmp_path, SAMPLE)

    config = load_bridge_config(tmp_path, environ={
        "EASYKATAGO_BRIDGE_PATH": "/usr/local/bin/easykatago-bridge",
        "EASYKATAGO_BRIDGE_ARGS": "--log-level debug --name 'my profile'",
    })

    assert config.executable == "/usr/local/bin/easykatago-bridge"
    assert config.args == ("--log-level", "debug", "--name", "my profile")
    assert config.stop_timeout == 3.0


def test_bare_executable_name_is_left_for_path_lookup(tmp_path):
    config = BridgeConfig.from_mapping({"backend": {"executable": "katago-bridge", "args": "--a b"}},
                                       base_dir=tmp_path)

    assert config.executable == "katago-bridge"
    assert config.args == ("--a", "b")


def test_zero_request_timeout_means_no_deadline():
    config = BridgeConfig.from_mapping({"bridge": {"request_timeout": 0}})

    assert config.request_timeout is None


@pytest.mark.parametrize("data", [
    {"bridge": {"request_timeout": -1}},
    {"restart": {"max_restarts": -1}},
])
def test_invalid_values_are_rejected(data):
    with pytest.raises(ValueError):
        BridgeConfig.from_mapping(data)


def test_top_level_must_be_a_mapping(tmp_path):
    path = _write_config(tmp_path, "- just\n- a list\n")

    with pytest.raises(ValueError):
        ConfigLoader(path)


def test_process_env_inherits_or_replaces():
    assert BridgeConfig().process_env() is None

    merged = BridgeConfig(env={"KATAGO_HOME": "/opt/katago"}).process_env()
    assert merged["KATAGO_HOME"] == "/opt/katago"
    assert set(os.environ) <= set(merged)

    isolated = BridgeConfig(env={"ONLY": "1"}, inherit_env=False).process_env()
    assert isolated == {"ONLY": "1"}


def test_snapshot_records_source_file(tmp_path):
    path = _write_config(tmp_path, "bridge:\n  stop_timeout: 9\n")

    snapshot = ConfigLoader(path).get()
    missing = ConfigLoader(tmp_path / "absent.yaml").get()

    assert snapshot.content == {"bridge": {"stop_timeout": 9}}
    assert snapshot.path == path
    assert snapshot.mtime > 0
    assert missing.content == {}
    assert missing.mtime == 0.0
