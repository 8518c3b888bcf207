from __future__ import annotations

import pytest

from easykatago_shell.constants import Command
from easykatago_shell.core.errors import BackendError, ProcessUnavailable
from easykatago_shell.services.command_router import CommandResponse, CommandRouter, resolve_command


class RecordingClient:
    """Stand-in for BridgeClient that records calls and replays canned answers."""

    def __init__(self, answers=None):
        self.calls = []
        self.answers = answers or {}

    def invoke_sync(self, method, payload=None, *, timeout=None, wait=None):
        self.calls.append((method, payload, timeout))
        answer = self.answers.get(method)
        if isinstance(answer, Exception):
            raise answer
        return answer


def test_ping_is_answered_locally_every_time():
    client = RecordingClient()
    router = CommandRouter(client)

    responses = [router.dispatch("ping") for _ in range(3)]

    assert all(response == CommandResponse(ok=True, result="easykatago") for response in responses)
    assert client.calls == []


@pytest.mark.parametrize("name, expected", [
    ("settings.read", Command.SETTINGS_READ),
    ("settings_read", Command.SETTINGS_READ),
    ("profiles_write", Command.PROFILES_WRITE),
    ("launch.run", Command.LAUNCH_RUN),
    ("settings-read", None),
    ("ping", None),
])
def test_resolve_command_accepts_dotted_and_underscore_names(name, expected):
    assert resolve_command(name) is expected


def test_dispatch_forwards_dotted_method_name():
    client = RecordingClient({"settings.read": {"lang": "en"}})
    router = CommandRouter(client)

    response = router.dispatch("settings_read", timeout=2.5)

    assert response.to_dict() == {"status": "ok", "result": {"lang": "en"}}
    assert client.calls == [("settings.read", None, 2.5)]


def test_unknown_command_never_reaches_backend():
    client = RecordingClient()
    response = CommandRouter(client).dispatch("format.disk")

    assert response.to_dict() == {
        "status": "error",
        "error": "UNKNOWN_COMMAND: Unsupported command: format.disk",
    }
    assert client.calls == []


def test_backend_error_becomes_error_string():
    client = RecordingClient({
        "install.run": BackendError({"code": "E_PERM", "message": "denied"}, method="install.run"),
    })

    response = CommandRouter(client).install_run()

    assert not response.ok
    assert response.error == "E_PERM: denied"


def test_bridge_failure_uses_its_own_code():
    client = RecordingClient({
        "launch.run": ProcessUnavailable("launch.run: backend unavailable", method="launch.run"),
    })

    response = CommandRouter(client).launch_run()

    assert response.to_dict() == {
        "status": "error",
        "error": "PROCESS_UNAVAILABLE: launch.run: backend unavailable",
    }


def test_invalid_payload_is_reported():
    client = RecordingClient({"settings.write": TypeError("not JSON serialisable: object")})

    response = CommandRouter(client).settings_write({"bad": "value"})

    assert response.error.startswith("INVALID_PAYLOAD: ")


def test_oversized_request_is_reported():
    client = RecordingClient({"profiles.write": ValueError("request 4 is 256 bytes, limit is 64")})

    response = CommandRouter(client).profiles_write({"blob": "x" * 200})

    assert response.to_dict() == {
        "status": "error",
        "error": "INVALID_PAYLOAD: request 4 is 256 bytes, limit is 64",
    }


def test_named_operations_map_to_methods():
    client = RecordingClient()
    router = CommandRouter(client)

    router.settings_read()
    router.settings_write({"lang": "fr"})
    router.profiles_read()
    router.profiles_write([{"name": "default"}])
    router.install_run()
    router.launch_run()

    assert [(method, payload) for method, payload, _ in client.calls] == [
        ("settings.read", None),
        ("settings.write", {"lang": "fr"}),
        ("profiles.read", None),
        ("profiles.write", [{"name": "default"}]),
        ("install.run", None),
        ("launch.run", None),
    ]
