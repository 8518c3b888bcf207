"""Scriptable stand-in for the backend process, speaking the line protocol.

Methods understood:
    settings.read        -> {"lang": "en"}
    echo                 -> params
    install.run          -> error E_PERM
    event                -> emits an install.progress event, then {"status": "completed"}
    crash                -> exits with code 3 without answering
    hang                 -> never answers
    garbage              -> writes a broken frame carrying the request id
    garbage.unmatched    -> writes a frame with no id, then answers normally
    garbage.nested       -> writes a broken frame whose result nests the next request id
    stderr               -> writes params to stderr, then answers True
    pid                  -> answers with its own pid
Anything else            -> error UNKNOWN_COMMAND

Options:
    --reverse N          buffer N requests, then answer them in reverse order
    --exit-immediately   exit with code 2 before reading anything
    --ignore-close       keep running after stdin closes and ignore SIGTERM
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time


def _write(message) -> None:
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def _write_raw(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _answer(request) -> None:
    request_id = request.get("id")
    method = request.get("method")
    params = request.get("params")

    if method == "settings.read":
        _write({"id": request_id, "result": {"lang": "en"}})
    elif method == "echo":
        _write({"id": request_id, "result": params})
    elif method == "install.run":
        _write({"id": request_id, "error": {"code": "E_PERM", "message": "denied"}})
    elif method == "event":
        _write({"event": "install.progress", "data": {"stage": "download", "percent": 5}})
        _write({"id": request_id, "result": {"status": "completed"}})
    elif method == "crash":
        os._exit(3)
    elif method == "hang":
        return
    elif method == "garbage":
        _write_raw('{"id": %d, "result": {oops\n' % request_id)
    elif method == "garbage.nested":
        _write_raw('{"result": {"id": %d, "name": "x"}, "id": %d, oops\n' % (request_id + 1, request_id))
    elif method == "garbage.unmatched":
        _write_raw("%%% not json %%%\n")
        _write({"id": request_id, "result": "after-garbage"})
    elif method == "stderr":
        sys.stderr.write(f"{params}\n")
        sys.stderr.flush()
        _write({"id": request_id, "result": True})
    elif method == "pid":
        _write({"id": request_id, "result": os.getpid()})
    else:
        _write({"id": request_id, "error": {"code": "UNKNOWN_COMMAND",
                                           "message": f"Unsupported command: {method}"}})


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--reverse", type=int, default=0)
    parser.add_argument("--exit-immediately", action="store_true")
    parser.add_argument("--ignore-close", action="store_true")
    args = parser.parse_args()

    if args.exit_immediately:
        return 2
    if args.ignore_close:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    batch = []
    while True:
        line = sys.stdin.readline()
        if not line:
            break
        if not line.strip():
            continue
        request = json.loads(line)
        if args.reverse:
            batch.append(request)
            if len(batch) < args.reverse:
                continue
            for queued in reversed(batch):
                _answer(queued)
            batch = []
        else:
            _answer(request)

    if args.ignore_close:
        while True:
            time.sleep(1)
    return 0


if __name__ == "__main__":
    sys.exit(main())
