"""Minimal stand-in for `zinc_lsp`, speaking LSP over stdio."""

from __future__ import annotations

import argparse
import json
import sys
import time

SYNC_KINDS = {"none": 0, "full": 1, "incremental": 2}


def _encode(obj: dict) -> bytes:
    body = json.dumps(obj, ensure_ascii=False).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


def _read_message() -> dict:
    # Read headers.
    headers: dict[str, str] = {}
    while True:
        line = sys.stdin.buffer.readline()
        if not line:
            raise EOFError
        if line in (b"\r\n", b"\n"):
            break
        key, _, value = line.decode("ascii", errors="replace").partition(":")
        headers[key.strip().lower()] = value.strip()
    length = int(headers.get("content-length", "0") or "0")
    body = sys.stdin.buffer.read(length)
    return json.loads(body.decode("utf-8"))


def _send(obj: dict) -> None:
    sys.stdout.buffer.write(_encode(obj))
    sys.stdout.buffer.flush()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--sync", choices=sorted(SYNC_KINDS), default="full")
    parser.add_argument("--crash-on-start", type=int, default=None)
    parser.add_argument("--crash-on-initialize", type=int, default=None)
    parser.add_argument("--malformed-initialize", action="store_true")
    parser.add_argument("--ignore-eof", action="store_true")
    parser.add_argument("--record", default=None)
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    if args.crash_on_start is not None:
        return args.crash_on_start

    shutdown_requested = False
    while True:
        try:
            msg = _read_message()
        except EOFError:
            if args.ignore_eof:
                while True:
                    time.sleep(1)
            return 0

        if args.record:
            with open(args.record, "a", encoding="utf-8") as f:
                f.write(json.dumps(msg) + "\n")

        method = msg.get("method")
        rid = msg.get("id")

        def respond(result: object) -> None:
            _send({"jsonrpc": "2.0", "id": rid, "result": result})

        if method == "initialize":
            if args.crash_on_initialize is not None:
                return args.crash_on_initialize
            if args.malformed_initialize:
                respond({"serverInfo": {"name": "stub"}})
                continue
            respond(
                {
                    "capabilities": {
                        "textDocumentSync": SYNC_KINDS[args.sync],
                        "completionProvider": {"resolveProvider": False},
                    },
                    "serverInfo": {"name": "zinc-lsp", "version": "1.0.3"},
                }
            )
        elif method == "shutdown":
            shutdown_requested = True
            respond(None)
        elif method == "exit":
            return 0 if shutdown_requested else 1
        elif method == "textDocument/didOpen":
            uri = msg["params"]["textDocument"]["uri"]
            _send(
                {
                    "jsonrpc": "2.0",
                    "method": "textDocument/publishDiagnostics",
                    "params": {
                        "uri": uri,
                        "diagnostics": [
                            {
                                "range": {
                                    "start": {"line": 0, "character": 0},
                                    "end": {"line": 0, "character": 1},
                                },
                                "severity": 1,
                                "source": "zinc",
                                "message": "stub diagnostic",
                            }
                        ],
                    },
                }
            )
        elif method == "textDocument/completion":
            respond(
                [
                    {"label": "print", "detail": "Print output"},
                    {"label": "let", "detail": "Declare variable"},
                ]
            )
        elif rid is not None and method is not None:
            _send({"jsonrpc": "2.0", "id": rid, "error": {"code": -32601, "message": f"Unhandled {method}"}})


if __name__ == "__main__":
    sys.exit(main())
