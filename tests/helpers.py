"""In-memory stand-ins for the language server used across the tests."""

import asyncio
import os
import sys
from typing import Any, Callable, Dict, List, Optional, Set

from zinclsp.servers.supervisor import Connection, ProcessSupervisor, RestartPolicy
from zinclsp.transport.framing import MessageDecoder, encode_message

STUB_SERVER = os.path.join(os.path.dirname(__file__), "fixtures", "stub_server.py")
PYTHON = sys.executable


class FakeWriter:
    """Stands in for the server's stdin: decodes every frame written to it."""

    def __init__(self, on_message: Optional[Callable[[Dict[str, Any]], None]] = None):
        self.decoder = MessageDecoder()
        self.messages: List[Dict[str, Any]] = []
        self.on_message = on_message
        self.fail_writes = False
        self._closing = False

    def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise BrokenPipeError("pipe closed")
        for message in self.decoder.feed(data):
            self.messages.append(message)
            if self.on_message:
                self.on_message(message)

    async def drain(self) -> None:
        if self.fail_writes:
            raise BrokenPipeError("pipe closed")

    def close(self) -> None:
        self._closing = True

    def is_closing(self) -> bool:
        return self._closing


class FakeServer:
    """Scripted language server living on an in-memory connection.

    Must be created inside a running event loop (it owns a StreamReader).
    """

    def __init__(
        self,
        capabilities: Optional[Dict[str, Any]] = None,
        *,
        server_info: Optional[Dict[str, Any]] = None,
        crash_on: Optional[Set[str]] = None,
    ):
        self.reader = asyncio.StreamReader()
        self.writer = FakeWriter(self.handle)
        self.capabilities = (
            capabilities
            if capabilities is not None
            else {"textDocumentSync": 1, "completionProvider": {"resolveProvider": False}}
        )
        self.server_info = server_info or {"name": "zinc-lsp", "version": "1.0.3"}
        self.initialize_result: Any = None
        self.results: Dict[str, Any] = {}
        self.silent: Set[str] = set()
        self.crash_on = crash_on or set()
        self.crashed = False

    @property
    def received(self) -> List[Dict[str, Any]]:
        return self.writer.messages

    def requests(self, method: Optional[str] = None) -> List[Dict[str, Any]]:
        return [m for m in self.received if "id" in m and "method" in m and m["method"] == (method or m["method"])]

    def notifications(self, prefix: str = "textDocument/") -> List[Dict[str, Any]]:
        return [m for m in self.received if "id" not in m and m.get("method", "").startswith(prefix)]

    def methods(self) -> List[str]:
        return [m["method"] for m in self.received if "method" in m]

    def handle(self, message: Dict[str, Any]) -> None:
        method = message.get("method")
        if method in self.crash_on:
            self.crash()
            return
        if method is None or "id" not in message or method in self.silent:
            return

        if method == "initialize":
            result = self.initialize_result
            if result is None:
                result = {"capabilities": self.capabilities, "serverInfo": self.server_info}
        elif method == "shutdown":
            result = None
        elif method in self.results:
            result = self.results[method]
            if callable(result):
                result = result(message.get("params"))
        else:
            self.send({"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32601, "message": "not found"}})
            return
        self.send({"jsonrpc": "2.0", "id": message["id"], "result": result})

    def send(self, message: Dict[str, Any]) -> None:
        if self.crashed:
            return
        message.setdefault("jsonrpc", "2.0")
        self.reader.feed_data(encode_message(message))

    def crash(self) -> None:
        if not self.crashed:
            self.crashed = True
            self.reader.feed_eof()


class FakeSupervisor(ProcessSupervisor):
    """Supervisor handing out in-memory servers instead of processes."""

    def __init__(
        self,
        server_factory: Optional[Callable[[int], FakeServer]] = None,
        restart_policy: Optional[RestartPolicy] = None,
    ):
        super().__init__(
            restart_policy or RestartPolicy(crash_limit=3, window=60.0, backoff_base=0.01, backoff_max=0.05)
        )
        self.server_factory = server_factory or (lambda index: FakeServer())
        self.servers: List[FakeServer] = []
        self.spawn_calls = 0
        self.spawn_error: Optional[Exception] = None
        self.terminated = 0

    @property
    def server(self) -> FakeServer:
        return self.servers[-1]

    async def spawn(self, command: str, args: Optional[List[str]] = None, cwd: Optional[str] = None) -> Connection:
        self.spawn_calls += 1
        if self.spawn_error is not None:
            raise self.spawn_error
        server = self.server_factory(len(self.servers))
        self.servers.append(server)
        instance = self._next_instance(command, list(args or []), cwd)
        instance.process = server
        self.current = instance
        self.connection = Connection(instance_id=instance.instance_id, reader=server.reader, writer=server.writer)
        return self.connection

    def crash(self, returncode: int = 1) -> None:
        """Make the current server die on its own."""
        instance = self.current
        self.server.crash()
        self._on_exit(instance, returncode)

    async def terminate(self, timeout: float = 2.0) -> Optional[int]:
        instance = self.current
        if instance is None:
            return None
        instance.expected_exit = True
        if instance.returncode is None:
            instance.returncode = 0
        instance.process.crash()
        if self.connection is not None:
            self.connection.invalidate()
        self.current = None
        self.connection = None
        self.terminated += 1
        return instance.returncode


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll `predicate` until it holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


def write_server_wrapper(directory: str, *stub_args: str) -> str:
    """Create an executable script that runs the stub server with `stub_args`."""
    path = os.path.join(directory, "zinc_lsp_stub")
    quoted = " ".join(f"'{arg}'" for arg in (PYTHON, STUB_SERVER, *stub_args))
    with open(path, "w", encoding="utf-8") as f:
        f.write(f'#!/bin/sh\nexec {quoted} "$@"\n')
    os.chmod(path, 0o755)
    return path
