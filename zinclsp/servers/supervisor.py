"""Language server process supervision."""

import asyncio
import logging
import os
import shutil
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, List, Optional, TypeAlias

from lsprotocol.types import EXIT, SHUTDOWN

from zinclsp.errors import SpawnError, ZincLspError
from zinclsp.transport.rpc import RpcSession

CrashCallback: TypeAlias = Callable[["ServerProcess"], None]


@dataclass
class ServerProcess:
    """One spawned instance of the language server."""

    instance_id: int
    command: str
    args: List[str]
    cwd: Optional[str]
    process: Any = field(default=None, repr=False)
    returncode: Optional[int] = None
    expected_exit: bool = False

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.returncode is None


@dataclass
class Connection:
    """Duplex byte stream bound to one server process (its stdout and stdin)."""

    instance_id: int
    reader: asyncio.StreamReader
    writer: Any
    closed: bool = False

    def invalidate(self) -> None:
        """Mark the connection dead and close the write side."""
        if self.closed:
            return
        self.closed = True
        if not self.writer.is_closing():
            self.writer.close()


class RestartPolicy:
    """Bounded restarts within a sliding time window, with exponential backoff."""

    def __init__(
        self,
        crash_limit: int = 3,
        window: float = 180.0,
        backoff_base: float = 0.5,
        backoff_max: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the policy.

        Args:
            crash_limit: Number of crashes within `window` that ends recovery.
            window: Length of the sliding window in seconds.
            backoff_base: Delay before the first restart in seconds.
            backoff_max: Upper bound for the delay.
            clock: Monotonic time source.
        """
        self.crash_limit = crash_limit
        self.window = window
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock
        self._crashes: Deque[float] = deque()

    @property
    def recent_crashes(self) -> int:
        self._expire(self._clock())
        return len(self._crashes)

    def record_crash(self) -> Optional[float]:
        """Register a crash and decide whether to restart.

        Returns:
            Seconds to wait before restarting, or None if the bound is exceeded.
        """
        now = self._clock()
        self._expire(now)
        self._crashes.append(now)
        if len(self._crashes) >= self.crash_limit:
            return None
        return min(self.backoff_base * 2 ** (len(self._crashes) - 1), self.backoff_max)

    def reset(self) -> None:
        self._crashes.clear()

    def _expire(self, now: float) -> None:
        while self._crashes and now - self._crashes[0] > self.window:
            self._crashes.popleft()


class ProcessSupervisor:
    """Owns the language server process: spawn, crash detection and termination.

    Only one process is supervised at a time. When that process exits without
    having been asked to, `on_crash` is called exactly once for it.
    """

    def __init__(self, restart_policy: Optional[RestartPolicy] = None, on_crash: Optional[CrashCallback] = None):
        self.logger = logging.getLogger("zinclsp.supervisor")
        self.restart_policy = restart_policy or RestartPolicy()
        self.on_crash = on_crash
        self.current: Optional[ServerProcess] = None
        self.connection: Optional[Connection] = None
        self._instance_counter = 0
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return self.current is not None and self.current.is_running

    def _next_instance(self, command: str, args: List[str], cwd: Optional[str]) -> ServerProcess:
        self._instance_counter += 1
        return ServerProcess(instance_id=self._instance_counter, command=command, args=list(args), cwd=cwd)

    async def spawn(self, command: str, args: Optional[List[str]] = None, cwd: Optional[str] = None) -> Connection:
        """Start the server process and return its connection.

        Args:
            command: Executable name or path.
            args: Command-line arguments.
            cwd: Working directory for the process.

        Returns:
            The connection over the process' stdin/stdout.

        Raises:
            SpawnError: If the executable is missing or cannot be executed.
        """
        if self.is_running:
            raise SpawnError(f"A server process is already running (pid {self.current.pid})")

        args = list(args or [])
        executable = shutil.which(command)
        if executable is None:
            raise SpawnError(f"Language server executable not found: {command}")
        if cwd and not os.path.isdir(cwd):
            raise SpawnError(f"Working directory does not exist: {cwd}")

        server = self._next_instance(command, args, cwd)
        self.logger.info(f"Starting language server with command: {' '.join([executable, *args])}")
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnError(f"Failed to start language server {command}: {e}") from e

        server.process = process
        self.current = server
        self.connection = Connection(instance_id=server.instance_id, reader=process.stdout, writer=process.stdin)

        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._watch(server), name=f"zinclsp-watch-{server.instance_id}"),
            loop.create_task(self._read_stderr(server), name=f"zinclsp-stderr-{server.instance_id}"),
        ]
        self.logger.info(f"Language server started (pid {server.pid})")
        return self.connection

    async def _watch(self, server: ServerProcess) -> None:
        returncode = await server.process.wait()
        self._on_exit(server, returncode)

    def _on_exit(self, server: ServerProcess, returncode: Optional[int]) -> None:
        server.returncode = returncode
        if server is self.current and self.connection is not None:
            self.connection.invalidate()
        if server.expected_exit:
            self.logger.info(f"Language server exited with code {returncode}")
            return
        self.logger.warning(f"Language server exited unexpectedly with code {returncode}")
        if self.on_crash:
            self.on_crash(server)

    async def _read_stderr(self, server: ServerProcess) -> None:
        stream = server.process.stderr
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            self.logger.debug(f"Server stderr: {line.decode('utf-8', errors='replace').rstrip()}")

    def mark_expected_exit(self) -> None:
        """Declare that the current process is about to be stopped on purpose."""
        if self.current is not None:
            self.current.expected_exit = True

    async def shutdown(self, session: Optional[RpcSession], grace_period: float) -> bool:
        """Ask the server to exit through the protocol (`shutdown` then `exit`).

        Args:
            session: Session to the current process, if still open.
            grace_period: Seconds to wait for the `shutdown` response.

        Returns:
            True if the server acknowledged the shutdown request.
        """
        self.mark_expected_exit()
        if session is None or not session.is_open or not self.is_running:
            return False
        try:
            await session.call(SHUTDOWN, None, timeout=grace_period)
        except ZincLspError as e:
            self.logger.warning(f"Shutdown request failed: {e}")
            return False
        try:
            await session.notify(EXIT)
        except ZincLspError as e:
            self.logger.warning(f"Exit notification failed: {e}")
            return False
        self.logger.info("Language server acknowledged shutdown")
        return True

    async def terminate(self, timeout: float = 2.0) -> Optional[int]:
        """Stop the current process, escalating from EOF to SIGTERM to SIGKILL.

        Args:
            timeout: Seconds to wait at each stage.

        Returns:
            The exit code of the process, or None if no process was running.
        """
        server = self.current
        if server is None or server.process is None:
            return None
        server.expected_exit = True
        process = server.process

        if server.is_running:
            # EOF on stdin first.
            if self.connection is not None:
                self.connection.invalidate()
            returncode = await self._wait(process, timeout)
            if returncode is None:
                self.logger.warning("Language server did not exit, terminating")
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
                returncode = await self._wait(process, timeout)
            if returncode is None:
                self.logger.warning("Language server did not terminate, forcing kill")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                returncode = await process.wait()
            server.returncode = returncode

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self.connection is not None:
            self.connection.invalidate()
        self.connection = None
        self.current = None
        self.logger.info(f"Language server stopped (exit code {server.returncode})")
        return server.returncode

    @staticmethod
    async def _wait(process: Any, timeout: float) -> Optional[int]:
        try:
            return await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
