import asyncio
import sys
from unittest import mock

import pytest

from zinclsp.errors import SpawnError
from zinclsp.servers.supervisor import ProcessSupervisor, RestartPolicy
from zinclsp.transport.rpc import RpcSession

from tests.helpers import PYTHON, STUB_SERVER

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="relies on POSIX signals")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestRestartPolicy:
    def test_backoff_doubles_until_limit(self):
        clock = FakeClock()
        policy = RestartPolicy(crash_limit=4, window=60, backoff_base=0.5, backoff_max=10, clock=clock)

        assert policy.record_crash() == 0.5
        assert policy.record_crash() == 1.0
        assert policy.record_crash() == 2.0
        assert policy.record_crash() is None
        assert policy.recent_crashes == 4

    def test_limit_counts_crashes_not_restarts(self):
        policy = RestartPolicy(crash_limit=3, clock=FakeClock())

        assert policy.record_crash() is not None
        assert policy.record_crash() is not None
        assert policy.record_crash() is None

    def test_backoff_is_capped(self):
        policy = RestartPolicy(crash_limit=10, backoff_base=1.0, backoff_max=3.0, clock=FakeClock())
        delays = [policy.record_crash() for _ in range(5)]
        assert delays == [1.0, 2.0, 3.0, 3.0, 3.0]

    def test_old_crashes_leave_the_window(self):
        clock = FakeClock()
        policy = RestartPolicy(crash_limit=3, window=60, backoff_base=0.5, clock=clock)

        policy.record_crash()
        policy.record_crash()
        clock.now += 61
        assert policy.recent_crashes == 0
        assert policy.record_crash() == 0.5

    def test_reset(self):
        policy = RestartPolicy(crash_limit=2, clock=FakeClock())
        policy.record_crash()
        policy.reset()
        assert policy.recent_crashes == 0
        assert policy.record_crash() is not None


class TestProcessSupervisor:
    @pytest.mark.asyncio
    async def test_missing_executable(self):
        supervisor = ProcessSupervisor()
        with pytest.raises(SpawnError, match="not found"):
            await supervisor.spawn("definitely-not-a-zinc-server")
        assert supervisor.current is None

    @pytest.mark.asyncio
    async def test_missing_working_directory(self, tmp_path):
        supervisor = ProcessSupervisor()
        with pytest.raises(SpawnError, match="Working directory"):
            await supervisor.spawn(PYTHON, [STUB_SERVER], cwd=str(tmp_path / "missing"))

    @pytest.mark.asyncio
    async def test_unexpected_exit_reports_crash_once(self):
        crashed = asyncio.Event()
        on_crash = mock.MagicMock(side_effect=lambda server: crashed.set())
        supervisor = ProcessSupervisor(on_crash=on_crash)

        connection = await supervisor.spawn(PYTHON, [STUB_SERVER, "--crash-on-start", "3"])
        await asyncio.wait_for(crashed.wait(), timeout=10)

        on_crash.assert_called_once()
        server = on_crash.call_args.args[0]
        assert server.returncode == 3
        assert server.instance_id == connection.instance_id
        assert connection.closed
        assert not supervisor.is_running
        await supervisor.terminate()

    @pytest.mark.asyncio
    async def test_terminate_closes_stdin_first(self):
        on_crash = mock.MagicMock()
        supervisor = ProcessSupervisor(on_crash=on_crash)

        await supervisor.spawn(PYTHON, [STUB_SERVER])
        assert supervisor.is_running
        returncode = await supervisor.terminate(timeout=10)

        assert returncode == 0
        assert supervisor.current is None
        assert supervisor.connection is None
        on_crash.assert_not_called()

    @posix_only
    @pytest.mark.asyncio
    async def test_terminate_escalates_to_signal(self):
        on_crash = mock.MagicMock()
        supervisor = ProcessSupervisor(on_crash=on_crash)

        await supervisor.spawn(PYTHON, [STUB_SERVER, "--ignore-eof"])
        returncode = await supervisor.terminate(timeout=0.5)

        assert returncode is not None and returncode < 0
        on_crash.assert_not_called()

    @pytest.mark.asyncio
    async def test_graceful_shutdown(self):
        on_crash = mock.MagicMock()
        supervisor = ProcessSupervisor(on_crash=on_crash)

        connection = await supervisor.spawn(PYTHON, [STUB_SERVER])
        session = RpcSession(connection.reader, connection.writer, default_timeout=10)
        session.start()

        assert await supervisor.shutdown(session, grace_period=10) is True
        session.close()
        assert await supervisor.terminate(timeout=10) == 0
        on_crash.assert_not_called()

    @pytest.mark.asyncio
    async def test_shutdown_without_session(self):
        supervisor = ProcessSupervisor()
        assert await supervisor.shutdown(None, grace_period=1) is False

    @pytest.mark.asyncio
    async def test_instance_ids_increase(self):
        supervisor = ProcessSupervisor()

        first = await supervisor.spawn(PYTHON, [STUB_SERVER])
        await supervisor.terminate(timeout=10)
        second = await supervisor.spawn(PYTHON, [STUB_SERVER])
        await supervisor.terminate(timeout=10)

        assert second.instance_id > first.instance_id
