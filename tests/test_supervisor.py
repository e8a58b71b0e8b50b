"""Lifecycle tests against real shell processes.

These tests use asyncio.run() directly so they need no async plugin.
"""

import asyncio
import json
import os
import secrets

import pytest

from open_workbench.exceptions import LaunchError
from open_workbench.registry import ExecutionRegistry, ExecutionStatus
from open_workbench.reporter import ExecutionReporter
from open_workbench.supervisor import LifecycleSupervisor


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def _supervisor(timeout=30, log_dir=None):
    return LifecycleSupervisor(ExecutionRegistry(), timeout=timeout, log_dir=log_dir)


async def _wait_gone(supervisor, execution_id, limit=5.0):
    deadline = asyncio.get_running_loop().time() + limit
    while supervisor.registry.lookup(execution_id) is not None:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"{execution_id} still registered after {limit}s")
        await asyncio.sleep(0.05)


class TestStart:

    def test_start_lists_execution_immediately(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            execution = await supervisor.start(str(tmp_path), "sleep 5")
            listed = dict(supervisor.registry.list())
            await supervisor.shutdown()
            return execution.id, listed

        execution_id, listed = asyncio.run(scenario())
        assert listed[execution_id] == ExecutionStatus.RUNNING

    def test_sleep_then_echo_scenario(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            execution = await supervisor.start(str(tmp_path), "sleep 1 && echo done")
            running = dict(supervisor.registry.list()).get(execution.id)
            await asyncio.sleep(1.2)
            await _wait_gone(supervisor, execution.id)
            await execution.pump_task
            return execution, running, supervisor

        execution, running, supervisor = asyncio.run(scenario())
        assert running == ExecutionStatus.RUNNING
        assert execution.id not in dict(supervisor.registry.list())
        assert execution.status == ExecutionStatus.COMPLETED
        assert bytes(execution.stdout) == b"done\n"
        assert execution.exit_code == 0

    def test_nonzero_exit_is_recorded_as_failed(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            execution = await supervisor.start(str(tmp_path), "echo boom >&2; exit 3")
            await execution.pump_task
            return execution

        execution = asyncio.run(scenario())
        assert execution.status == ExecutionStatus.FAILED
        assert execution.exit_code == 3
        assert bytes(execution.stderr) == b"boom\n"

    def test_command_runs_in_working_directory(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            execution = await supervisor.start(str(tmp_path), "pwd")
            await execution.pump_task
            return execution

        execution = asyncio.run(scenario())
        assert bytes(execution.stdout).decode().strip() == os.path.realpath(tmp_path)

    def test_env_is_merged(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            execution = await supervisor.start(
                str(tmp_path), "echo $WORKBENCH_GREETING", env={"WORKBENCH_GREETING": "hi"}
            )
            await execution.pump_task
            return execution

        assert bytes(asyncio.run(scenario()).stdout) == b"hi\n"

    def test_missing_directory_raises_launch_error(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            with pytest.raises(LaunchError):
                await supervisor.start(str(tmp_path / "missing"), "echo hi")
            return supervisor

        supervisor = asyncio.run(scenario())
        assert supervisor.registry.list() == []

    def test_output_is_logged(self, tmp_path):
        log_dir = tmp_path / "logs"
        work = tmp_path / "work"
        work.mkdir()

        async def scenario():
            supervisor = _supervisor(log_dir=str(log_dir))
            execution = await supervisor.start(str(work), "echo logged")
            await execution.pump_task
            output = await ExecutionReporter(supervisor.registry).read_output(execution.id)
            return execution, output

        execution, output = asyncio.run(scenario())
        with open(execution.log_path) as f:
            records = [json.loads(line) for line in f]
        assert records[0]["type"] == "start"
        assert records[-1]["type"] == "end"
        assert records[-1]["exit_code"] == 0
        assert output["output"] == [{"type": "stdout", "data": "logged\n"}]
        assert output["next_offset"] == 1


class TestStop:

    def test_stop_kills_and_removes(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            execution = await supervisor.start(str(tmp_path), "sleep 30")
            stopped = await supervisor.stop(execution.id)
            return supervisor, execution, stopped

        supervisor, execution, stopped = asyncio.run(scenario())
        assert stopped is True
        assert supervisor.registry.lookup(execution.id) is None
        assert execution.status == ExecutionStatus.STOPPED
        assert not _alive(execution.runner.pid)

    def test_stop_is_idempotent(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            execution = await supervisor.start(str(tmp_path), "sleep 30")
            kills = []
            original_kill = execution.runner.kill

            def counting_kill(force=False):
                kills.append(force)
                original_kill(force=force)

            execution.runner.kill = counting_kill
            first = await supervisor.stop(execution.id)
            second = await supervisor.stop(execution.id)
            return first, second, kills

        first, second, kills = asyncio.run(scenario())
        assert first is True
        assert second is False
        assert kills == [True]

    def test_stop_unknown_id_is_noop(self):
        async def scenario():
            supervisor = _supervisor()
            return await supervisor.stop(secrets.token_hex(16)), supervisor

        result, supervisor = asyncio.run(scenario())
        assert result is False
        assert supervisor.registry.list() == []

    def test_stop_kills_whole_process_group(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            execution = await supervisor.start(str(tmp_path), "sleep 30 & echo $!; wait")
            while not execution.stdout:
                await asyncio.sleep(0.05)
            child_pid = int(bytes(execution.stdout).split()[0])
            await supervisor.stop(execution.id)
            await asyncio.sleep(0.2)
            return child_pid

        child_pid = asyncio.run(scenario())
        assert not _alive(child_pid) or _is_zombie(child_pid)

    def test_stop_racing_natural_exit(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            execution = await supervisor.start(str(tmp_path), "sleep 0.2")
            await asyncio.sleep(0.2)
            await supervisor.stop(execution.id)
            await execution.pump_task
            return supervisor, execution

        supervisor, execution = asyncio.run(scenario())
        assert supervisor.registry.lookup(execution.id) is None
        assert execution.status in (ExecutionStatus.STOPPED, ExecutionStatus.COMPLETED)
        assert execution.watchdog is None


def _is_zombie(pid: int) -> bool:
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().split()[2] == "Z"
    except OSError:
        return False


class TestTimeout:

    def test_timeout_kills_and_removes(self, tmp_path):
        async def scenario():
            supervisor = _supervisor(timeout=0.5)
            execution = await supervisor.start(str(tmp_path), "sleep 30")
            await asyncio.sleep(0.5)
            await _wait_gone(supervisor, execution.id, limit=2)
            await execution.pump_task
            return supervisor, execution

        supervisor, execution = asyncio.run(scenario())
        assert execution.id not in dict(supervisor.registry.list())
        assert execution.status == ExecutionStatus.TIMED_OUT
        assert not _alive(execution.runner.pid)

    def test_natural_exit_cancels_watchdog(self, tmp_path):
        async def scenario():
            supervisor = _supervisor(timeout=0.3)
            execution = await supervisor.start(str(tmp_path), "true")
            watchdog = execution.watchdog
            await execution.pump_task
            await asyncio.sleep(0.4)
            return execution, watchdog

        execution, watchdog = asyncio.run(scenario())
        assert watchdog.cancelled()
        assert execution.status == ExecutionStatus.COMPLETED


class TestShutdown:

    @pytest.mark.parametrize("count", [0, 1, 4])
    def test_shutdown_leaves_no_live_children(self, tmp_path, count):
        async def scenario():
            supervisor = _supervisor()
            executions = [
                await supervisor.start(str(tmp_path), "sleep 30") for _ in range(count)
            ]
            stopped = await supervisor.shutdown()
            return supervisor, executions, stopped

        supervisor, executions, stopped = asyncio.run(scenario())
        assert stopped == count
        assert supervisor.registry.list() == []
        assert not any(_alive(e.runner.pid) for e in executions)

    def test_shutdown_finishes_pumps_and_closes_logs(self, tmp_path):
        log_dir = tmp_path / "logs"
        work = tmp_path / "work"
        work.mkdir()

        async def scenario():
            supervisor = _supervisor(log_dir=str(log_dir))
            executions = [
                await supervisor.start(str(work), "sleep 30") for _ in range(2)
            ]
            await supervisor.shutdown()
            return executions

        executions = asyncio.run(scenario())
        for execution in executions:
            assert execution.pump_task.done()
            with open(execution.log_path) as f:
                records = [json.loads(line) for line in f]
            assert records[-1]["type"] == "end"
            assert records[-1]["status"] == "stopped"


def _dead(pid: int) -> bool:
    return not _alive(pid) or _is_zombie(pid)


async def _child_pid(execution) -> int:
    while not execution.stdout:
        await asyncio.sleep(0.02)
    return int(bytes(execution.stdout).split()[0])


async def _wait_dead(pid: int, limit: float = 2.0) -> bool:
    deadline = asyncio.get_running_loop().time() + limit
    while not _dead(pid):
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.05)
    return True


class TestShellExitsBeforeChildren:
    """The shell exits at once while a backgrounded child keeps the pipes."""

    COMMAND = "sleep 30 & echo $!"

    def test_exited_shell_is_not_looked_up(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            execution = await supervisor.start(str(tmp_path), self.COMMAND)
            seen = []
            while execution.runner.returncode is None:
                await asyncio.sleep(0.01)
            seen.append(supervisor.registry.lookup(execution.id))
            await _wait_gone(supervisor, execution.id, limit=2)
            await asyncio.wait_for(execution.pump_task, timeout=2)
            return supervisor, execution, seen

        supervisor, execution, seen = asyncio.run(scenario())
        assert seen == [None]
        assert supervisor.registry.list() == []
        assert execution.status == ExecutionStatus.COMPLETED

    def test_natural_exit_kills_leftover_children(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            execution = await supervisor.start(str(tmp_path), self.COMMAND)
            child_pid = await _child_pid(execution)
            await asyncio.wait_for(execution.pump_task, timeout=2)
            return await _wait_dead(child_pid)

        assert asyncio.run(scenario()) is True

    def test_stop_kills_leftover_children(self, tmp_path):
        async def scenario():
            supervisor = _supervisor()
            execution = await supervisor.start(str(tmp_path), self.COMMAND)
            child_pid = await _child_pid(execution)
            first = await supervisor.stop(execution.id)
            second = await supervisor.stop(execution.id)
            return child_pid, await _wait_dead(child_pid), second

        child_pid, dead, second = asyncio.run(scenario())
        assert dead, f"child {child_pid} survived stop"
        assert second is False

    def test_timeout_kills_leftover_children(self, tmp_path):
        async def scenario():
            supervisor = _supervisor(timeout=0.5)
            execution = await supervisor.start(str(tmp_path), self.COMMAND)
            child_pid = await _child_pid(execution)
            await asyncio.sleep(1.0)
            return supervisor, child_pid, await _wait_dead(child_pid)

        supervisor, child_pid, dead = asyncio.run(scenario())
        assert supervisor.registry.list() == []
        assert dead, f"child {child_pid} survived the timeout"

    @pytest.mark.parametrize("count", [1, 3])
    def test_shutdown_kills_leftover_children(self, tmp_path, count):
        async def scenario():
            supervisor = _supervisor()
            executions = [
                await supervisor.start(str(tmp_path), self.COMMAND) for _ in range(count)
            ]
            child_pids = [await _child_pid(e) for e in executions]
            await supervisor.shutdown()
            return supervisor, child_pids, [await _wait_dead(pid) for pid in child_pids]

        supervisor, child_pids, dead = asyncio.run(scenario())
        assert supervisor.registry.list() == []
        assert all(dead), f"children survived shutdown: {child_pids}"


class _LateOutputRunner:
    """Handle whose shell has exited while its pipes still hold output."""

    pid = 4242

    def __init__(self):
        self.returncode = None
        self.release = asyncio.Event()

    async def read_output(self, on_output):
        await self.release.wait()
        await on_output("stdout", b"late\n")

    async def wait(self):
        self.returncode = 0
        return 0

    def kill(self, force=False):
        pass

    def close(self):
        pass


class TestDraining:

    def test_status_stays_running_until_output_is_collected(self, tmp_path):
        runner = _LateOutputRunner()

        async def launcher(working_directory, command, env=None):
            return runner

        async def scenario():
            supervisor = LifecycleSupervisor(
                ExecutionRegistry(), timeout=30, launcher=launcher
            )
            execution = await supervisor.start(str(tmp_path), "echo late")
            await asyncio.sleep(0.05)
            before = execution.status
            runner.release.set()
            await execution.pump_task
            return execution, before

        execution, before = asyncio.run(scenario())
        assert before == ExecutionStatus.RUNNING
        assert execution.status == ExecutionStatus.COMPLETED
        assert bytes(execution.stdout) == b"late\n"
