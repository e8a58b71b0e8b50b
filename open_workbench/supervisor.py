import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional

from open_workbench.output_log import ExecutionLog
from open_workbench.registry import Execution, ExecutionRegistry, ExecutionStatus
from open_workbench.runner import ProcessRunner, launch

logger = logging.getLogger(__name__)

Launcher = Callable[[str, str, Optional[dict]], Awaitable[ProcessRunner]]

_SHUTDOWN_DRAIN_SECONDS = 5


class LifecycleSupervisor:
    """Owns timeout, stop and shutdown teardown for registered executions.

    Every teardown path goes through ``ExecutionRegistry.remove``; whichever
    path removes the entry first is the one that signals the process; later
    attempts see ``None`` and do nothing.
    """

    def __init__(
        self,
        registry: ExecutionRegistry,
        timeout: float = 300,
        log_dir: Optional[str] = None,
        launcher: Launcher = launch,
    ):
        self.registry = registry
        self.timeout = timeout
        self.log_dir = log_dir
        self._launcher = launcher

    async def start(
        self, working_directory: str, command: str, env: Optional[dict] = None
    ) -> Execution:
        """Launch *command* and start tracking it. Raises LaunchError."""
        runner = await self._launcher(working_directory, command, env)
        execution = self.registry.register(runner, command, working_directory)
        if self.log_dir:
            execution.log_path = os.path.join(
                self.log_dir, "executions", f"{execution.id}.jsonl"
            )

        loop = asyncio.get_running_loop()
        execution.watchdog = loop.call_later(
            self.timeout, self._on_timeout, execution.id
        )
        execution.pump_task = asyncio.create_task(self._pump(execution))
        logger.info(
            "Started execution %s (pid %s) in %s: %s",
            execution.id,
            runner.pid,
            working_directory,
            command,
        )
        return execution

    async def stop(self, execution_id: str) -> bool:
        """Kill *execution_id* and wait until it is reaped.

        Returns False when there was nothing to stop; that is not an error.
        """
        execution = self._terminate(execution_id, ExecutionStatus.STOPPED)
        if execution is None:
            return False
        execution.exit_code = await execution.runner.wait()
        logger.info("Stopped execution %s", execution_id)
        return True

    async def wait_for(self, execution: Execution, timeout: float) -> None:
        """Wait up to *timeout* seconds for *execution* to finish."""
        if execution.pump_task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(execution.pump_task), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def shutdown(self) -> int:
        """Stop every live execution. Returns how many were stopped."""
        executions = self.registry.live()
        results = await asyncio.gather(*(self.stop(e.id) for e in executions))
        pumps = [e.pump_task for e in executions if e.pump_task is not None]
        if pumps:
            _, pending = await asyncio.wait(pumps, timeout=_SHUTDOWN_DRAIN_SECONDS)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        stopped = sum(1 for r in results if r)
        logger.info("Shutdown sweep stopped %d execution(s)", stopped)
        return stopped

    def _terminate(
        self, execution_id: str, outcome: ExecutionStatus
    ) -> Optional[Execution]:
        execution = self.registry.remove(execution_id, outcome)
        if execution is None:
            return None
        self._cancel_watchdog(execution)
        # The shell may be gone while children it backgrounded still run.
        execution.runner.kill(force=True)
        return execution

    def _on_timeout(self, execution_id: str) -> None:
        execution = self._terminate(execution_id, ExecutionStatus.TIMED_OUT)
        if execution is not None:
            logger.info(
                "Execution %s exceeded %ss and was killed", execution_id, self.timeout
            )

    @staticmethod
    def _cancel_watchdog(execution: Execution) -> None:
        if execution.watchdog is not None:
            execution.watchdog.cancel()
            execution.watchdog = None

    async def _pump(self, execution: Execution) -> None:
        """Accumulate output and tear down as soon as the shell exits."""
        log = ExecutionLog(execution.log_path) if execution.log_path else None
        if log:
            await log.open(execution.command, execution.runner.pid)

        async def on_output(stream: str, data: bytes) -> None:
            self.registry.append_output(execution.id, stream, data)
            if log:
                await log.write_output(stream, data)

        execution.draining = True
        reader = asyncio.create_task(execution.runner.read_output(on_output))
        try:
            exit_code = await execution.runner.wait()
            execution.exit_code = exit_code
            if self.registry.remove(execution.id) is not None:
                self._cancel_watchdog(execution)
                # Group members left behind by the shell would hold the pipes open.
                execution.runner.kill(force=True)
                logger.info(
                    "Execution %s exited with code %s", execution.id, exit_code
                )
            await reader
        finally:
            if not reader.done():
                reader.cancel()
                await asyncio.gather(reader, return_exceptions=True)
            execution.runner.close()
            execution.draining = False
            if log:
                await log.close(execution.exit_code, execution.status.value)
