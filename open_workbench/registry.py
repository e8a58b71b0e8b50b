"""Execution registry.

Live executions are keyed by an opaque id and own their process handle. Once
an execution is torn down it leaves the live map and is kept as a finished
record for a retention period so its status and output stay readable.
"""

import asyncio
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from open_workbench.runner import ProcessRunner

logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    TIMED_OUT = "timed_out"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Execution:
    id: str
    command: str
    working_directory: str
    runner: ProcessRunner = field(repr=False)
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    exit_code: Optional[int] = None
    # Set by the teardown path that won (stop or timeout); None for natural exit.
    outcome: Optional[ExecutionStatus] = None
    stdout: bytearray = field(default_factory=bytearray, repr=False)
    stderr: bytearray = field(default_factory=bytearray, repr=False)
    watchdog: Optional[asyncio.TimerHandle] = field(default=None, repr=False)
    pump_task: Optional[asyncio.Task] = field(default=None, repr=False)
    log_path: Optional[str] = field(default=None, repr=False)
    # Set while the pump is collecting output; holds status at running.
    draining: bool = field(default=False, repr=False)

    @property
    def status(self) -> ExecutionStatus:
        if self.outcome is not None:
            return self.outcome
        code = self.runner.returncode
        if code is None:
            code = self.exit_code
        if code is None or self.draining:
            return ExecutionStatus.RUNNING
        return ExecutionStatus.COMPLETED if code == 0 else ExecutionStatus.FAILED


def _generate_id() -> str:
    return secrets.token_hex(16)


class ExecutionRegistry:
    """Thread-safe map of execution id to live process handle."""

    def __init__(self, finished_retention: float = 300):
        self.finished_retention = finished_retention
        self._live: dict[str, Execution] = {}
        self._finished: dict[str, Execution] = {}
        self._lock = threading.Lock()

    def register(
        self, runner: ProcessRunner, command: str, working_directory: str
    ) -> Execution:
        with self._lock:
            self._prune_finished()
            execution_id = _generate_id()
            while execution_id in self._live or execution_id in self._finished:
                execution_id = _generate_id()
            execution = Execution(
                id=execution_id,
                command=command,
                working_directory=working_directory,
                runner=runner,
            )
            self._live[execution_id] = execution
        logger.debug("Registered execution %s (pid %s)", execution_id, runner.pid)
        return execution

    def lookup(self, execution_id: str) -> Optional[ProcessRunner]:
        with self._lock:
            execution = self._live.get(execution_id)
        # An exited shell is already being torn down.
        if execution is None or execution.runner.returncode is not None:
            return None
        return execution.runner

    def get(self, execution_id: str) -> Optional[Execution]:
        """Return the live or finished execution for *execution_id*."""
        with self._lock:
            self._prune_finished()
            return self._live.get(execution_id) or self._finished.get(execution_id)

    def remove(
        self, execution_id: str, outcome: Optional[ExecutionStatus] = None
    ) -> Optional[Execution]:
        """Take *execution_id* out of the live map.

        Only the first caller gets the execution back; everyone after that
        (and any caller with an unknown id) gets None.
        """
        with self._lock:
            execution = self._live.pop(execution_id, None)
            if execution is None:
                return None
            execution.outcome = outcome
            execution.finished_at = time.time()
            self._prune_finished()
            self._finished[execution_id] = execution
            return execution

    def append_output(self, execution_id: str, stream: str, data: bytes) -> None:
        with self._lock:
            execution = self._live.get(execution_id) or self._finished.get(
                execution_id
            )
            if execution is None:
                return
            buffer = execution.stdout if stream == "stdout" else execution.stderr
            buffer.extend(data)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._live)

    def live(self) -> list[Execution]:
        with self._lock:
            self._prune_finished()
            return list(self._live.values())

    def finished(self) -> list[Execution]:
        with self._lock:
            self._prune_finished()
            return list(self._finished.values())

    def _prune_finished(self) -> None:
        now = time.time()
        expired = [
            execution_id
            for execution_id, execution in self._finished.items()
            if execution.finished_at
            and now - execution.finished_at > self.finished_retention
        ]
        for execution_id in expired:
            del self._finished[execution_id]

    # Keep last: it shadows the builtin for annotations in the class body.
    def list(self) -> list[tuple[str, ExecutionStatus]]:
        with self._lock:
            self._prune_finished()
            return [(e.id, e.status) for e in self._live.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._live)
