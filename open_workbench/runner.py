import asyncio
import logging
import os
import signal
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from open_workbench.exceptions import LaunchError

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str, bytes], Awaitable[None]]

_READ_CHUNK = 4096


class ProcessRunner(ABC):
    """Handle on a spawned command with separate stdout and stderr streams."""

    @abstractmethod
    async def read_output(self, on_output: OutputCallback) -> None:
        """Pump both streams into *on_output* until EOF.

        The callback receives ``("stdout" | "stderr", chunk)`` in the order the
        chunks arrive from the OS for each stream.
        """

    @abstractmethod
    def write_input(self, data: bytes) -> None:
        """Send *data* to the process's stdin."""

    @abstractmethod
    def kill(self, force: bool = False) -> None:
        """Terminate (SIGTERM) or kill (SIGKILL) the process group."""

    @abstractmethod
    async def wait(self) -> int:
        """Wait for the process to exit and return the exit code."""

    @abstractmethod
    def close(self) -> None:
        """Release pipes and other resources."""

    @property
    @abstractmethod
    def pid(self) -> int:
        """PID of the child process."""

    @property
    @abstractmethod
    def returncode(self) -> Optional[int]:
        """Exit code, or None while the process is alive."""


class PipeRunner(ProcessRunner):
    """Spawn a shell command with stdin/stdout/stderr pipes."""

    def __init__(self, command: str, cwd: str, env: dict | None):
        self._process: asyncio.subprocess.Process = None  # type: ignore[assignment]
        self._command = command
        self._cwd = cwd
        self._env = env

    async def start(self) -> None:
        self._process = await asyncio.create_subprocess_shell(
            self._command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.PIPE,
            cwd=self._cwd,
            env=self._env,
            start_new_session=True,
        )

    async def read_output(self, on_output: OutputCallback) -> None:
        async def read_stream(stream, label):
            while True:
                data = await stream.read(_READ_CHUNK)
                if not data:
                    break
                await on_output(label, data)

        await asyncio.gather(
            read_stream(self._process.stdout, "stdout"),
            read_stream(self._process.stderr, "stderr"),
        )

    def write_input(self, data: bytes) -> None:
        self._process.stdin.write(data)

    async def drain_input(self) -> None:
        await self._process.stdin.drain()

    def kill(self, force: bool = False) -> None:
        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            # The shell runs in its own session, so its pid is the group id.
            os.killpg(self._process.pid, sig)
        except ProcessLookupError:
            pass

    async def wait(self) -> int:
        await self._process.wait()
        return self._process.returncode

    def close(self) -> None:
        if self._process.stdin and not self._process.stdin.is_closing():
            self._process.stdin.close()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode


async def launch(
    working_directory: str, command: str, env: dict | None = None
) -> ProcessRunner:
    """Start *command* under the host shell rooted at *working_directory*.

    Raises LaunchError when the directory is unusable or the OS refuses to
    create the process.
    """
    if not os.path.isdir(working_directory):
        raise LaunchError(
            f"Working directory does not exist: {working_directory}",
            working_directory,
        )

    subprocess_env = {**os.environ, **env} if env else None
    runner = PipeRunner(command, working_directory, subprocess_env)
    try:
        await runner.start()
    except OSError as e:
        logger.warning("Failed to launch %r in %s: %s", command, working_directory, e)
        raise LaunchError(str(e), working_directory) from e
    return runner
