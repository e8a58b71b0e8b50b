import json
import os
import time
from typing import Optional

import aiofiles
import aiofiles.os


class ExecutionLog:
    """Append-only JSONL record of one execution's output.

    An I/O error disables the log for the rest of the execution; output keeps
    flowing into the registry either way.
    """

    def __init__(self, path: str):
        self.path = path
        self._file = None

    async def open(self, command: str, pid: int) -> None:
        try:
            await aiofiles.os.makedirs(os.path.dirname(self.path), exist_ok=True)
            self._file = await aiofiles.open(self.path, "a")
        except OSError:
            self._file = None
            return
        await self._write({"type": "start", "command": command, "pid": pid})

    async def write_output(self, stream: str, data: bytes) -> None:
        await self._write({"type": stream, "data": data.decode(errors="replace")})

    async def close(self, exit_code: Optional[int], status: str) -> None:
        await self._write({"type": "end", "exit_code": exit_code, "status": status})
        await self._discard()

    async def _write(self, record: dict) -> None:
        if self._file is None:
            return
        record["ts"] = time.time()
        try:
            await self._file.write(json.dumps(record) + "\n")
            await self._file.flush()
        except OSError:
            await self._discard()

    async def _discard(self) -> None:
        log_file, self._file = self._file, None
        if log_file is None:
            return
        try:
            await log_file.close()
        except OSError:
            pass


async def read_log(
    log_path: Optional[str],
    offset: int = 0,
    tail: Optional[int] = None,
) -> tuple[list[dict], int, bool]:
    """Read output entries from a JSONL log file.

    Returns (entries, next_offset, truncated).
    """
    entries: list[dict] = []
    if not log_path or not await aiofiles.os.path.isfile(log_path):
        return entries, 0, False

    async with aiofiles.open(log_path) as f:
        lines = await f.readlines()

    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if record.get("type") in ("stdout", "stderr"):
            entries.append({"type": record["type"], "data": record["data"]})

    total = len(entries)
    entries = entries[offset:]

    truncated = False
    if tail is not None and len(entries) > tail:
        entries = entries[-tail:]
        truncated = True

    return entries, total, truncated
