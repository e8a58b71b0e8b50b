from typing import Optional

from open_workbench.output_log import read_log
from open_workbench.registry import Execution, ExecutionRegistry


def _summary(execution: Execution) -> dict:
    return {
        "id": execution.id,
        "command": execution.command,
        "status": execution.status.value,
        "exit_code": execution.exit_code,
        "created_at": execution.created_at,
        "finished_at": execution.finished_at,
    }


class ExecutionReporter:
    """Read-only projections of registry state for the HTTP layer."""

    def __init__(self, registry: ExecutionRegistry):
        self.registry = registry

    def list_executions(self, include_finished: bool = False) -> list[dict]:
        executions = self.registry.live()
        if include_finished:
            executions += self.registry.finished()
        return [_summary(e) for e in executions]

    def get_status(self, execution_id: str) -> Optional[dict]:
        execution = self.registry.get(execution_id)
        if execution is None:
            return None
        return {
            **_summary(execution),
            "stdout": bytes(execution.stdout).decode(errors="replace"),
            "stderr": bytes(execution.stderr).decode(errors="replace"),
            "log_path": execution.log_path,
        }

    async def read_output(
        self, execution_id: str, offset: int = 0, tail: Optional[int] = None
    ) -> Optional[dict]:
        execution = self.registry.get(execution_id)
        if execution is None:
            return None
        output, next_offset, truncated = await read_log(
            execution.log_path, offset=offset, tail=tail
        )
        return {
            "id": execution.id,
            "status": execution.status.value,
            "output": output,
            "truncated": truncated,
            "next_offset": next_offset,
        }
