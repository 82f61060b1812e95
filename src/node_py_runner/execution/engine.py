from __future__ import annotations

from typing import Callable, Protocol

from .types import ExecutionPlan, ExecutionResult

OutputListener = Callable[[str], None]


class ExecutionEngine(Protocol):
    async def execute(
        self,
        plan: ExecutionPlan,
        on_output: OutputListener | None = None,
    ) -> ExecutionResult:
        """Run one plan and return its normalized execution result.

        Example:
            ```python
            result = await engine.execute(plan)
            ```
        """
        ...
