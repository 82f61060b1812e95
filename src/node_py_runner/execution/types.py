from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

# Outside the range of negative signal numbers reported for killed children.
TIMEOUT_EXIT_CODE = -124
SPAWN_ERROR_EXIT_CODE = -127


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    """Optional memory and CPU ceilings for one run.

    Example:
        ```python
        limits = ResourceLimits(memory_mb=256, cpu_percent=50)
        ```
    """

    memory_mb: int | None = None
    cpu_percent: int | None = None

    @property
    def enabled(self) -> bool:
        """Return True when at least one ceiling is set.

        Example:
            ```python
            ResourceLimits().enabled  # False
            ```
        """
        return self.memory_mb is not None or self.cpu_percent is not None


@dataclass(slots=True)
class ExecutionPlan:
    """Normalized request sent to an execution engine.

    Example:
        ```python
        plan = ExecutionPlan("python3", Path("/tmp/run/script.py"), Path("/tmp/run"), timeout_seconds=60)
        ```
    """

    executable: str
    script_path: Path
    working_directory: Path
    timeout_seconds: float
    environment: dict[str, str] = field(default_factory=dict)
    resource_limits: ResourceLimits | None = None


@dataclass(slots=True)
class ExecutionResult:
    """Normalized outcome returned by an execution engine.

    Example:
        ```python
        result = ExecutionResult(exit_code=0, stdout="ok\\n", stderr="")
        ```
    """

    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    signal_killed: bool = False
    spawn_error: str | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        """Return True only for an exit code of exactly 0.

        Example:
            ```python
            ExecutionResult(exit_code=0).succeeded  # True
            ```
        """
        return self.exit_code == 0
