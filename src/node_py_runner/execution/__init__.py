from .engine import ExecutionEngine
from .supervisor import ScriptSupervisor
from .types import (
    SPAWN_ERROR_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    ExecutionPlan,
    ExecutionResult,
    ResourceLimits,
)
from .workspace import Workspace

__all__ = [
    "ExecutionEngine",
    "ExecutionPlan",
    "ExecutionResult",
    "ResourceLimits",
    "ScriptSupervisor",
    "SPAWN_ERROR_EXIT_CODE",
    "TIMEOUT_EXIT_CODE",
    "Workspace",
]
