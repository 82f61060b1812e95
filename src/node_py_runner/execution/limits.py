from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path

from .capabilities import PlatformCapabilities, platform_capabilities
from .types import ResourceLimits

logger = logging.getLogger(__name__)

WRAPPER_NAME = "limit_wrapper.py"

_WRAPPER_TEMPLATE = '''\
#!/usr/bin/env python3
# Auto-generated resource limit wrapper for node-py-runner
import resource
import runpy
import sys

SCRIPT_PATH = {script_path}
MEMORY_LIMIT_BYTES = {memory_bytes}
CPU_LIMIT_SECONDS = {cpu_seconds}


def _apply(kind, name, value):
    if value is None or not hasattr(resource, kind):
        return
    limit = getattr(resource, kind)
    try:
        _, hard = resource.getrlimit(limit)
        if hard not in (-1, resource.RLIM_INFINITY):
            value = min(value, hard)
        resource.setrlimit(limit, (value, hard))
    except (ValueError, OSError) as exc:
        sys.stderr.write(f"[resource-limits] {{name}} limit not applied: {{exc}}\\n")


_apply("RLIMIT_AS", "memory", MEMORY_LIMIT_BYTES)
_apply("RLIMIT_CPU", "cpu", CPU_LIMIT_SECONDS)

sys.argv = [SCRIPT_PATH]
runpy.run_path(SCRIPT_PATH, run_name="__main__")
'''


@dataclass(slots=True)
class LimitPlan:
    """Decision about how limits will be enforced for one run.

    `wrapper_source` is None when the script runs unwrapped; `notes` explains
    any limit that could not be enforced.

    Example:
        ```python
        plan = LimitPlan(wrapper_source=None, notes=["memory limit unsupported on this platform"])
        ```
    """

    wrapper_source: str | None = None
    memory_bytes: int | None = None
    cpu_seconds: int | None = None
    notes: list[str] = field(default_factory=list)


def memory_limit_bytes(memory_mb: int) -> int:
    """Convert a memory ceiling in megabytes to bytes.

    Example:
        ```python
        memory_limit_bytes(256)  # 268435456
        ```
    """
    return int(memory_mb) * 1024 * 1024


def cpu_time_budget(timeout_seconds: float, cores: int, cpu_percent: int) -> int:
    """Compute the CPU-time budget in whole seconds.

    The budget is `timeout * cores * percent / 100`, rounded up, at least 1.

    Example:
        ```python
        cpu_time_budget(60, 4, 50)  # 120
        ```
    """
    return max(1, math.ceil(timeout_seconds * max(1, cores) * cpu_percent / 100))


def build_limit_wrapper(script_path: Path, memory_bytes: int | None, cpu_seconds: int | None) -> str:
    """Render the wrapper that applies rlimits and then runs the user script.

    Example:
        ```python
        source = build_limit_wrapper(Path("/tmp/run/script.py"), memory_bytes=2**28, cpu_seconds=None)
        ```
    """
    return _WRAPPER_TEMPLATE.format(
        script_path=repr(str(script_path)),
        memory_bytes=repr(memory_bytes),
        cpu_seconds=repr(cpu_seconds),
    )


def plan_limits(
    script_path: Path,
    limits: ResourceLimits | None,
    timeout_seconds: float,
    capabilities: PlatformCapabilities | None = None,
) -> LimitPlan:
    """Decide whether and how to wrap a script with resource limits.

    Limits the platform cannot enforce are dropped and reported in `notes`;
    when none remain the script runs unwrapped.

    Example:
        ```python
        plan = plan_limits(Path("/tmp/run/script.py"), ResourceLimits(memory_mb=128), timeout_seconds=60)
        ```
    """
    if limits is None or not limits.enabled:
        return LimitPlan()

    caps = capabilities or platform_capabilities()
    plan = LimitPlan()
    if limits.memory_mb is not None:
        if caps.supports_memory_limit:
            plan.memory_bytes = memory_limit_bytes(limits.memory_mb)
        else:
            plan.notes.append("Memory limit requested but not enforceable on this platform")
    if limits.cpu_percent is not None:
        if caps.supports_cpu_limit:
            plan.cpu_seconds = cpu_time_budget(timeout_seconds, caps.cpu_count, limits.cpu_percent)
        else:
            plan.notes.append("CPU limit requested but not enforceable on this platform")

    for note in plan.notes:
        logger.warning(note)
    if plan.memory_bytes is None and plan.cpu_seconds is None:
        return plan

    plan.wrapper_source = build_limit_wrapper(script_path, plan.memory_bytes, plan.cpu_seconds)
    return plan
