from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

_resource: Any
try:
    import resource as _resource_module  # POSIX only
    _resource = _resource_module
except ImportError:  # pragma: no cover - platform specific
    _resource = None


@dataclass(frozen=True, slots=True)
class PlatformCapabilities:
    """Capability flags for enforcing limits on this host.

    Example:
        ```python
        caps = PlatformCapabilities(True, True, True, cpu_count=8)
        ```
    """

    supports_memory_limit: bool
    supports_cpu_limit: bool
    supports_timeout: bool
    cpu_count: int


def resource_module() -> Any:
    """Return the POSIX `resource` module, or None when unavailable.

    Example:
        ```python
        if resource_module() is None:
            print("limits unsupported")
        ```
    """
    return _resource


def platform_capabilities() -> PlatformCapabilities:
    """Return capability flags for the current platform.

    Example:
        ```python
        caps = platform_capabilities()
        ```
    """
    res = resource_module()
    return PlatformCapabilities(
        supports_memory_limit=res is not None and hasattr(res, "RLIMIT_AS"),
        supports_cpu_limit=res is not None and hasattr(res, "RLIMIT_CPU"),
        supports_timeout=True,
        cpu_count=os.cpu_count() or 1,
    )
