from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .diagnostics import DiagnosticsOptions
from .environment import MERGE_POLICIES
from .execution.types import ResourceLimits
from .parsing import PARSE_MODES, ParseOptions

EXECUTION_MODES = ("once", "per_record")
PASS_THROUGH_MODES = ("merge", "separate", "multiple")
ERROR_POLICIES = ("continue", "ignore", "raise")

MAX_TIMEOUT_MINUTES = 60
MEMORY_LIMIT_RANGE = (16, 65536)
CPU_PERCENT_RANGE = (1, 100)


def _default_config_path() -> Path:
    """Return bundled default config TOML path.

    Example:
        ```python
        path = _default_config_path()
        ```
    """
    return Path(__file__).with_name("default_config.toml")


def _read_config_toml(path: Path) -> dict[str, Any]:
    """Read config TOML and return the node table.

    Example:
        ```python
        raw = _read_config_toml(Path("/tmp/node.toml"))
        ```
    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    node = raw.get("node", raw)
    if not isinstance(node, dict):
        raise ValueError("Config must be a TOML table")
    return node


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings config field.

    Example:
        ```python
        names = _list_of_str(["HOME", "LANG"], "system_env_vars")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"'{field_name}' must be a list of strings")
    return list(value)


def _table(raw: dict[str, Any], name: str) -> dict[str, Any]:
    """Return a TOML sub-table, or an empty one when it is absent.

    Example:
        ```python
        _table({"parse": {"fallback_to_raw": True}}, "parse")  # {"fallback_to_raw": True}
        ```
    """
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ValueError(f"'{name}' must be a TOML table")
    return value


def _optional_int(value: Any) -> int | None:
    """Example:
        ```python
        _optional_int("512")  # 512
        ```
    """
    return None if value is None else int(value)


_DEFAULTS = _read_config_toml(_default_config_path())
_DEFAULT_PARSE = _table(_DEFAULTS, "parse")
_DEFAULT_DIAGNOSTICS = _table(_DEFAULTS, "diagnostics")


def _check_range(name: str, value: int | None, bounds: tuple[int, int]) -> None:
    """Raise ValueError when `value` falls outside the inclusive bounds.

    Example:
        ```python
        _check_range("cpu_limit_percent", 150, (1, 100))  # raises ValueError
        ```
    """
    if value is not None and not bounds[0] <= value <= bounds[1]:
        raise ValueError(f"{name} must be between {bounds[0]} and {bounds[1]}")


def _choice(name: str, value: str, choices: tuple[str, ...]) -> None:
    """Example:
        ```python
        _choice("parse_mode", "yaml", ("none", "json"))  # raises ValueError
        ```
    """
    if value not in choices:
        raise ValueError(f"{name} must be one of: {', '.join(choices)}")


@dataclass(slots=True)
class NodeConfig:
    """Configuration for one node execution.

    Example:
        ```python
        config = NodeConfig(parse_mode="smart", timeout_minutes=1, memory_limit_mb=256)
        ```
    """

    python_path: str = str(_DEFAULTS.get("python_path", "python3"))
    execution_mode: str = str(_DEFAULTS.get("execution_mode", "once"))
    timeout_minutes: float = float(_DEFAULTS.get("timeout_minutes", 5))
    memory_limit_mb: int | None = _optional_int(_DEFAULTS.get("memory_limit_mb"))
    cpu_limit_percent: int | None = _optional_int(_DEFAULTS.get("cpu_limit_percent"))
    parse_mode: str = str(_DEFAULTS.get("parse_mode", "none"))
    parse_options: ParseOptions = field(default_factory=lambda: ParseOptions(**_DEFAULT_PARSE))
    pass_through: bool = bool(_DEFAULTS.get("pass_through", False))
    pass_through_mode: str = str(_DEFAULTS.get("pass_through_mode", "merge"))
    on_error: str = str(_DEFAULTS.get("on_error", "continue"))
    env_merge_policy: str = str(_DEFAULTS.get("env_merge_policy", "last_wins"))
    system_env_vars: list[str] = field(
        default_factory=lambda: _list_of_str(_DEFAULTS.get("system_env_vars"), "system_env_vars")
    )
    include_input_items: bool = bool(_DEFAULTS.get("include_input_items", True))
    include_env_vars_dict: bool = bool(_DEFAULTS.get("include_env_vars_dict", True))
    inject_env_variables: bool = bool(_DEFAULTS.get("inject_env_variables", True))
    inject_item_fields: bool = bool(_DEFAULTS.get("inject_item_fields", True))
    expose_env_to_process: bool = bool(_DEFAULTS.get("expose_env_to_process", False))
    enable_file_processing: bool = bool(_DEFAULTS.get("enable_file_processing", False))
    enable_output_dir: bool = bool(_DEFAULTS.get("enable_output_dir", False))
    max_output_file_mb: int = int(_DEFAULTS.get("max_output_file_mb", 50))
    diagnostics: DiagnosticsOptions = field(
        default_factory=lambda: DiagnosticsOptions(**_DEFAULT_DIAGNOSTICS)
    )
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate modes and bounds after dataclass initialization.

        Example:
            ```python
            NodeConfig(execution_mode="per_record")
            ```
        """
        _choice("execution_mode", self.execution_mode, EXECUTION_MODES)
        _choice("parse_mode", self.parse_mode, PARSE_MODES)
        _choice("pass_through_mode", self.pass_through_mode, PASS_THROUGH_MODES)
        _choice("on_error", self.on_error, ERROR_POLICIES)
        _choice("env_merge_policy", self.env_merge_policy, MERGE_POLICIES)
        if not 0 < self.timeout_minutes <= MAX_TIMEOUT_MINUTES:
            raise ValueError(f"timeout_minutes must be greater than 0 and at most {MAX_TIMEOUT_MINUTES}")
        _check_range("memory_limit_mb", self.memory_limit_mb, MEMORY_LIMIT_RANGE)
        _check_range("cpu_limit_percent", self.cpu_limit_percent, CPU_PERCENT_RANGE)
        if not self.python_path.strip():
            raise ValueError("python_path must not be empty")

    @property
    def timeout_seconds(self) -> float:
        """Return the timeout in seconds.

        Example:
            ```python
            NodeConfig(timeout_minutes=2).timeout_seconds  # 120.0
            ```
        """
        return self.timeout_minutes * 60

    @property
    def resource_limits(self) -> ResourceLimits:
        """Return the configured resource ceilings.

        Example:
            ```python
            NodeConfig(memory_limit_mb=128).resource_limits.memory_mb  # 128
            ```
        """
        return ResourceLimits(memory_mb=self.memory_limit_mb, cpu_percent=self.cpu_limit_percent)

    @classmethod
    def from_file(cls, config_path: str) -> "NodeConfig":
        """Create a config instance from a TOML file.

        Missing keys fall back to the bundled defaults.

        Example:
            ```python
            config = NodeConfig.from_file("/tmp/node.toml")
            ```
        """
        raw = _read_config_toml(Path(config_path))
        merged = {**_DEFAULTS, **raw}
        return cls(
            python_path=str(merged["python_path"]),
            execution_mode=str(merged["execution_mode"]),
            timeout_minutes=float(merged["timeout_minutes"]),
            memory_limit_mb=_optional_int(merged.get("memory_limit_mb")),
            cpu_limit_percent=_optional_int(merged.get("cpu_limit_percent")),
            parse_mode=str(merged["parse_mode"]),
            parse_options=ParseOptions(**{**_DEFAULT_PARSE, **_table(raw, "parse")}),
            pass_through=bool(merged["pass_through"]),
            pass_through_mode=str(merged["pass_through_mode"]),
            on_error=str(merged["on_error"]),
            env_merge_policy=str(merged["env_merge_policy"]),
            system_env_vars=_list_of_str(merged.get("system_env_vars"), "system_env_vars"),
            include_input_items=bool(merged["include_input_items"]),
            include_env_vars_dict=bool(merged["include_env_vars_dict"]),
            inject_env_variables=bool(merged["inject_env_variables"]),
            inject_item_fields=bool(merged["inject_item_fields"]),
            expose_env_to_process=bool(merged["expose_env_to_process"]),
            enable_file_processing=bool(merged["enable_file_processing"]),
            enable_output_dir=bool(merged["enable_output_dir"]),
            max_output_file_mb=int(merged["max_output_file_mb"]),
            diagnostics=DiagnosticsOptions(**{**_DEFAULT_DIAGNOSTICS, **_table(raw, "diagnostics")}),
            config_path=config_path,
        )
