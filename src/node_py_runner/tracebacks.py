from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any

from .execution.types import SPAWN_ERROR_EXIT_CODE, TIMEOUT_EXIT_CODE, ExecutionResult

_ERROR_LINE = re.compile(r"^(?P<type>[A-Za-z_][\w.]*): (?P<message>.*)$")
_BARE_ERROR_LINE = re.compile(r"^(?P<type>[A-Za-z_][\w.]*(?:Error|Exception|Interrupt|Exit))$")
_MISSING_MODULE_PATTERNS = (
    re.compile(r"No module named ['\"](?P<name>[\w.]+)['\"]"),
    re.compile(r"No module named (?P<name>[\w.]+)"),
    re.compile(r"cannot import name ['\"]\w+['\"] from ['\"](?P<name>[\w.]+)['\"]"),
)
_FILE_LINE = re.compile(r'File "(?P<file>[^"]+)", line (?P<line>\d+)')
_TRACEBACK_START = "Traceback (most recent call last):"


@dataclass(slots=True)
class ErrorReport:
    """What could be recovered from a failed run's stderr.

    Every field is optional; an empty report is a valid result.

    Example:
        ```python
        report = ErrorReport(category="NameError", message="name 'x' is not defined", line_number=12)
        ```
    """

    category: str | None = None
    message: str | None = None
    line_number: int | None = None
    missing_dependencies: list[str] = field(default_factory=list)
    raw_traceback: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return the `pythonError` shape used in result records.

        Example:
            ```python
            ErrorReport(category="ValueError", message="bad").as_dict()["errorType"]  # "ValueError"
            ```
        """
        return {
            "errorType": self.category,
            "errorMessage": self.message,
            "lineNumber": self.line_number,
            "missingModules": list(self.missing_dependencies),
            "traceback": self.raw_traceback,
        }


def _line_number(stderr: str, script_name: str | None) -> int | None:
    """Return the innermost frame line, preferring frames from `script_name`.

    Example:
        ```python
        _line_number('  File "script.py", line 7, in <module>', "script.py")  # 7
        ```
    """
    frames = [(m.group("file"), int(m.group("line"))) for m in _FILE_LINE.finditer(stderr)]
    if not frames:
        return None
    if script_name:
        own = [line for file, line in frames if PurePath(file).name == script_name]
        if own:
            return own[-1]
    return frames[-1][1]


def interpret_stderr(stderr: str | None, script_name: str | None = None) -> ErrorReport:
    """Extract error type, message, line and missing modules from stderr.

    When `script_name` is given, the line number comes from the innermost
    frame in that file; otherwise from the innermost frame overall.

    Example:
        ```python
        report = interpret_stderr(
            'Traceback (most recent call last):\\n  File "script.py", line 3, in <module>\\n'
            "ModuleNotFoundError: No module named 'pandas'\\n"
        )
        report.missing_dependencies  # ["pandas"]
        ```
    """
    report = ErrorReport()
    if not stderr:
        return report

    # Python prints the exception line at column 0; frames and quoted source are indented.
    for line in stderr.splitlines():
        line = line.rstrip()
        match = _ERROR_LINE.match(line)
        if match:
            report.category = match.group("type")
            report.message = match.group("message").strip()
            break
        # Exceptions raised without arguments print only their name.
        bare = _BARE_ERROR_LINE.match(line)
        if bare:
            report.category = bare.group("type")
            break

    for pattern in _MISSING_MODULE_PATTERNS:
        for match in pattern.finditer(stderr):
            name = match.group("name").rstrip(".")
            if name and name not in report.missing_dependencies:
                report.missing_dependencies.append(name)

    report.line_number = _line_number(stderr, script_name)

    start = stderr.find(_TRACEBACK_START)
    if start != -1:
        report.raw_traceback = stderr[start:].strip()
    return report


def describe_failure(result: ExecutionResult, report: ErrorReport, timeout_seconds: float) -> str:
    """Build the human-readable `detailedError` text for a failed run.

    Example:
        ```python
        describe_failure(ExecutionResult(exit_code=1), ErrorReport(category="KeyError", message="'id'"), 60)
        # "Script failed with exit code 1. KeyError: 'id'"
        ```
    """
    if result.timed_out or result.exit_code == TIMEOUT_EXIT_CODE:
        return f"Script execution timed out after {timeout_seconds:g} seconds"
    if result.exit_code == SPAWN_ERROR_EXIT_CODE or result.spawn_error:
        return result.spawn_error or "Python executable could not be started"

    parts = [f"Script failed with exit code {result.exit_code}."]
    if report.category:
        parts.append(f"{report.category}: {report.message}" if report.message else report.category)
    if report.line_number is not None:
        parts.append(f"(line {report.line_number})")
    if report.missing_dependencies:
        packages = dict.fromkeys(name.split(".")[0] for name in report.missing_dependencies)
        parts.append(f"Install missing modules with: pip install {' '.join(packages)}")
    return " ".join(parts)
