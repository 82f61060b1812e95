from __future__ import annotations

import json
import platform
import sys
import time
from dataclasses import dataclass
from typing import Any, Mapping

from .files import Attachment
from .serializer import REDACTED_PLACEHOLDER

SCRIPT_ATTACHMENT = "script.py"
DIAGNOSTICS_ATTACHMENT = "diagnostics.json"


@dataclass(frozen=True, slots=True)
class DiagnosticsOptions:
    """Independent diagnostic capabilities that can be combined freely.

    Example:
        ```python
        opts = DiagnosticsOptions(collect_timing=True, export_artifacts=True)
        ```
    """

    collect_timing: bool = False
    collect_environment: bool = False
    validate_only: bool = False
    export_artifacts: bool = False
    redact_sensitive: bool = True

    @property
    def enabled(self) -> bool:
        """Return True when any diagnostic data should be collected.

        Example:
            ```python
            DiagnosticsOptions().enabled  # False
            ```
        """
        return self.collect_timing or self.collect_environment or self.validate_only or self.export_artifacts


def check_syntax(source: str, filename: str = SCRIPT_ATTACHMENT) -> dict[str, Any] | None:
    """Compile `source` without running it and describe any syntax error.

    Example:
        ```python
        check_syntax("x = (")  # {"errorType": "SyntaxError", "errorMessage": ..., "lineNumber": 1}
        check_syntax("x = 1")  # None
        ```
    """
    try:
        compile(source, filename, "exec")
    except SyntaxError as exc:
        return {
            "errorType": type(exc).__name__,
            "errorMessage": exc.msg,
            "lineNumber": exc.lineno,
        }
    return None


class DiagnosticsCollector:
    """Stage diagnostic sections as a run progresses.

    Sections are added while the run moves through assembly, execution and
    cleanup, so data assembled before the run survives whatever happens later.

    Example:
        ```python
        diag = DiagnosticsCollector(DiagnosticsOptions(collect_timing=True))
        diag.mark("assembled")
        diag.stage("script", {"lines": 42})
        report = diag.as_dict()
        ```
    """

    def __init__(self, options: DiagnosticsOptions) -> None:
        """Start the timing clock for this run.

        Example:
            ```python
            diag = DiagnosticsCollector(DiagnosticsOptions())
            ```
        """
        self.options = options
        self._started = time.perf_counter()
        self._timings: dict[str, float] = {}
        self._sections: dict[str, Any] = {}
        self._notes: list[str] = []

    def mark(self, event: str) -> None:
        """Record the elapsed milliseconds at a named point of the run.

        Example:
            ```python
            diag.mark("process_exited")
            ```
        """
        if self.options.collect_timing:
            self._timings[event] = round((time.perf_counter() - self._started) * 1000, 3)

    def stage(self, section: str, data: Any) -> None:
        """Store one diagnostic section, replacing any earlier value.

        Example:
            ```python
            diag.stage("limits", {"memory_bytes": 268435456})
            ```
        """
        self._sections[section] = data

    def note(self, message: str) -> None:
        """Add a free-form note such as an unenforced limit.

        Example:
            ```python
            diag.note("CPU limit requested but not enforceable on this platform")
            ```
        """
        self._notes.append(message)

    def snapshot_environment(
        self,
        executable: str,
        env_values: Mapping[str, str],
        provenance: Mapping[str, str] | None,
    ) -> None:
        """Record interpreter, platform and variable provenance.

        Values are replaced by a placeholder when redaction is on.

        Example:
            ```python
            diag.snapshot_environment("python3", {"API_KEY": "abc"}, {"API_KEY": "prod"})
            ```
        """
        if not self.options.collect_environment:
            return
        redact = self.options.redact_sensitive
        self.stage(
            "environment",
            {
                "executable": executable,
                "host_python": sys.version.split()[0],
                "platform": platform.platform(),
                "variables": {
                    name: {
                        "source": (provenance or {}).get(name),
                        "value": REDACTED_PLACEHOLDER if redact else value,
                    }
                    for name, value in env_values.items()
                },
            },
        )

    def as_dict(self) -> dict[str, Any]:
        """Return everything collected so far.

        Example:
            ```python
            report = diag.as_dict()
            report["timing_ms"]
            ```
        """
        report: dict[str, Any] = dict(self._sections)
        if self.options.collect_timing:
            report["timing_ms"] = dict(self._timings)
        if self._notes:
            report["notes"] = list(self._notes)
        return report

    def export_attachments(self, script_text: str | None) -> list[Attachment]:
        """Build the script and diagnostics attachments for export.

        Example:
            ```python
            attachments = diag.export_attachments("print(1)\\n")
            [a.filename for a in attachments]  # ["script.py", "diagnostics.json"]
            ```
        """
        if not self.options.export_artifacts:
            return []
        attachments: list[Attachment] = []
        if script_text is not None:
            attachments.append(
                Attachment(
                    key="script",
                    filename=SCRIPT_ATTACHMENT,
                    mime_type="text/x-python",
                    data=script_text.encode("utf-8"),
                )
            )
        attachments.append(
            Attachment(
                key="diagnostics",
                filename=DIAGNOSTICS_ATTACHMENT,
                mime_type="application/json",
                data=json.dumps(self.as_dict(), indent=2, default=str).encode("utf-8"),
            )
        )
        return attachments
