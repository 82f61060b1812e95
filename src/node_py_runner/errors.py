from __future__ import annotations

from typing import Any


class NodeRunnerError(Exception):
    """Base class for errors raised by node-py-runner.

    Example:
        ```python
        raise NodeRunnerError("something went wrong")
        ```
    """


class AssemblyError(NodeRunnerError):
    """The script could not be synthesized or written to its workspace.

    Example:
        ```python
        raise AssemblyError("Invalid assignment target on generated line 7")
        ```
    """


class ScriptExecutionError(NodeRunnerError):
    """A run failed while the node is configured to stop on errors.

    Example:
        ```python
        raise ScriptExecutionError("Python script failed with exit code 1", record={"exitCode": 1})
        ```
    """

    def __init__(self, message: str, record: dict[str, Any] | None = None) -> None:
        """Keep the result record that describes the failure.

        Example:
            ```python
            err = ScriptExecutionError("boom", record={"exitCode": 2})
            ```
        """
        super().__init__(message)
        self.record = record or {}
