from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from .execution.types import ExecutionResult
from .files import Attachment
from .parsing import ParsedOutput
from .tracebacks import ErrorReport

SUCCESS_CHANNEL = "success"
ERROR_CHANNEL = "error"
SEPARATE_ITEM_KEY = "input_item"
SEPARATE_ITEMS_KEY = "input_items"


@dataclass(slots=True)
class ResultItem:
    """One emitted output entry: JSON data plus optional binary attachments.

    Example:
        ```python
        item = ResultItem(json={"exitCode": 0, "success": True})
        ```
    """

    json: dict[str, Any]
    binary: dict[str, Attachment] = field(default_factory=dict)


@dataclass(slots=True)
class NodeOutput:
    """The two logical output channels of a node execution.

    Example:
        ```python
        output = NodeOutput()
        output.success.append(ResultItem(json={"exitCode": 0}))
        ```
    """

    success: list[ResultItem] = field(default_factory=list)
    error: list[ResultItem] = field(default_factory=list)

    def extend(self, other: "NodeOutput") -> None:
        """Append another output's items, keeping channel order.

        Example:
            ```python
            output.extend(other_output)
            ```
        """
        self.success.extend(other.success)
        self.error.extend(other.error)

    def channel(self, name: str) -> list[ResultItem]:
        """Return the item list for a channel name.

        Example:
            ```python
            output.channel("error")
            ```
        """
        if name == SUCCESS_CHANNEL:
            return self.success
        if name == ERROR_CHANNEL:
            return self.error
        raise ValueError(f"Unknown channel: {name}")


def build_result_record(
    result: ExecutionResult,
    *,
    input_count: int,
    parsed: ParsedOutput | None = None,
    error_report: ErrorReport | None = None,
    detailed_error: str | None = None,
    diagnostics: Mapping[str, Any] | None = None,
    executed_at: datetime | None = None,
) -> dict[str, Any]:
    """Merge execution, parsing and error data into one result record.

    Parsing fields appear only when a parse mode was requested; error
    fields only when the run failed.

    Example:
        ```python
        record = build_result_record(ExecutionResult(exit_code=0, stdout="hi\\n"), input_count=1)
        record["success"]  # True
        ```
    """
    succeeded = result.exit_code == 0
    record: dict[str, Any] = {
        "exitCode": result.exit_code,
        "stdout": result.stdout,
        "stderr": result.stderr,
        "success": succeeded,
        "error": None if succeeded else (detailed_error or result.spawn_error or "Script execution failed"),
        "timedOut": result.timed_out,
        "inputItemsCount": input_count,
        "executedAt": (executed_at or datetime.now(timezone.utc)).isoformat(),
    }
    if parsed is not None:
        record.update(
            {
                "parsed_stdout": parsed.value,
                "parsing_success": parsed.succeeded,
                "parsing_error": parsed.error,
                "output_format": parsed.detected_format,
                "parsing_method": parsed.method,
            }
        )
    if not succeeded:
        if error_report is not None:
            record["pythonError"] = error_report.as_dict()
        if detailed_error:
            record["detailedError"] = detailed_error
    if diagnostics:
        record["diagnostics"] = dict(diagnostics)
    return record


def select_channel(exit_code: int | None) -> str:
    """Pick the output channel for an exit code; only exactly 0 succeeds.

    Example:
        ```python
        select_channel(0)     # "success"
        select_channel(None)  # "error"
        ```
    """
    return SUCCESS_CHANNEL if exit_code == 0 else ERROR_CHANNEL


def apply_pass_through(
    record: dict[str, Any],
    inputs: Sequence[Mapping[str, Any]],
    mode: str,
    per_record: bool,
) -> list[dict[str, Any]]:
    """Attach original input data to a result record.

    `merge` copies input fields under the result (result fields win) and
    emits one entry per input, `separate` nests the input under a fixed key,
    and `multiple` emits the result followed by every input unchanged.

    Example:
        ```python
        apply_pass_through({"status": "ok"}, [{"status": "pending", "id": 7}], "merge", per_record=True)
        # [{"status": "ok", "id": 7}]
        ```
    """
    if mode == "merge":
        if not inputs:
            return [record]
        return [{**copy.deepcopy(dict(item)), **record} for item in inputs]
    if mode == "separate":
        if per_record:
            nested: Any = copy.deepcopy(dict(inputs[0])) if inputs else None
            return [{**record, SEPARATE_ITEM_KEY: nested}]
        return [{**record, SEPARATE_ITEMS_KEY: copy.deepcopy([dict(item) for item in inputs])}]
    if mode == "multiple":
        return [record, *(copy.deepcopy(dict(item)) for item in inputs)]
    raise ValueError(f"Unknown pass-through mode: {mode}")


def route(
    record: dict[str, Any],
    exit_code: int | None,
    *,
    inputs: Sequence[Mapping[str, Any]] = (),
    pass_through_mode: str | None = None,
    per_record: bool = False,
    attachments: Sequence[Attachment] = (),
    force_channel: str | None = None,
) -> NodeOutput:
    """Place a result record, plus pass-through entries, on its channel.

    Attachments are carried by the result entry only.

    Example:
        ```python
        output = route({"exitCode": 1}, 1)
        len(output.error)  # 1
        ```
    """
    channel = force_channel or select_channel(exit_code)
    entries = [record] if pass_through_mode is None else apply_pass_through(record, inputs, pass_through_mode, per_record)
    binary = {attachment.key: attachment for attachment in attachments}
    output = NodeOutput()
    target = output.channel(channel)
    for index, entry in enumerate(entries):
        target.append(ResultItem(json=entry, binary=binary if index == 0 else {}))
    return output
