from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass
from typing import Any

PARSE_MODES = ("none", "json", "lines", "smart")
CSV_DELIMITERS = (",", "\t", ";", "|")
# Lines after the header that must agree with its delimiter count.
CSV_CONSISTENCY_WINDOW = 5

_CLOSERS = {"{": "}", "[": "]"}


@dataclass(frozen=True, slots=True)
class ParseOptions:
    """Sub-options for the `json` and `smart` parse modes.

    Example:
        ```python
        opts = ParseOptions(allow_multiple_json=True, strip_surrounding_text=True)
        ```
    """

    allow_multiple_json: bool = False
    strip_surrounding_text: bool = False
    fallback_to_raw: bool = True


@dataclass(frozen=True, slots=True)
class ParsedOutput:
    """Structured view of a run's stdout.

    Example:
        ```python
        parsed = ParsedOutput(value={"a": 1}, succeeded=True, error=None, detected_format="json", method="json")
        ```
    """

    value: Any
    succeeded: bool
    error: str | None
    detected_format: str
    method: str


def extract_json_span(text: str) -> str | None:
    """Return the first balanced `{...}` or `[...]` span in `text`.

    Brackets inside JSON strings are ignored.

    Example:
        ```python
        extract_json_span('result: {"a": [1, 2]} done')  # '{"a": [1, 2]}'
        ```
    """
    start = next((i for i, ch in enumerate(text) if ch in _CLOSERS), None)
    if start is None:
        return None
    stack: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif stack and ch == stack[-1]:
            stack.pop()
            if not stack:
                return text[start:index + 1]
    return None


def _failure(stdout: str, message: str, detected_format: str, method: str, options: ParseOptions) -> ParsedOutput:
    """Build a failed parse, keeping raw stdout when the options ask for it.

    Example:
        ```python
        _failure("oops", "Invalid JSON", "text", "json", ParseOptions()).succeeded  # False
        ```
    """
    return ParsedOutput(
        value=stdout if options.fallback_to_raw else None,
        succeeded=False,
        error=message,
        detected_format=detected_format,
        method=method,
    )


def _parse_lines(stdout: str) -> list[str]:
    """Example:
        ```python
        _parse_lines("a\\n\\nb\\n")  # ["a", "b"]
        ```
    """
    return [line for line in stdout.splitlines() if line.strip()]


def _parse_json(stdout: str, options: ParseOptions, method: str) -> ParsedOutput:
    """Decode stdout as one JSON document, or one per line when allowed.

    Example:
        ```python
        _parse_json('{"a": 1}\\n{"a": 2}\\n', ParseOptions(), "json").value  # [{"a": 1}, {"a": 2}]
        ```
    """
    content = stdout.strip()
    if not content:
        return _failure(stdout, "No output to parse", "empty", method, options)

    if options.allow_multiple_json:
        values: list[Any] = []
        for line in content.splitlines():
            candidate = line.strip()
            if options.strip_surrounding_text:
                candidate = extract_json_span(candidate) or candidate
            if not candidate:
                continue
            try:
                values.append(json.loads(candidate))
            except json.JSONDecodeError:
                continue
        if len(values) == 1:
            return ParsedOutput(values[0], True, None, "json", method)
        if values:
            return ParsedOutput(values, True, None, "json", method)

    if options.strip_surrounding_text:
        content = extract_json_span(content) or content
    try:
        return ParsedOutput(json.loads(content), True, None, "json", method)
    except json.JSONDecodeError as exc:
        return _failure(stdout, f"Invalid JSON: {exc}", "text", method, options)


def _detect_delimiter(lines: list[str]) -> str | None:
    """Return the first delimiter whose count matches across the header and the window.

    Example:
        ```python
        _detect_delimiter(["a,b", "1,2"])  # ","
        ```
    """
    window = lines[1:1 + CSV_CONSISTENCY_WINDOW]
    for delimiter in CSV_DELIMITERS:
        expected = lines[0].count(delimiter)
        if expected == 0:
            continue
        if all(line.count(delimiter) == expected for line in window):
            return delimiter
    return None


def _parse_csv(lines: list[str]) -> list[dict[str, str]] | None:
    """Example:
        ```python
        _parse_csv(["name,age", "Ada,36"])  # [{"name": "Ada", "age": "36"}]
        ```
    """
    if len(lines) < 2:
        return None
    delimiter = _detect_delimiter(lines)
    if delimiter is None:
        return None
    reader = csv.reader(io.StringIO("\n".join(lines)), delimiter=delimiter)
    rows = list(reader)
    headers = [header.strip() for header in rows[0]]
    if not all(headers) or len(set(headers)) != len(headers):
        return None
    return [
        {header: value.strip() for header, value in zip(headers, row)}
        for row in rows[1:]
        if row
    ]


def _parse_smart(stdout: str, options: ParseOptions) -> ParsedOutput:
    """Try JSON, then CSV/TSV, then fall back to non-empty lines.

    Example:
        ```python
        _parse_smart("x\ny\n", ParseOptions()).method  # "smart_lines"
        ```
    """
    content = stdout.strip()
    if not content:
        return ParsedOutput([], True, None, "empty", "smart_lines")

    if content[0] in _CLOSERS:
        parsed = _parse_json(stdout, options, "smart_json")
        if parsed.succeeded:
            return parsed

    lines = _parse_lines(stdout)
    records = _parse_csv(lines)
    if records is not None:
        return ParsedOutput(records, True, None, "csv", "smart_csv")
    return ParsedOutput(lines, True, None, "lines", "smart_lines")


def parse_output(stdout: str, mode: str = "none", options: ParseOptions | None = None) -> ParsedOutput:
    """Classify and parse a run's stdout; never raises.

    Example:
        ```python
        parse_output('{"a": 1}', "json").value        # {"a": 1}
        parse_output("a,b\\n1,2", "smart").method      # "smart_csv"
        ```
    """
    opts = options or ParseOptions()
    try:
        if mode == "json":
            return _parse_json(stdout, opts, "json")
        if mode == "lines":
            lines = _parse_lines(stdout)
            return ParsedOutput(lines, True, None, "lines" if lines else "empty", "lines")
        if mode == "smart":
            return _parse_smart(stdout, opts)
        if mode == "none":
            return ParsedOutput(stdout, True, None, "text" if stdout.strip() else "empty", "none")
    except (ValueError, RecursionError, csv.Error) as exc:
        return _failure(stdout, f"Output parsing failed: {exc}", "text", mode, opts)
    return _failure(stdout, f"Unknown parse mode: {mode}", "text", mode, opts)
