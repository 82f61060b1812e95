from __future__ import annotations

import ast
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

from .errors import AssemblyError
from .identifiers import sanitize_identifier
from .serializer import to_python_literal

logger = logging.getLogger(__name__)

HEADER_LINES = (
    "#!/usr/bin/env python3",
    "# Auto-generated script for node-py-runner",
    "import json",
    "import sys",
)
USER_CODE_MARKER = "# User code starts here"

INPUT_ITEMS_VAR = "input_items"
ENV_VARS_VAR = "env_vars"
INPUT_FILES_VAR = "input_files"
OUTPUT_DIR_VAR = "output_dir"
RESERVED_NAMES = frozenset({INPUT_ITEMS_VAR, ENV_VARS_VAR, INPUT_FILES_VAR, OUTPUT_DIR_VAR, "json", "sys"})

_FUTURE_IMPORT = re.compile(r"^\s*from\s+__future__\s+import\s+\S.*$")
_LINE_BREAK = re.compile(r"\r\n|\r|\n")
_GENERATED_ASSIGNMENT = re.compile(r"^(?P<target>[^=]*?)\s*=\s*\S")
_VALID_TARGET = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(slots=True)
class ScriptSpec:
    """Everything needed to synthesize one runnable script.

    Example:
        ```python
        spec = ScriptSpec(user_code="print(len(input_items))", records=[{"id": 1}])
        ```
    """

    user_code: str
    records: Sequence[Mapping[str, Any]] = field(default_factory=list)
    env_vars: Mapping[str, str] = field(default_factory=dict)
    input_files: list[dict[str, Any]] | None = None
    output_dir: str | None = None
    include_input_items: bool = True
    include_env_vars_dict: bool = True
    inject_env_variables: bool = True
    inject_item_fields: bool = True


@dataclass(frozen=True, slots=True)
class AssembledScript:
    """Assembled script text plus the metadata collected while building it.

    `user_code_line` is the 1-based line where the user's code begins.

    Example:
        ```python
        script = assemble_script(ScriptSpec(user_code="print(1)"))
        script.text.splitlines()[script.user_code_line - 1]  # "print(1)"
        ```
    """

    text: str
    hoisted: tuple[str, ...]
    variables: tuple[str, ...]
    user_code_line: int


def _directive_text(node: ast.ImportFrom) -> str:
    """Render a `__future__` import statement as one normalized line.

    Example:
        ```python
        _directive_text(ast.parse("from __future__ import (\\n    annotations,\\n)").body[0])
        # "from __future__ import annotations"
        ```
    """
    names = ", ".join(
        f"{alias.name} as {alias.asname}" if alias.asname else alias.name for alias in node.names
    )
    return f"from __future__ import {names}"


def _string_index(line: str, byte_offset: int) -> int:
    """Convert an AST column (a UTF-8 byte offset) into a string index.

    Example:
        ```python
        _string_index("é = 1", 3)  # 2
        ```
    """
    return len(line.encode("utf-8")[:byte_offset].decode("utf-8", errors="ignore"))


def _hoist_by_line(lines: list[str]) -> tuple[list[str], str]:
    """Hoist single-line directives from code that does not parse.

    Example:
        ```python
        _hoist_by_line(["from __future__ import annotations", "x = ("])
        # (["from __future__ import annotations"], "x = (")
        ```
    """
    hoisted: list[str] = []
    kept: list[str] = []
    for line in lines:
        if _FUTURE_IMPORT.match(line):
            directive = " ".join(line.split())
            if directive not in hoisted:
                hoisted.append(directive)
            continue
        kept.append(line)
    return hoisted, "\n".join(kept)


def extract_future_imports(code: str) -> tuple[list[str], str]:
    """Pull `from __future__ import` statements out of user code.

    Whole statements are removed, including parenthesized and
    backslash-continued ones. Returns the deduplicated directives in
    first-seen order and the remaining code. Code that does not parse falls
    back to a line-by-line scan.

    Example:
        ```python
        hoisted, body = extract_future_imports("import os\\nfrom __future__ import annotations\\n")
        hoisted  # ["from __future__ import annotations"]
        ```
    """
    lines = _LINE_BREAK.split(code)
    try:
        tree = ast.parse(code)
    except (SyntaxError, ValueError, RecursionError):
        return _hoist_by_line(lines)

    directives = [
        node
        for node in tree.body
        if isinstance(node, ast.ImportFrom) and node.module == "__future__" and node.level == 0
    ]
    hoisted: list[str] = []
    for node in directives:
        directive = _directive_text(node)
        if directive not in hoisted:
            hoisted.append(directive)

    others = [
        (node.lineno - 1, (node.end_lineno or node.lineno) - 1)
        for node in tree.body
        if not any(node is directive for directive in directives)
    ]
    dropped: set[int] = set()
    for node in reversed(directives):
        first, last = node.lineno - 1, (node.end_lineno or node.lineno) - 1
        if not any(start <= last and end >= first for start, end in others):
            dropped.update(range(first, last + 1))
            continue
        # Another statement shares these lines (`;`), so only the directive is replaced.
        head = lines[first][:_string_index(lines[first], node.col_offset)]
        tail = lines[last][_string_index(lines[last], node.end_col_offset or 0):]
        lines[first] = f"{head}pass{tail}"
        for index in range(first + 1, last + 1):
            lines[index] = ""
    return hoisted, "\n".join(line for index, line in enumerate(lines) if index not in dropped)


def _assignment(name: str, value: Any, redact: bool) -> str:
    """Render one `name = literal` line.

    Example:
        ```python
        _assignment("count", 3, redact=False)  # "count = 3"
        ```
    """
    return f"{name} = {to_python_literal(value, redact)}"


def _named_assignments(
    values: Mapping[str, Any],
    prefix: str,
    redact: bool,
    taken: set[str],
) -> list[str]:
    """Render one assignment per usable key, skipping reserved and taken names.

    Example:
        ```python
        _named_assignments({"api key": "x"}, "var", redact=False, taken=set())
        # ["api_key = 'x'"]
        ```
    """
    lines: list[str] = []
    for key, value in values.items():
        name = sanitize_identifier(str(key), prefix=prefix)
        if name is None:
            logger.debug("Skipping variable for unusable name %r", key)
            continue
        if name in RESERVED_NAMES:
            logger.warning("Skipping variable %r: %s is reserved", key, name)
            continue
        if name in taken:
            logger.debug("Skipping duplicate variable %s from %r", name, key)
            continue
        taken.add(name)
        lines.append(_assignment(name, value, redact))
    return lines


def _reserved_block(spec: ScriptSpec, redact: bool) -> list[str]:
    """Build the variable block that sits between the header and the user code.

    Example:
        ```python
        _reserved_block(ScriptSpec(user_code="", include_env_vars_dict=False), redact=False)
        # ["", "# Input data", "input_items = []"]
        ```
    """
    lines: list[str] = []
    if spec.include_input_items:
        lines += ["", "# Input data", _assignment(INPUT_ITEMS_VAR, list(spec.records), redact)]
    if spec.include_env_vars_dict:
        lines += ["", "# Environment variables", _assignment(ENV_VARS_VAR, dict(spec.env_vars), redact)]

    taken: set[str] = set()
    if spec.inject_env_variables and spec.env_vars:
        env_lines = _named_assignments(spec.env_vars, "var", redact, taken)
        if env_lines:
            lines += ["", "# Environment variables as individual variables", *env_lines]
    if spec.inject_item_fields and spec.records:
        field_lines = _named_assignments(spec.records[0], "field", redact, taken)
        if field_lines:
            lines += ["", "# Individual variables from first input item", *field_lines]

    if spec.input_files is not None:
        lines += ["", "# Binary files from previous nodes", _assignment(INPUT_FILES_VAR, spec.input_files, False)]
    if spec.output_dir is not None:
        lines += ["", "# Directory for generated output files", _assignment(OUTPUT_DIR_VAR, spec.output_dir, False)]
    return lines


def validate_generated_lines(lines: Sequence[str]) -> None:
    """Reject generated assignments whose target is not a valid identifier.

    Example:
        ```python
        validate_generated_lines(["x = 1", "# comment"])  # passes
        validate_generated_lines([" = 1"])                # raises AssemblyError
        ```
    """
    for number, line in enumerate(lines, start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or stripped.startswith(("import ", "from ")):
            continue
        match = _GENERATED_ASSIGNMENT.match(line)
        if match is None or not _VALID_TARGET.match(match.group("target")):
            raise AssemblyError(f"Invalid assignment in generated script at line {number}: {line[:80]!r}")


def assemble_script(spec: ScriptSpec, redact: bool = False) -> AssembledScript:
    """Build the final script text for a run.

    Order is fixed: hoisted `__future__` imports, the header, the reserved
    variable block and finally the user's code.

    Example:
        ```python
        script = assemble_script(ScriptSpec(user_code="print(input_items)", records=[{"a": 1}]))
        print(script.text)
        ```
    """
    hoisted, body = extract_future_imports(spec.user_code)
    generated = [*hoisted, *HEADER_LINES, *_reserved_block(spec, redact), "", USER_CODE_MARKER]
    validate_generated_lines(generated)

    variables = tuple(
        line.split(" = ", 1)[0]
        for line in generated
        if " = " in line and not line.startswith("#")
    )
    text = "\n".join(generated) + "\n" + body
    if not text.endswith("\n"):
        text += "\n"
    return AssembledScript(
        text=text,
        hoisted=tuple(hoisted),
        variables=variables,
        user_code_line=len(generated) + 1,
    )


def write_script(directory: Path, text: str, name: str = "script.py") -> Path:
    """Write script text into a workspace directory.

    Example:
        ```python
        path = write_script(Path("/tmp/run"), "print('hi')\\n")
        ```
    """
    path = directory / name
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        raise AssemblyError(f"Could not write script to {path}: {exc}") from exc
    return path
