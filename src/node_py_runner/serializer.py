from __future__ import annotations

import json
import math
from typing import Any

REDACTED_PLACEHOLDER = "***hidden***"


def _string_literal(value: str) -> str:
    """Example:
        ```python
        _string_literal("héllo")  # '"héllo"'
        ```
    """
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        # Lone surrogates cannot be written to a UTF-8 source file.
        return repr(value)
    return json.dumps(value, ensure_ascii=False)


def _float_literal(value: float) -> str:
    """Render floats, including NaN and infinities, as evaluable source.

    Example:
        ```python
        _float_literal(float("-inf"))  # '-float("inf")'
        ```
    """
    if math.isnan(value):
        return 'float("nan")'
    if math.isinf(value):
        return 'float("inf")' if value > 0 else '-float("inf")'
    return repr(value)


def to_python_literal(value: Any, redact: bool = False) -> str:
    """Serialize a JSON-compatible host value into a Python literal.

    With `redact=True` containers keep their shape while every non-null
    scalar is replaced by a placeholder string.

    Example:
        ```python
        to_python_literal({"flag": True, "n": None})   # '{"flag": True, "n": None}'
        to_python_literal({"token": "s3cret"}, redact=True)  # '{"token": "***hidden***"}'
        ```
    """
    if value is None:
        return "None"
    if isinstance(value, dict):
        entries = [
            f"{_string_literal(str(key))}: {to_python_literal(item, redact)}"
            for key, item in value.items()
        ]
        return "{" + ", ".join(entries) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(to_python_literal(item, redact) for item in value) + "]"
    if redact:
        return _string_literal(REDACTED_PLACEHOLDER)
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _float_literal(value)
    if isinstance(value, str):
        return _string_literal(value)
    return _string_literal(str(value))
