from __future__ import annotations

import keyword
import re

_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_]")
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def is_valid_identifier(name: str) -> bool:
    """Return True when `name` can be used as an assignment target.

    Example:
        ```python
        is_valid_identifier("api_key")  # True
        is_valid_identifier("class")    # False
        ```
    """
    return bool(_IDENTIFIER.match(name)) and not keyword.iskeyword(name)


def sanitize_identifier(name: str, prefix: str = "var") -> str | None:
    """Turn an arbitrary field or key name into a safe variable name.

    Returns None when the name carries no usable content and should be skipped.

    Example:
        ```python
        sanitize_identifier("api-key")      # "api_key"
        sanitize_identifier("123key")       # "var_123key"
        sanitize_identifier("   ")          # None
        ```
    """
    if not name or not name.strip():
        return None
    candidate = _INVALID_CHARS.sub("_", name.strip())
    if not (candidate[0].isalpha() or candidate[0] == "_") or keyword.iskeyword(candidate):
        candidate = f"{prefix}_{candidate}"
    if candidate in (prefix, f"{prefix}_"):
        return None
    return candidate
