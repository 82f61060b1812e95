from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from .identifiers import sanitize_identifier

logger = logging.getLogger(__name__)

MERGE_POLICIES = ("last_wins", "first_wins", "prefix")
SYSTEM_SOURCE_NAME = "system"


@dataclass(frozen=True, slots=True)
class EnvironmentSource:
    """One named set of credential-sourced variables.

    Example:
        ```python
        source = EnvironmentSource("prod", {"API_KEY": "abc"})
        ```
    """

    name: str
    values: Mapping[str, str]


@dataclass(slots=True)
class MergedEnvironment:
    """Result of folding several sources into one flat variable map.

    Example:
        ```python
        merged = MergedEnvironment(values={"API_KEY": "abc"}, provenance={"API_KEY": "prod"})
        ```
    """

    values: dict[str, str] = field(default_factory=dict)
    provenance: dict[str, str] | None = None


def _strip_quotes(value: str) -> str:
    """Example:
        ```python
        _strip_quotes('"secret"')  # "secret"
        ```
    """
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def parse_env_file(content: str) -> dict[str, str]:
    """Parse `.env`-style `KEY=VALUE` text into a dictionary.

    Comments, blank lines and an optional `export ` prefix are ignored;
    lines without `=` are skipped.

    Example:
        ```python
        parse_env_file("API_KEY=abc\\n# comment\\nexport DB='x=1'")
        # {"API_KEY": "abc", "DB": "x=1"}
        ```
    """
    values: dict[str, str] = {}
    for number, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            logger.debug("Skipping malformed env line %d", number)
            continue
        values[key] = _strip_quotes(value.strip())
    return values


def system_environment(names: Iterable[str], environ: Mapping[str, str] | None = None) -> EnvironmentSource:
    """Build a source from a whitelist of process environment variables.

    Names that are not set in the process environment are left out.

    Example:
        ```python
        source = system_environment(["HOME", "LANG"])
        ```
    """
    env = os.environ if environ is None else environ
    return EnvironmentSource(
        SYSTEM_SOURCE_NAME,
        {name: env[name] for name in names if name in env},
    )


def _source_prefix(name: str) -> str:
    """Return the upper-case prefix used by the `prefix` merge policy.

    Example:
        ```python
        _source_prefix("prod")  # "PROD"
        ```
    """
    return (sanitize_identifier(name, prefix="source") or "SOURCE").upper()


def merge_environment(
    sources: Sequence[EnvironmentSource],
    policy: str = "last_wins",
    track_provenance: bool = False,
) -> MergedEnvironment:
    """Fold environment sources, in order, into one map.

    `last_wins` lets later sources override earlier ones, `first_wins` keeps
    the first value seen and `prefix` namespaces every key as `{SOURCE}_{key}`.

    Example:
        ```python
        merged = merge_environment(
            [EnvironmentSource("a", {"K": "1"}), EnvironmentSource("b", {"K": "2"})],
            policy="first_wins",
        )
        merged.values  # {"K": "1"}
        ```
    """
    if policy not in MERGE_POLICIES:
        raise ValueError(f"merge policy must be one of {', '.join(MERGE_POLICIES)}")

    values: dict[str, str] = {}
    provenance: dict[str, str] = {}
    for source in sources:
        for key, value in source.values.items():
            target = f"{_source_prefix(source.name)}_{key}" if policy == "prefix" else str(key)
            if target in values:
                if policy == "first_wins":
                    continue
                logger.debug(
                    "Environment key %s from %s overrides %s",
                    target,
                    source.name,
                    provenance.get(target),
                )
            values[target] = str(value)
            provenance[target] = source.name

    return MergedEnvironment(values=values, provenance=provenance if track_provenance else None)
