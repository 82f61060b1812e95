from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.pretty import Pretty
from rich.syntax import Syntax
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter

from node_py_runner import EnvironmentSource, NodeConfig, NodeOutput, parse_env_file, run_python_sync
from node_py_runner.assembler import ScriptSpec, assemble_script
from node_py_runner.config import EXECUTION_MODES, PASS_THROUGH_MODES
from node_py_runner.execution.capabilities import platform_capabilities
from node_py_runner.parsing import PARSE_MODES
from node_py_runner.runner import resolve_environment, unwrap_item

_CONSOLE = Console(no_color=False)


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m npr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def _add_input_arguments(parser: argparse.ArgumentParser) -> None:
    """Add the code, items and env-file arguments shared by subcommands.

    Example:
        ```python
        _add_input_arguments(parser)
        ```
    """
    parser.add_argument("code_file", help="Path to the Python file with the user code.")
    parser.add_argument(
        "--items",
        help="JSON file with the input items (a list of objects, or one object).",
    )
    parser.add_argument(
        "--env-file",
        action="append",
        default=[],
        metavar="[NAME=]PATH",
        help=(
            "Credential source in .env format. Repeat for several sources.\n"
            "The source name defaults to the file stem."
        ),
    )
    parser.add_argument("--config", help="Node config TOML file ([node] table).")


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for node-py-runner.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m npr",
        description=(
            "node-py-runner CLI\n"
            "Run workflow Python snippets the same way the node does:\n"
            "inject items and credentials, supervise the process, parse stdout."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m npr run job.py --items items.json --parse smart\n"
            "  python -m npr run job.py --env-file prod=.env --mode per_record\n"
            "  python -m npr template job.py --items items.json\n"
            "  python -m npr capabilities"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument("--verbose", action="store_true", help="Show debug logging.")

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Run a code file against input items.",
        description=(
            "Assemble the script, run it in an isolated working directory\n"
            "and print the routed result records."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    _add_input_arguments(run_cmd)
    run_cmd.add_argument("--python", help="Python executable (default: python3).")
    run_cmd.add_argument("--mode", choices=EXECUTION_MODES, help="Execution mode.")
    run_cmd.add_argument("--timeout-minutes", type=float, help="Wall-clock timeout in minutes.")
    run_cmd.add_argument("--memory-mb", type=int, help="Memory ceiling in MB.")
    run_cmd.add_argument("--cpu-percent", type=int, help="CPU ceiling as percent of all cores.")
    run_cmd.add_argument("--parse", choices=PARSE_MODES, help="Stdout parse mode.")
    run_cmd.add_argument(
        "--pass-through",
        choices=PASS_THROUGH_MODES,
        help="Attach the original items to results using this mode.",
    )
    run_cmd.add_argument(
        "--export",
        metavar="DIR",
        help=(
            "Write attachments (output files, script, diagnostics) into DIR.\n"
            "Per-record runs prefix each file with its result index."
        ),
    )

    template_cmd = sub.add_parser(
        "template",
        help="Print the generated script without running it.",
        description=(
            "Show the script exactly as it would be assembled.\n"
            "Values are hidden unless --reveal is given."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    _add_input_arguments(template_cmd)
    template_cmd.add_argument("--reveal", action="store_true", help="Show real values instead of placeholders.")

    sub.add_parser(
        "capabilities",
        help="Show which resource limits this platform can enforce.",
        description="Show which resource limits this platform can enforce.",
        formatter_class=_HELP_FORMATTER,
    )
    return parser


def _load_items(path: str | None) -> list[dict[str, Any]]:
    """Load input items from a JSON file.

    Example:
        ```python
        items = _load_items("items.json")
        ```
    """
    if path is None:
        return []
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        return [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ValueError("Items file must contain a JSON object or a list of objects")
    return data


def _load_env_sources(specs: Sequence[str]) -> list[EnvironmentSource]:
    """Load `[NAME=]PATH` env-file arguments as environment sources.

    Example:
        ```python
        sources = _load_env_sources(["prod=.env"])
        ```
    """
    sources: list[EnvironmentSource] = []
    for spec in specs:
        name, sep, path = spec.partition("=")
        if not sep:
            name, path = Path(spec).stem or "env", spec
        sources.append(EnvironmentSource(name, parse_env_file(Path(path).read_text(encoding="utf-8"))))
    return sources


def build_config(args: argparse.Namespace) -> NodeConfig:
    """Create a NodeConfig from a config file and CLI overrides.

    Example:
        ```python
        config = build_config(args)
        ```
    """
    base = NodeConfig.from_file(args.config) if args.config else NodeConfig()
    overrides: dict[str, Any] = {"config_path": None}
    for attr, key in (
        ("python", "python_path"),
        ("mode", "execution_mode"),
        ("timeout_minutes", "timeout_minutes"),
        ("memory_mb", "memory_limit_mb"),
        ("cpu_percent", "cpu_limit_percent"),
        ("parse", "parse_mode"),
    ):
        value = getattr(args, attr, None)
        if value is not None:
            overrides[key] = value
    if getattr(args, "pass_through", None):
        overrides["pass_through"] = True
        overrides["pass_through_mode"] = args.pass_through
    if getattr(args, "export", None):
        overrides["enable_output_dir"] = True
        overrides["diagnostics"] = dataclasses.replace(base.diagnostics, export_artifacts=True)
    return dataclasses.replace(base, **overrides)


def _print_output(output: NodeOutput) -> None:
    """Render routed result records in a rich table plus detail panels.

    Example:
        ```python
        _print_output(output)
        ```
    """
    table = Table(title="Results")
    table.add_column("Channel", style="cyan")
    table.add_column("Exit Code")
    table.add_column("Parsing")
    table.add_column("Attachments")
    for channel, items in (("success", output.success), ("error", output.error)):
        for item in items:
            table.add_row(
                channel,
                str(item.json.get("exitCode", "")),
                str(item.json.get("parsing_method", "-")),
                ", ".join(item.binary) or "-",
            )
    _CONSOLE.print(table)
    for item in output.error:
        message = item.json.get("detailedError") or item.json.get("error")
        if message:
            _CONSOLE.print(Panel.fit(str(message), title="Error", border_style="red"))
    for item in [*output.success, *output.error]:
        _CONSOLE.print(Panel.fit(Pretty(item.json), border_style="cyan"))


def _export(output: NodeOutput, directory: str) -> int:
    """Write every attachment into a directory and return how many were written.

    When several result entries carry attachments (per-record runs), file
    names get the entry's index as a prefix so runs do not overwrite each other.

    Example:
        ```python
        count = _export(output, "out/")
        ```
    """
    target = Path(directory)
    target.mkdir(parents=True, exist_ok=True)
    entries = [item for item in [*output.success, *output.error] if item.binary]
    written = 0
    for index, item in enumerate(entries):
        for attachment in item.binary.values():
            name = f"{index}_{attachment.filename}" if len(entries) > 1 else attachment.filename
            (target / name).write_bytes(attachment.data)
            written += 1
    return written


def _print_capabilities() -> None:
    """Render platform limit support in a rich table.

    Example:
        ```python
        _print_capabilities()
        ```
    """
    caps = platform_capabilities()
    table = Table(title="Platform Capabilities")
    table.add_column("Capability", style="cyan")
    table.add_column("Supported")
    table.add_row("Memory limit (RLIMIT_AS)", "yes" if caps.supports_memory_limit else "no")
    table.add_row("CPU limit (RLIMIT_CPU)", "yes" if caps.supports_cpu_limit else "no")
    table.add_row("Timeout", "yes" if caps.supports_timeout else "no")
    table.add_row("CPU cores", str(caps.cpu_count))
    _CONSOLE.print(table)


def _configure_logging(verbose: bool) -> None:
    """Route library logging through a Rich handler.

    Example:
        ```python
        _configure_logging(verbose=True)
        ```
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `npr` CLI command handler.

    Example:
        ```python
        code = main(["run", "job.py", "--parse", "smart"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.verbose)

    if args.command == "capabilities":
        _print_capabilities()
        return 0

    code = Path(args.code_file).read_text(encoding="utf-8")
    items = _load_items(args.items)
    sources = _load_env_sources(args.env_file)
    config = build_config(args)

    if args.command == "template":
        env = resolve_environment(config, sources)
        script = assemble_script(
            ScriptSpec(
                user_code=code,
                records=[unwrap_item(item) for item in items],
                env_vars=env.values,
                include_input_items=config.include_input_items,
                include_env_vars_dict=config.include_env_vars_dict,
                inject_env_variables=config.inject_env_variables,
                inject_item_fields=config.inject_item_fields,
            ),
            redact=not args.reveal,
        )
        _CONSOLE.print(Syntax(script.text, "python", line_numbers=True))
        return 0

    if args.command == "run":
        output = run_python_sync(code, items=items, env_sources=sources, config=config)
        _print_output(output)
        if args.export:
            written = _export(output, args.export)
            _CONSOLE.print(Panel.fit(f"Exported {written} attachment(s) to {args.export}", style="bold green"))
        return 1 if output.error else 0

    parser.error("Unhandled command")
    return 2
