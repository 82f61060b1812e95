from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from .assembler import ScriptSpec, assemble_script, write_script
from .config import NodeConfig
from .diagnostics import DiagnosticsCollector, check_syntax
from .environment import EnvironmentSource, MergedEnvironment, merge_environment, system_environment
from .errors import AssemblyError, ScriptExecutionError
from .execution.engine import ExecutionEngine, OutputListener
from .execution.limits import WRAPPER_NAME, plan_limits
from .execution.supervisor import ScriptSupervisor
from .execution.types import ExecutionPlan, ExecutionResult
from .execution.workspace import Workspace
from .files import (
    INPUT_FILES_DIR,
    OUTPUT_DIR,
    Attachment,
    InputFile,
    collect_output_files,
    files_from_items,
    materialize_input_files,
)
from .parsing import parse_output
from .router import ERROR_CHANNEL, SUCCESS_CHANNEL, NodeOutput, build_result_record, route
from .tracebacks import ErrorReport, describe_failure, interpret_stderr

logger = logging.getLogger(__name__)

SCRIPT_NAME = "script.py"


@dataclass(slots=True)
class _RunArtifacts:
    """What one supervised run leaves behind once its workspace is gone.

    Example:
        ```python
        artifacts = _RunArtifacts(result=ExecutionResult(exit_code=0))
        ```
    """

    result: ExecutionResult
    export_script: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _resolve_config(config: NodeConfig | None, config_file: str | None) -> NodeConfig:
    """Resolve the effective config object for a run.

    Example:
        ```python
        config = _resolve_config(None, "/tmp/node.toml")
        ```
    """
    if config is not None and config_file is not None:
        raise ValueError("Provide either 'config' or 'config_file', not both")
    if config is None and config_file is not None:
        return NodeConfig.from_file(config_file)
    if config is None:
        return NodeConfig()
    if config.config_path is not None:
        return NodeConfig.from_file(config.config_path)
    return config


def unwrap_item(item: Mapping[str, Any]) -> dict[str, Any]:
    """Return the JSON payload of a workflow item, unwrapping `{"json": ...}`.

    Example:
        ```python
        unwrap_item({"json": {"id": 1}, "binary": {}})  # {"id": 1}
        ```
    """
    if "json" in item and isinstance(item["json"], Mapping):
        return dict(item["json"])
    return dict(item)


def resolve_environment(
    config: NodeConfig,
    env_sources: Sequence[EnvironmentSource] | None = None,
) -> MergedEnvironment:
    """Merge credential sources the way a run sees them.

    The `system` whitelist source, when configured, is folded first so the
    credential sources can override it under `last_wins`.

    Example:
        ```python
        env = resolve_environment(NodeConfig(system_env_vars=["HOME"]), [EnvironmentSource("prod", {"TOKEN": "x"})])
        env.values["TOKEN"]  # "x"
        ```
    """
    sources = list(env_sources or [])
    if config.system_env_vars:
        sources.insert(0, system_environment(config.system_env_vars))
    return merge_environment(
        sources,
        config.env_merge_policy,
        track_provenance=config.diagnostics.collect_environment,
    )


def _syntax_failure(syntax: dict[str, Any]) -> ExecutionResult:
    """Turn a compile-time error into a result with traceback-shaped stderr.

    Example:
        ```python
        _syntax_failure({"lineNumber": 3, "errorType": "SyntaxError", "errorMessage": "invalid syntax"}).exit_code  # 1
        ```
    """
    stderr = (
        f'  File "{SCRIPT_NAME}", line {syntax["lineNumber"]}\n'
        f'{syntax["errorType"]}: {syntax["errorMessage"]}\n'
    )
    return ExecutionResult(exit_code=1, stderr=stderr)


async def _supervise(
    workspace: Workspace,
    code: str,
    records: Sequence[Mapping[str, Any]],
    env: MergedEnvironment,
    files: Sequence[InputFile],
    config: NodeConfig,
    engine: ExecutionEngine,
    diagnostics: DiagnosticsCollector,
    on_output: OutputListener | None,
) -> _RunArtifacts:
    """Assemble, write and run one script inside an existing workspace.

    Example:
        ```python
        with Workspace.create() as ws:
            artifacts = await _supervise(ws, "print(1)", [], env, [], NodeConfig(), ScriptSupervisor(), diag, None)
        ```
    """
    try:
        descriptors = (
            materialize_input_files(files, workspace.path / INPUT_FILES_DIR)
            if config.enable_file_processing
            else None
        )
        output_dir = workspace.subdirectory(OUTPUT_DIR) if config.enable_output_dir else None
    except OSError as exc:
        raise AssemblyError(f"Could not prepare working directory {workspace.path}: {exc}") from exc

    spec = ScriptSpec(
        user_code=code,
        records=records,
        env_vars=env.values,
        input_files=descriptors,
        output_dir=str(output_dir) if output_dir is not None else None,
        include_input_items=config.include_input_items,
        include_env_vars_dict=config.include_env_vars_dict,
        inject_env_variables=config.inject_env_variables,
        inject_item_fields=config.inject_item_fields,
    )
    assembled = assemble_script(spec)
    script_path = write_script(workspace.path, assembled.text, SCRIPT_NAME)
    diagnostics.mark("assembled")
    diagnostics.stage(
        "script",
        {
            "hoisted": list(assembled.hoisted),
            "variables": list(assembled.variables),
            "user_code_line": assembled.user_code_line,
            "input_files": len(descriptors or []),
        },
    )

    artifacts = _RunArtifacts(result=ExecutionResult(exit_code=None))
    if diagnostics.options.export_artifacts:
        redact = diagnostics.options.redact_sensitive
        artifacts.export_script = assemble_script(spec, redact=True).text if redact else assembled.text

    if diagnostics.options.validate_only:
        syntax = check_syntax(assembled.text, SCRIPT_NAME)
        diagnostics.stage("syntax", syntax or {"valid": True})
        artifacts.result = ExecutionResult(exit_code=0) if syntax is None else _syntax_failure(syntax)
        logger.info("Validated script without running it (valid=%s)", syntax is None)
        return artifacts

    limit_plan = plan_limits(script_path, config.resource_limits, config.timeout_seconds)
    for note in limit_plan.notes:
        diagnostics.note(note)
        artifacts.warnings.append(note)
    diagnostics.stage(
        "limits",
        {
            "wrapped": limit_plan.wrapper_source is not None,
            "memory_bytes": limit_plan.memory_bytes,
            "cpu_seconds": limit_plan.cpu_seconds,
        },
    )
    run_path = script_path
    if limit_plan.wrapper_source is not None:
        run_path = write_script(workspace.path, limit_plan.wrapper_source, WRAPPER_NAME)

    plan = ExecutionPlan(
        executable=config.python_path,
        script_path=run_path,
        working_directory=workspace.path,
        timeout_seconds=config.timeout_seconds,
        environment=dict(env.values) if config.expose_env_to_process else {},
        resource_limits=config.resource_limits,
    )
    diagnostics.mark("spawned")
    artifacts.result = await engine.execute(plan, on_output)
    diagnostics.mark("exited")
    diagnostics.stage(
        "process",
        {
            "exit_code": artifacts.result.exit_code,
            "timed_out": artifacts.result.timed_out,
            "signal_killed": artifacts.result.signal_killed,
            "duration_seconds": round(artifacts.result.duration_seconds, 3),
        },
    )

    if output_dir is not None:
        artifacts.attachments = collect_output_files(output_dir, config.max_output_file_mb)
    return artifacts


async def _run_once(
    code: str,
    records: Sequence[Mapping[str, Any]],
    env: MergedEnvironment,
    files: Sequence[InputFile],
    config: NodeConfig,
    engine: ExecutionEngine,
    on_output: OutputListener | None,
    per_record: bool,
) -> NodeOutput:
    """Run the full pipeline once and route its result.

    Example:
        ```python
        output = await _run_once("print(1)", [], env, [], NodeConfig(), ScriptSupervisor(), None, per_record=False)
        ```
    """
    diagnostics = DiagnosticsCollector(config.diagnostics)
    diagnostics.snapshot_environment(config.python_path, env.values, env.provenance)
    detailed_error: str | None = None

    try:
        workspace = Workspace.create()
    except OSError as exc:
        artifacts = _RunArtifacts(result=ExecutionResult(exit_code=None, stderr=str(exc)))
        detailed_error = f"Could not create working directory: {exc}"
    else:
        with workspace:
            try:
                artifacts = await _supervise(
                    workspace, code, records, env, files, config, engine, diagnostics, on_output
                )
            except AssemblyError as exc:
                logger.error("Script assembly failed: %s", exc)
                artifacts = _RunArtifacts(result=ExecutionResult(exit_code=None, stderr=str(exc)))
                detailed_error = f"Script assembly failed: {exc}"
        diagnostics.mark("cleaned_up")
        diagnostics.stage("cleanup", {"removed": workspace.cleanup_error is None})
        if workspace.cleanup_error:
            diagnostics.note(workspace.cleanup_error)
            artifacts.warnings.append(workspace.cleanup_error)

    result = artifacts.result
    parsed = None
    if config.parse_mode != "none":
        parsed = parse_output(result.stdout, config.parse_mode, config.parse_options)

    report: ErrorReport | None = None
    if result.exit_code != 0:
        report = interpret_stderr(result.stderr, script_name=SCRIPT_NAME)
        if detailed_error is None:
            detailed_error = describe_failure(result, report, config.timeout_seconds)
        logger.info("Run failed: %s", detailed_error)

    record = build_result_record(
        result,
        input_count=len(records),
        parsed=parsed,
        error_report=report,
        detailed_error=detailed_error,
        diagnostics=diagnostics.as_dict() if config.diagnostics.enabled else None,
    )
    if artifacts.warnings:
        record["warnings"] = list(artifacts.warnings)

    if result.exit_code != 0 and config.on_error == "raise":
        raise ScriptExecutionError(detailed_error or "Python script failed", record=record)
    force_channel = SUCCESS_CHANNEL if result.exit_code != 0 and config.on_error == "ignore" else None

    return route(
        record,
        result.exit_code,
        inputs=records,
        pass_through_mode=config.pass_through_mode if config.pass_through else None,
        per_record=per_record,
        attachments=[*artifacts.attachments, *diagnostics.export_attachments(artifacts.export_script)],
        force_channel=force_channel,
    )


async def run_python(
    code: str,
    items: Sequence[Mapping[str, Any]] | None = None,
    env_sources: Sequence[EnvironmentSource] | None = None,
    files: Sequence[InputFile] | None = None,
    config: NodeConfig | None = None,
    config_file: str | None = None,
    engine: ExecutionEngine | None = None,
    on_output: OutputListener | None = None,
) -> NodeOutput:
    """Run user Python code against workflow items and route the results.

    In `once` mode the script runs a single time over all items; in
    `per_record` mode it runs sequentially once per item, and a failing item
    never stops the remaining ones unless `on_error="raise"`.

    Example:
        ```python
        from node_py_runner import NodeConfig, run_python
        output = await run_python(
            "import json\\nprint(json.dumps({'count': len(input_items)}))",
            items=[{"id": 1}, {"id": 2}],
            config=NodeConfig(parse_mode="json"),
        )
        output.success[0].json["parsed_stdout"]  # {"count": 2}
        ```
    """
    resolved = _resolve_config(config, config_file)
    raw_items = list(items or [])
    records = [unwrap_item(item) for item in raw_items]
    input_files = list(files) if files is not None else files_from_items(raw_items)

    env = resolve_environment(resolved, env_sources)
    supervisor = engine or ScriptSupervisor()
    logger.info(
        "Running Python code in %s mode for %d item(s) with %d env var(s)",
        resolved.execution_mode,
        len(records),
        len(env.values),
    )

    if resolved.execution_mode == "once":
        return await _run_once(code, records, env, input_files, resolved, supervisor, on_output, per_record=False)

    output = NodeOutput()
    for index, record in enumerate(records):
        record_files = [f for f in input_files if f.item_index == index]
        item_output = await _run_once(
            code, [record], env, record_files, resolved, supervisor, on_output, per_record=True
        )
        if item_output.error:
            logger.info("Item %d routed to %s channel", index, ERROR_CHANNEL)
        output.extend(item_output)
    return output


def run_python_sync(code: str, **kwargs: Any) -> NodeOutput:
    """Blocking wrapper around `run_python` for callers without an event loop.

    Example:
        ```python
        output = run_python_sync("print('hello')", items=[{"id": 1}])
        output.success[0].json["stdout"]  # "hello\\n"
        ```
    """
    return asyncio.run(run_python(code, **kwargs))
