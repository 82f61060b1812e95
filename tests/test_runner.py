import base64
import json
import sys
from pathlib import Path

import pytest

from node_py_runner import (
    DiagnosticsOptions,
    EnvironmentSource,
    NodeConfig,
    ParseOptions,
    ScriptExecutionError,
    run_python,
    run_python_sync,
)
from node_py_runner.execution.capabilities import PlatformCapabilities, platform_capabilities
from node_py_runner.execution.types import SPAWN_ERROR_EXIT_CODE, TIMEOUT_EXIT_CODE, ExecutionPlan, ExecutionResult


def _config(**kwargs) -> NodeConfig:
    kwargs.setdefault("python_path", sys.executable)
    return NodeConfig(**kwargs)


class _RecordingEngine:
    def __init__(self, result: ExecutionResult) -> None:
        self.result = result
        self.plans: list[ExecutionPlan] = []
        self.scripts: list[str] = []

    async def execute(self, plan, on_output=None):
        self.plans.append(plan)
        self.scripts.append(plan.script_path.read_text(encoding="utf-8"))
        return self.result


@pytest.mark.asyncio
async def test_once_mode_sees_all_items() -> None:
    output = await run_python(
        "print(json.dumps({'count': len(input_items), 'ids': [i['id'] for i in input_items]}))",
        items=[{"id": 1}, {"id": 2}],
        config=_config(parse_mode="json"),
    )

    assert output.error == []
    assert len(output.success) == 1
    record = output.success[0].json
    assert record["exitCode"] == 0
    assert record["success"] is True
    assert record["inputItemsCount"] == 2
    assert record["parsed_stdout"] == {"count": 2, "ids": [1, 2]}
    assert record["parsing_method"] == "json"


@pytest.mark.asyncio
async def test_per_record_mode_isolates_failures() -> None:
    code = "\n".join(
        [
            "if id == 2:",
            "    raise ValueError('bad item')",
            "print(json.dumps({'id': id, 'n': len(input_items)}))",
        ]
    )

    output = await run_python(
        code,
        items=[{"id": 1}, {"id": 2}, {"id": 3}],
        config=_config(execution_mode="per_record", parse_mode="json"),
    )

    assert [item.json["parsed_stdout"] for item in output.success] == [{"id": 1, "n": 1}, {"id": 3, "n": 1}]
    assert len(output.error) == 1
    failed = output.error[0].json
    assert failed["exitCode"] == 1
    assert failed["pythonError"]["errorType"] == "ValueError"
    assert failed["pythonError"]["errorMessage"] == "bad item"
    assert isinstance(failed["pythonError"]["lineNumber"], int)
    assert "ValueError: bad item" in failed["detailedError"]


@pytest.mark.asyncio
async def test_workflow_items_are_unwrapped() -> None:
    output = await run_python(
        "print(name)",
        items=[{"json": {"name": "Ada"}, "binary": {}}],
        config=_config(),
    )
    assert output.success[0].json["stdout"] == "Ada\n"


@pytest.mark.asyncio
async def test_merge_pass_through_in_once_mode() -> None:
    output = await run_python(
        "print('ok')",
        items=[{"id": 1, "exitCode": "old"}, {"id": 2}],
        config=_config(pass_through=True, pass_through_mode="merge"),
    )
    assert [(item.json["id"], item.json["exitCode"]) for item in output.success] == [(1, 0), (2, 0)]


@pytest.mark.asyncio
async def test_separate_pass_through_in_per_record_mode() -> None:
    output = await run_python(
        "print('ok')",
        items=[{"id": 1}, {"id": 2}],
        config=_config(execution_mode="per_record", pass_through=True, pass_through_mode="separate"),
    )
    assert [item.json["input_item"] for item in output.success] == [{"id": 1}, {"id": 2}]


@pytest.mark.asyncio
async def test_env_sources_are_injected() -> None:
    output = await run_python(
        "print(API_KEY)\nprint(env_vars['API_KEY'])",
        env_sources=[EnvironmentSource("prod", {"API_KEY": "abc"})],
        config=_config(),
    )
    assert output.success[0].json["stdout"] == "abc\nabc\n"


@pytest.mark.asyncio
async def test_env_is_not_exposed_to_process_by_default() -> None:
    code = "import os\nprint(os.environ.get('NPR_TEST_SECRET', 'unset'))"
    sources = [EnvironmentSource("prod", {"NPR_TEST_SECRET": "s3cret"})]

    hidden = await run_python(code, env_sources=sources, config=_config())
    exposed = await run_python(code, env_sources=sources, config=_config(expose_env_to_process=True))

    assert hidden.success[0].json["stdout"] == "unset\n"
    assert exposed.success[0].json["stdout"] == "s3cret\n"


@pytest.mark.asyncio
async def test_future_imports_are_hoisted() -> None:
    output = await run_python(
        "from __future__ import annotations\nx: int = 1\nprint(x)",
        config=_config(),
    )
    assert output.success[0].json["stdout"] == "1\n"


@pytest.mark.asyncio
async def test_timeout_routes_to_error_channel() -> None:
    output = await run_python(
        "import time\ntime.sleep(30)",
        config=_config(timeout_minutes=0.01),
    )

    record = output.error[0].json
    assert record["exitCode"] == TIMEOUT_EXIT_CODE
    assert record["timedOut"] is True
    assert "timed out" in record["detailedError"]


@pytest.mark.asyncio
async def test_spawn_failure_routes_to_error_channel(tmp_path: Path) -> None:
    output = await run_python("print(1)", config=_config(python_path=str(tmp_path / "no-python")))

    record = output.error[0].json
    assert record["exitCode"] == SPAWN_ERROR_EXIT_CODE
    assert record["error"].startswith("Failed to start")


@pytest.mark.asyncio
async def test_missing_module_hint() -> None:
    output = await run_python("import definitely_missing_module_xyz", config=_config())

    record = output.error[0].json
    assert record["pythonError"]["missingModules"] == ["definitely_missing_module_xyz"]
    assert "pip install definitely_missing_module_xyz" in record["detailedError"]


@pytest.mark.asyncio
async def test_on_error_raise() -> None:
    with pytest.raises(ScriptExecutionError) as exc_info:
        await run_python("raise SystemExit(4)", config=_config(on_error="raise"))
    assert exc_info.value.record["exitCode"] == 4


@pytest.mark.asyncio
async def test_on_error_ignore_keeps_failure_on_success_channel() -> None:
    output = await run_python("raise SystemExit(4)", config=_config(on_error="ignore"))

    assert output.error == []
    assert output.success[0].json["success"] is False
    assert output.success[0].json["exitCode"] == 4


@pytest.mark.asyncio
async def test_workspace_is_removed_after_run() -> None:
    output = await run_python("import os\nprint(os.getcwd())", config=_config())
    workdir = Path(output.success[0].json["stdout"].strip())
    assert workdir.name.startswith("node_py_runner_")
    assert not workdir.exists()


@pytest.mark.asyncio
async def test_input_files_and_output_dir() -> None:
    code = "\n".join(
        [
            "import os",
            "with open(input_files[0]['path']) as src:",
            "    text = src.read()",
            "with open(os.path.join(output_dir, 'upper.txt'), 'w') as dst:",
            "    dst.write(text.upper())",
            "print(input_files[0]['filename'])",
        ]
    )
    items = [
        {
            "json": {"id": 1},
            "binary": {
                "doc": {"data": base64.b64encode(b"hello").decode(), "fileName": "a.txt", "mimeType": "text/plain"}
            },
        }
    ]

    output = await run_python(
        code,
        items=items,
        config=_config(enable_file_processing=True, enable_output_dir=True),
    )

    result = output.success[0]
    assert result.json["stdout"] == "a.txt\n"
    assert result.binary["output_upper.txt"].data == b"HELLO"


@pytest.mark.asyncio
async def test_validate_only_does_not_run() -> None:
    ok = await run_python(
        "print('ran')",
        config=_config(diagnostics=DiagnosticsOptions(validate_only=True)),
    )
    assert ok.success[0].json["stdout"] == ""
    assert ok.success[0].json["diagnostics"]["syntax"] == {"valid": True}

    bad = await run_python(
        "x = (",
        config=_config(diagnostics=DiagnosticsOptions(validate_only=True)),
    )
    record = bad.error[0].json
    assert record["exitCode"] == 1
    assert record["pythonError"]["errorType"] == "SyntaxError"
    assert record["diagnostics"]["syntax"]["errorType"] == "SyntaxError"


@pytest.mark.asyncio
async def test_export_artifacts_are_redacted() -> None:
    output = await run_python(
        "print(len(API_KEY))",
        env_sources=[EnvironmentSource("prod", {"API_KEY": "s3cret"})],
        config=_config(
            diagnostics=DiagnosticsOptions(collect_timing=True, collect_environment=True, export_artifacts=True)
        ),
    )

    result = output.success[0]
    assert result.json["stdout"] == "6\n"
    script = result.binary["script"].data
    assert b"s3cret" not in script
    assert b"***hidden***" in script
    report = json.loads(result.binary["diagnostics"].data)
    assert report["environment"]["variables"]["API_KEY"]["source"] == "prod"
    assert "s3cret" not in result.binary["diagnostics"].data.decode()
    assert {"assembled", "spawned", "exited", "cleaned_up"} <= set(report["timing_ms"])


@pytest.mark.skipif(not platform_capabilities().supports_memory_limit, reason="rlimits unavailable")
@pytest.mark.asyncio
async def test_resource_limits_wrap_the_script() -> None:
    output = await run_python(
        "print('limited')",
        config=_config(
            memory_limit_mb=1024,
            cpu_limit_percent=100,
            diagnostics=DiagnosticsOptions(collect_timing=True),
        ),
    )

    record = output.success[0].json
    assert record["stdout"] == "limited\n"
    assert record["diagnostics"]["limits"]["wrapped"] is True


@pytest.mark.skipif(sys.platform != "linux", reason="address space limits are reliable on Linux only")
@pytest.mark.asyncio
async def test_memory_limit_is_enforced() -> None:
    output = await run_python(
        "data = bytearray(2 * 1024 ** 3)",
        config=_config(memory_limit_mb=256),
    )

    record = output.error[0].json
    assert record["pythonError"]["errorType"] == "MemoryError"


@pytest.mark.asyncio
async def test_custom_engine_receives_the_plan() -> None:
    engine = _RecordingEngine(ExecutionResult(exit_code=0, stdout='note\n{"ok": true}\n'))

    output = await run_python(
        "print('hi')",
        items=[{"id": 1}],
        env_sources=[EnvironmentSource("prod", {"TOKEN": "t"})],
        config=_config(
            parse_mode="json",
            parse_options=ParseOptions(strip_surrounding_text=True),
            timeout_minutes=2,
        ),
        engine=engine,
    )

    plan = engine.plans[0]
    assert plan.executable == sys.executable
    assert plan.timeout_seconds == 120
    assert plan.environment == {}
    assert plan.script_path.name == "script.py"
    assert "print('hi')" in engine.scripts[0]
    assert 'TOKEN = "t"' in engine.scripts[0]
    assert output.success[0].json["parsed_stdout"] == {"ok": True}


@pytest.mark.asyncio
async def test_config_and_config_file_are_exclusive(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="either 'config' or 'config_file'"):
        await run_python("print(1)", config=NodeConfig(), config_file=str(tmp_path / "node.toml"))


@pytest.mark.asyncio
async def test_config_file_is_loaded(tmp_path: Path) -> None:
    path = tmp_path / "node.toml"
    path.write_text(f'[node]\npython_path = "{Path(sys.executable).as_posix()}"\nparse_mode = "lines"\n', encoding="utf-8")

    output = await run_python("print('a')\nprint('b')", config_file=str(path))

    assert output.success[0].json["parsed_stdout"] == ["a", "b"]


def test_run_python_sync() -> None:
    output = run_python_sync("print('hello')", items=[{"id": 1}], config=_config())
    assert output.success[0].json["stdout"] == "hello\n"


@pytest.mark.asyncio
async def test_timeout_removes_the_working_directory() -> None:
    output = await run_python(
        "import os, time\nprint(os.getcwd(), flush=True)\ntime.sleep(30)",
        config=_config(timeout_minutes=0.01),
    )

    record = output.error[0].json
    assert record["timedOut"] is True
    workdir = Path(record["stdout"].strip())
    assert workdir.name.startswith("node_py_runner_")
    assert not workdir.exists()


@pytest.mark.asyncio
async def test_unenforceable_limits_still_run_the_script(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "node_py_runner.execution.limits.platform_capabilities",
        lambda: PlatformCapabilities(False, False, True, 1),
    )

    output = await run_python(
        "print('unlimited')",
        config=_config(memory_limit_mb=128, diagnostics=DiagnosticsOptions(collect_timing=True)),
    )

    record = output.success[0].json
    note = "Memory limit requested but not enforceable on this platform"
    assert record["stdout"] == "unlimited\n"
    assert record["diagnostics"]["limits"]["wrapped"] is False
    assert note in record["diagnostics"]["notes"]
    assert note in record["warnings"]


@pytest.mark.asyncio
async def test_parenthesized_future_import_runs() -> None:
    output = await run_python(
        "from __future__ import (\n    annotations,\n)\nx: int = 1\nprint(x)\n",
        config=_config(),
    )

    assert output.error == []
    assert output.success[0].json["stdout"] == "1\n"


@pytest.mark.asyncio
async def test_error_type_comes_from_the_exception_line() -> None:
    output = await run_python(
        "x = 0\nif x: pass\nelse: raise ValueError('bad value')\n",
        config=_config(),
    )

    error = output.error[0].json["pythonError"]
    assert error["errorType"] == "ValueError"
    assert error["errorMessage"] == "bad value"
