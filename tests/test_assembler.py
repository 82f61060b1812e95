from pathlib import Path

import pytest

from node_py_runner.assembler import (
    HEADER_LINES,
    USER_CODE_MARKER,
    ScriptSpec,
    assemble_script,
    extract_future_imports,
    validate_generated_lines,
    write_script,
)
from node_py_runner.errors import AssemblyError
from node_py_runner.serializer import REDACTED_PLACEHOLDER


def _assignments(text: str, name: str) -> list[str]:
    return [line for line in text.splitlines() if line.startswith(f"{name} = ")]


def test_future_imports_are_hoisted_and_deduplicated() -> None:
    code = "\n".join(
        [
            "import os",
            "from __future__ import annotations",
            "from  __future__  import annotations",
            "from __future__ import division",
            "print(os.sep)",
        ]
    )

    hoisted, body = extract_future_imports(code)

    assert hoisted == ["from __future__ import annotations", "from __future__ import division"]
    assert "__future__" not in body
    assert body.splitlines() == ["import os", "print(os.sep)"]


def test_script_order_is_hoisted_header_variables_user_code() -> None:
    script = assemble_script(
        ScriptSpec(
            user_code="from __future__ import annotations\nprint(input_items)",
            records=[{"id": 1}],
        )
    )
    lines = script.text.splitlines()

    assert lines[0] == "from __future__ import annotations"
    assert lines[1:1 + len(HEADER_LINES)] == list(HEADER_LINES)
    assert lines.index("input_items = [{\"id\": 1}]") < lines.index(USER_CODE_MARKER)
    assert lines[script.user_code_line - 1] == "print(input_items)"
    assert script.hoisted == ("from __future__ import annotations",)
    compile(script.text, "script.py", "exec")


def test_reserved_block_order() -> None:
    script = assemble_script(
        ScriptSpec(
            user_code="pass",
            records=[{"name": "x"}],
            env_vars={"API_KEY": "abc"},
            input_files=[],
            output_dir="/tmp/out",
        )
    )

    assert script.variables == ("input_items", "env_vars", "API_KEY", "name", "input_files", "output_dir")


def test_field_and_env_names_are_sanitized() -> None:
    script = assemble_script(
        ScriptSpec(
            user_code="pass",
            records=[{"my-field": 1, "class": 2, "": 3}],
            env_vars={"123key": "v"},
        )
    )

    assert _assignments(script.text, "var_123key") == ['var_123key = "v"']
    assert _assignments(script.text, "my_field") == ["my_field = 1"]
    assert _assignments(script.text, "field_class") == ["field_class = 2"]


def test_reserved_names_are_never_overwritten() -> None:
    script = assemble_script(
        ScriptSpec(
            user_code="pass",
            records=[{"input_items": 5, "env_vars": "x", "json": 1, "id": 7}],
            env_vars={"sys": "boom"},
        )
    )

    assert len(_assignments(script.text, "input_items")) == 1
    assert len(_assignments(script.text, "env_vars")) == 1
    assert _assignments(script.text, "json") == []
    assert _assignments(script.text, "sys") == []
    assert _assignments(script.text, "id") == ["id = 7"]


def test_env_variable_wins_over_item_field_with_same_name() -> None:
    script = assemble_script(
        ScriptSpec(user_code="pass", records=[{"region": "eu"}], env_vars={"region": "us"})
    )
    assert _assignments(script.text, "region") == ['region = "us"']


def test_injection_toggles_remove_blocks() -> None:
    script = assemble_script(
        ScriptSpec(
            user_code="pass",
            records=[{"id": 1}],
            env_vars={"K": "v"},
            include_input_items=False,
            include_env_vars_dict=False,
            inject_env_variables=False,
            inject_item_fields=False,
        )
    )
    assert script.variables == ()


def test_assembly_is_deterministic() -> None:
    spec = ScriptSpec(user_code="print(1)", records=[{"b": 2, "a": 1}], env_vars={"Z": "1", "A": "2"})
    assert assemble_script(spec).text == assemble_script(spec).text


def test_redacted_script_hides_values() -> None:
    spec = ScriptSpec(user_code="print(API_KEY)", records=[{"email": "a@b.c"}], env_vars={"API_KEY": "s3cret"})

    redacted = assemble_script(spec, redact=True)

    assert "s3cret" not in redacted.text
    assert "a@b.c" not in redacted.text
    assert f'API_KEY = "{REDACTED_PLACEHOLDER}"' in redacted.text
    assert redacted.variables == assemble_script(spec).variables


def test_validate_generated_lines() -> None:
    validate_generated_lines(["# comment", "", "import json", "x = 1", "from __future__ import annotations"])

    with pytest.raises(AssemblyError):
        validate_generated_lines(["1x = 2"])
    with pytest.raises(AssemblyError):
        validate_generated_lines(["foo bar = 1"])
    with pytest.raises(AssemblyError):
        validate_generated_lines(["print(1)"])


def test_write_script(tmp_path: Path) -> None:
    path = write_script(tmp_path, "print('hi')\n")
    assert path == tmp_path / "script.py"
    assert path.read_text(encoding="utf-8") == "print('hi')\n"


def test_write_script_wraps_os_errors(tmp_path: Path) -> None:
    with pytest.raises(AssemblyError, match="Could not write script"):
        write_script(tmp_path / "missing", "print(1)\n")


def test_parenthesized_future_import_is_hoisted_whole() -> None:
    code = "from __future__ import (\n    annotations,\n    division,\n)\nprint('ok')\n"

    hoisted, body = extract_future_imports(code)

    assert hoisted == ["from __future__ import annotations, division"]
    assert body == "print('ok')\n"


def test_backslash_continued_future_import_is_hoisted_whole() -> None:
    code = "from __future__ \\\n    import annotations\nx: int = 1\n"

    hoisted, body = extract_future_imports(code)

    assert hoisted == ["from __future__ import annotations"]
    assert "__future__" not in body
    assert "import annotations" not in body
    assert body.splitlines() == ["x: int = 1"]


def test_future_import_sharing_a_line_keeps_the_other_statement() -> None:
    hoisted, body = extract_future_imports("from __future__ import annotations; import os\nprint(os.sep)\n")

    assert hoisted == ["from __future__ import annotations"]
    assert body.splitlines() == ["pass; import os", "print(os.sep)"]


def test_unparsable_code_falls_back_to_line_scan() -> None:
    hoisted, body = extract_future_imports("from __future__ import annotations\nx = (\n")

    assert hoisted == ["from __future__ import annotations"]
    assert body.splitlines() == ["x = ("]


def test_multiline_directive_script_compiles() -> None:
    script = assemble_script(
        ScriptSpec(user_code="from __future__ import (\n    annotations,\n)\nx: int = 1\nprint(x)\n")
    )

    user_region = script.text.splitlines()[script.user_code_line - 1:]
    assert script.hoisted == ("from __future__ import annotations",)
    assert not any("__future__" in line or "annotations," in line for line in user_region)
    compile(script.text, "script.py", "exec")
