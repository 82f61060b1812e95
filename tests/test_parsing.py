import pytest

from node_py_runner.parsing import ParseOptions, extract_json_span, parse_output


def test_json_mode_parses_object() -> None:
    parsed = parse_output('{"a": 1, "b": [true, null]}\n', "json")
    assert parsed.succeeded
    assert parsed.value == {"a": 1, "b": [True, None]}
    assert parsed.detected_format == "json"
    assert parsed.method == "json"


def test_json_mode_failure_falls_back_to_raw() -> None:
    parsed = parse_output("not json", "json")
    assert not parsed.succeeded
    assert parsed.value == "not json"
    assert parsed.error is not None and parsed.error.startswith("Invalid JSON")


def test_json_mode_failure_without_fallback() -> None:
    parsed = parse_output("not json", "json", ParseOptions(fallback_to_raw=False))
    assert parsed.value is None
    assert not parsed.succeeded


def test_json_mode_empty_output() -> None:
    parsed = parse_output("  \n", "json")
    assert not parsed.succeeded
    assert parsed.detected_format == "empty"


def test_multiple_json_objects() -> None:
    opts = ParseOptions(allow_multiple_json=True)
    assert parse_output('{"a": 1}\n{"b": 2}\n', "json", opts).value == [{"a": 1}, {"b": 2}]
    assert parse_output('{"a": 1}\n', "json", opts).value == {"a": 1}


def test_strip_surrounding_text() -> None:
    parsed = parse_output('Result: {"a": 1} done', "json", ParseOptions(strip_surrounding_text=True))
    assert parsed.value == {"a": 1}


def test_extract_json_span_ignores_brackets_in_strings() -> None:
    assert extract_json_span('x {"a": "}"} y') == '{"a": "}"}'
    assert extract_json_span("no json here") is None
    assert extract_json_span("[1, [2, 3]] tail") == "[1, [2, 3]]"


def test_smart_mode_detects_csv() -> None:
    parsed = parse_output("a,b\n1,2\n3,4", "smart")
    assert parsed.succeeded
    assert parsed.method == "smart_csv"
    assert parsed.detected_format == "csv"
    assert parsed.value == [{"a": "1", "b": "2"}, {"a": "3", "b": "4"}]


def test_smart_mode_detects_tab_delimited() -> None:
    parsed = parse_output("name\tage\nAda\t36\n", "smart")
    assert parsed.method == "smart_csv"
    assert parsed.value == [{"name": "Ada", "age": "36"}]


def test_smart_mode_detects_json() -> None:
    parsed = parse_output("[1, 2, 3]\n", "smart")
    assert parsed.method == "smart_json"
    assert parsed.value == [1, 2, 3]


def test_smart_mode_falls_back_to_lines() -> None:
    parsed = parse_output("hello\n\nworld\n", "smart")
    assert parsed.method == "smart_lines"
    assert parsed.value == ["hello", "world"]


def test_smart_mode_broken_json_becomes_lines() -> None:
    parsed = parse_output("[not json", "smart")
    assert parsed.succeeded
    assert parsed.method == "smart_lines"
    assert parsed.value == ["[not json"]


def test_smart_mode_inconsistent_columns_are_not_csv() -> None:
    parsed = parse_output("a,b\n1,2,3\n", "smart")
    assert parsed.method == "smart_lines"


def test_smart_mode_empty_output() -> None:
    parsed = parse_output("", "smart")
    assert parsed.value == []
    assert parsed.detected_format == "empty"


def test_lines_mode_drops_blank_lines() -> None:
    parsed = parse_output("a\n\n  \nb\n", "lines")
    assert parsed.value == ["a", "b"]
    assert parsed.method == "lines"


def test_none_mode_keeps_raw_text() -> None:
    parsed = parse_output("raw\n", "none")
    assert parsed.value == "raw\n"
    assert parsed.detected_format == "text"


@pytest.mark.parametrize("mode", ["json", "lines", "smart", "none", "bogus"])
def test_parse_output_never_raises(mode: str) -> None:
    parsed = parse_output("[" * 100_000 + "]" * 100_000, mode)
    assert parsed.method in {mode, "smart_json", "smart_csv", "smart_lines"}


def test_unknown_mode_is_a_failure() -> None:
    parsed = parse_output("x", "xml")
    assert not parsed.succeeded
    assert parsed.error == "Unknown parse mode: xml"
