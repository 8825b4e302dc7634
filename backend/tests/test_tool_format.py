"""Tests for comparison/tool_format.py -- tool call display messages."""

import pytest

from comparison.tool_format import (
    format_tool_call,
    format_tool_call_summary,
    parse_tool_args,
)


class TestFormatToolCall:
    """Known tools get tailored messages; others fall back to a generic one."""

    @pytest.mark.parametrize(
        ("name", "args", "expected"),
        [
            ("read_file", {"path": "src/app.py"}, "Read src/app.py"),
            ("read_file", {"path": "a.py", "start_line": 3, "end_line": 9}, "Read a.py (lines 3-9)"),
            ("read_file", {"path": "a.py", "start_line": 3}, "Read a.py (from line 3)"),
            ("read_file", {}, "Read unknown file"),
            ("list_dir", {"path": "src"}, "List directory: src"),
            ("grep_search", {"query": "TODO"}, 'Search for "TODO"'),
            (
                "grep_search",
                {"query": "def \\w+", "is_regexp": True, "include_pattern": "*.py"},
                'Search for "def \\w+" (regex) in *.py',
            ),
            ("file_search", {"query": "*.md", "max_results": 5}, 'Find files matching "*.md" (max 5)'),
            ("run_in_terminal", {"command": "ls"}, "Run in terminal: ls"),
            ("run_tests", {}, "Run all tests"),
            ("run_tests", {"files": ["a", "b"]}, "Run tests in 2 file(s)"),
            ("create_file", {"path": "x.txt", "content": "a\nb"}, "Create x.txt (2 lines)"),
        ],
    )
    def test_known_tools(self, name: str, args: dict, expected: str) -> None:
        assert format_tool_call(name, args) == expected

    def test_json_string_arguments(self) -> None:
        assert format_tool_call("list_dir", '{"path": "docs"}') == "List directory: docs"

    def test_replace_preview_is_clipped(self) -> None:
        message = format_tool_call(
            "replace_string_in_file",
            {"path": "a.py", "old_string": "x" * 40, "new_string": "y"},
        )
        assert message == f'Replace in a.py: "{"x" * 30}..."'

    def test_generic_tool(self) -> None:
        assert format_tool_call("fetch_url", {"url": "https://example.com"}) == (
            'fetch_url: url="https://example.com"'
        )

    def test_generic_without_args(self) -> None:
        assert format_tool_call("noop") == "noop"


class TestParseToolArgs:
    def test_dict_passthrough(self) -> None:
        assert parse_tool_args({"a": 1}) == {"a": 1}

    def test_invalid_json_kept_raw(self) -> None:
        assert parse_tool_args("{oops") == {"raw": "{oops"}

    def test_non_object_json(self) -> None:
        assert parse_tool_args("[1, 2]") == {"value": [1, 2]}

    def test_other_types(self) -> None:
        assert parse_tool_args(None) == {}


class TestSummary:
    def test_no_tools(self) -> None:
        assert format_tool_call_summary([]) == "No tools called"

    def test_single_tool_uses_display_message(self) -> None:
        assert format_tool_call_summary(["read_file"], ["Read a.py"]) == "Read a.py"

    def test_grouped_counts(self) -> None:
        summary = format_tool_call_summary(["read_file", "read_file", "list_dir"])
        assert summary == "3 tools: read_file(2), list_dir"
