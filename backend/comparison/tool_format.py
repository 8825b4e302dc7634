"""Human-readable display messages for tool calls.

Used to label tool calls in target state and in the presentation projection,
e.g. ``read_file {"path": "src/app.py"}`` becomes ``Read src/app.py``.
"""

import json
from collections import Counter
from collections.abc import Callable, Iterable
from typing import Any

_PREVIEW_CHARS = 30


def _first(args: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = args.get(key)
        if value not in (None, ""):
            return value
    return default


def _preview(text: str) -> str:
    clipped = text[:_PREVIEW_CHARS]
    return f"{clipped}..." if len(text) > _PREVIEW_CHARS else clipped


def _format_read_file(args: dict[str, Any]) -> str:
    path = _first(args, "path", "filePath", "file_path", default="unknown file")
    start = _first(args, "offset", "start_line")
    end = _first(args, "limit", "end_line")
    if start is not None and end is not None:
        return f"Read {path} (lines {start}-{end})"
    if start is not None:
        return f"Read {path} (from line {start})"
    return f"Read {path}"


def _format_grep_search(args: dict[str, Any]) -> str:
    query = _first(args, "query", "pattern", default="unknown query")
    message = f'Search for "{query}"'
    if _first(args, "isRegexp", "is_regexp"):
        message += " (regex)"
    include = _first(args, "includePattern", "include_pattern", "file_glob")
    if include:
        message += f" in {include}"
    return message


def _format_file_search(args: dict[str, Any]) -> str:
    query = _first(args, "query", "pattern", default="*")
    message = f'Find files matching "{query}"'
    max_results = _first(args, "maxResults", "max_results")
    if max_results:
        message += f" (max {max_results})"
    return message


def _format_list_dir(args: dict[str, Any]) -> str:
    path = _first(args, "path", "directory", default="unknown directory")
    return f"List directory: {path}"


def _format_replace_string(args: dict[str, Any]) -> str:
    path = _first(args, "path", "filePath", "file_path", default="unknown file")
    old = _first(args, "oldString", "old_string")
    new = _first(args, "newString", "new_string")
    if isinstance(old, str) and new:
        return f'Replace in {path}: "{_preview(old)}"'
    return f"Replace in {path}"


def _format_create_file(args: dict[str, Any]) -> str:
    path = _first(args, "path", "filePath", "file_path", default="unknown file")
    content = args.get("content")
    if isinstance(content, str) and content:
        return f"Create {path} ({len(content.splitlines()) or 1} lines)"
    return f"Create {path}"


def _format_run_in_terminal(args: dict[str, Any]) -> str:
    command = _first(args, "command", default="unknown command")
    if _first(args, "isBackground", "is_background"):
        return f"Run in terminal (background): {command}"
    return f"Run in terminal: {command}"


def _format_run_tests(args: dict[str, Any]) -> str:
    files = args.get("files")
    if isinstance(files, list) and files:
        return f"Run tests in {len(files)} file(s)"
    names = _first(args, "testNames", "test_names")
    if isinstance(names, list) and names:
        return f"Run {len(names)} test(s)"
    return "Run all tests"


_FORMATTERS: dict[str, Callable[[dict[str, Any]], str]] = {
    "read_file": _format_read_file,
    "grep_search": _format_grep_search,
    "file_search": _format_file_search,
    "list_dir": _format_list_dir,
    "replace_string_in_file": _format_replace_string,
    "create_file": _format_create_file,
    "run_in_terminal": _format_run_in_terminal,
    "run_tests": _format_run_tests,
}


def parse_tool_args(raw_args: Any) -> dict[str, Any]:
    """Normalize raw tool arguments (JSON string, dict, or other) into a dict."""
    if isinstance(raw_args, dict):
        return raw_args
    if isinstance(raw_args, str):
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}
    return {}


def _format_generic(name: str, args: dict[str, Any]) -> str:
    if not args:
        return name
    key = next((k for k in args if not k.startswith("_") and args[k] is not None), None)
    if key is None:
        count = len(args)
        return f"{name} ({count} param{'' if count == 1 else 's'})"
    value = args[key]
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return f'{name}: {key}="{_preview(text)}"'


def format_tool_call(name: str, raw_args: Any = None) -> str:
    """Return a short display message for a tool call.

    Args:
        name: Tool name as reported by the model.
        raw_args: Tool arguments as a dict or JSON string.

    Returns:
        A one-line description such as ``List directory: src``.
    """
    args = parse_tool_args(raw_args)
    formatter = _FORMATTERS.get(name)
    if formatter is None:
        return _format_generic(name, args)
    return formatter(args)


def format_tool_call_summary(tool_names: Iterable[str], display_messages: Iterable[str] = ()) -> str:
    """Summarize a target's tool calls in one line.

    A single call shows its display message; several calls are grouped by
    tool name with counts, e.g. ``3 tools: read_file(2), list_dir``.
    """
    names = list(tool_names)
    messages = list(display_messages)
    if not names:
        return "No tools called"
    if len(names) == 1:
        return messages[0] if messages else names[0]

    counts = Counter(names)
    parts = [f"{name}({count})" if count > 1 else name for name, count in counts.items()]
    return f"{len(names)} tools: {', '.join(parts)}"
