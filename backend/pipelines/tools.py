"""Read-only workspace tools offered to targets.

Every tool call a target makes passes the approval gate before it reaches
the ToolExecutor. The tools only read from the configured workspace root;
paths are validated so a call can never escape it.
"""

import asyncio
import fnmatch
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "read_file",
        "description": (
            "Read a file relative to the workspace root. "
            "Optionally restrict to a 1-based inclusive line range."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative file path, e.g. 'src/app.py'",
                },
                "start_line": {
                    "type": "integer",
                    "description": "First line to return (1-based)",
                },
                "end_line": {
                    "type": "integer",
                    "description": "Last line to return (inclusive)",
                },
            },
            "required": ["path"],
        },
    },
    {
        "name": "list_dir",
        "description": (
            "List files and directories at the given path. "
            "Returns names with '/' suffix for directories."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative directory path, default '.'",
                },
            },
            "required": [],
        },
    },
    {
        "name": "file_search",
        "description": "Find files whose relative path matches a glob, e.g. '**/*.py'.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Glob pattern",
                },
                "max_results": {
                    "type": "integer",
                    "description": "Maximum number of paths to return",
                },
            },
            "required": ["query"],
        },
    },
    {
        "name": "grep_search",
        "description": (
            "Search for text across files. Returns matching lines as "
            "'path:line: text'."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Text or regular expression to search for",
                },
                "is_regexp": {
                    "type": "boolean",
                    "description": "Treat query as a regular expression",
                },
                "include_pattern": {
                    "type": "string",
                    "description": "Only search files matching this glob, e.g. '*.py'",
                },
            },
            "required": ["query"],
        },
    },
]

_TOOL_DEFINITION_MAP: dict[str, dict[str, Any]] = {
    tool["name"]: tool for tool in TOOL_DEFINITIONS
}

# Keep tool payloads bounded so a single call cannot flood model context.
MAX_READ_FILE_CHARS = 60_000
MAX_SEARCH_OUTPUT_CHARS = 15_000
MAX_LISTING_ENTRIES = 500
DEFAULT_MAX_RESULTS = 100

_SKIPPED_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "venv"})


class ToolArgumentError(ValueError):
    """Raised when a tool call has invalid or unsupported arguments."""


def get_tool_definitions_for_llm() -> list[dict[str, Any]]:
    """Get tool definitions formatted for LLM function calling.

    Returns:
        List of tool definitions in the format expected by LiteLLM.
    """
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }
        for tool in TOOL_DEFINITIONS
    ]


def validate_path(workspace_root: str, relative_path: str) -> tuple[bool, str, str]:
    """Validate a path to prevent directory traversal.

    Args:
        workspace_root: Directory the tools are confined to.
        relative_path: Path relative to the root.

    Returns:
        A tuple of (is_valid, error_message, resolved_absolute_path).

    Examples:
        >>> validate_path("/work", "../etc/passwd")
        (False, "Path traversal blocked: contains '..'", "")
        >>> validate_path("/work", "/etc/passwd")
        (False, "Absolute paths not allowed", "")
    """
    if not relative_path:
        return False, "Path cannot be empty", ""

    if relative_path.startswith("/"):
        return False, "Absolute paths not allowed", ""

    # Allow names like "file..bak"; only a ".." component is traversal
    components = [
        part
        for part in relative_path.replace("\\", "/").split("/")
        if part not in ("", ".")
    ]
    if ".." in components:
        return False, "Path traversal blocked: contains '..'", ""

    try:
        root = Path(workspace_root).resolve()
        resolved = (root / relative_path).resolve()
    except (ValueError, OSError) as e:
        return False, f"Invalid path: {e}", ""

    # Symlinks can still point outside the root
    try:
        resolved.relative_to(root)
    except ValueError:
        return False, f"Path traversal blocked: {relative_path}", ""

    return True, "", str(resolved)


@dataclass
class ToolResult:
    """Result of executing a tool.

    Attributes:
        tool_call_id: ID of the tool call this result corresponds to
        content: The result content as a string
        success: Whether the tool execution succeeded
        error: Error message if execution failed
    """

    tool_call_id: str
    content: str
    success: bool
    error: str | None = None


class ToolExecutor:
    """Executes read-only tool calls inside a workspace directory.

    Failures (bad arguments, missing files, traversal attempts) are returned
    as unsuccessful ToolResults so the model can see and react to them.

    Attributes:
        workspace_root: Absolute path of the directory tools may read.
    """

    def __init__(self, workspace_root: str) -> None:
        self.workspace_root = str(Path(workspace_root).resolve())

    def _truncate_text(self, text: str, *, max_chars: int) -> str:
        """Trim large text payloads while preserving a clear truncation marker."""
        if len(text) <= max_chars:
            return text
        omitted = len(text) - max_chars
        return (
            f"{text[:max_chars]}\n"
            f"... [truncated {omitted} characters to protect context window]"
        )

    def _normalize_tool_args(self, tool_name: str, args: Any) -> dict[str, Any]:
        """Validate and normalize tool arguments against schema metadata."""
        tool_def = _TOOL_DEFINITION_MAP.get(tool_name)
        if tool_def is None:
            raise ToolArgumentError(f"Unknown tool: {tool_name}")

        if not isinstance(args, dict):
            raise ToolArgumentError(
                f"Invalid arguments for {tool_name}: expected an object"
            )

        params = tool_def.get("parameters", {})
        properties = params.get("properties", {})
        required = params.get("required", [])

        normalized: dict[str, Any] = {}
        for key, value in args.items():
            if key not in properties:
                # Ignore unknown fields to keep calls resilient to model drift.
                continue
            expected = properties[key].get("type")
            if expected == "string":
                if not isinstance(value, str):
                    raise ToolArgumentError(f"Invalid type for '{key}': expected string")
                normalized[key] = value.strip()
            elif expected == "integer":
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ToolArgumentError(f"Invalid type for '{key}': expected integer")
                normalized[key] = value
            else:
                normalized[key] = bool(value) if expected == "boolean" else value

        missing = [
            req
            for req in required
            if normalized.get(req) is None or normalized.get(req) == ""
        ]
        if missing:
            raise ToolArgumentError(f"Missing required arguments: {', '.join(sorted(missing))}")

        return normalized

    def _resolve(self, relative_path: str) -> Path:
        if relative_path in ("", "."):
            return Path(self.workspace_root)
        is_valid, error, resolved = validate_path(self.workspace_root, relative_path)
        if not is_valid:
            raise ToolArgumentError(error)
        return Path(resolved)

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.workspace_root).as_posix()

    def _iter_files(self, base: Path) -> list[Path]:
        files = []
        for path in sorted(base.rglob("*")):
            if any(part in _SKIPPED_DIRS for part in path.relative_to(base).parts):
                continue
            if path.is_file():
                files.append(path)
        return files

    def _read_file(self, args: dict[str, Any]) -> str:
        path = self._resolve(args["path"])
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {args['path']}")
        text = path.read_text(encoding="utf-8", errors="replace")

        start = args.get("start_line")
        end = args.get("end_line")
        if start is not None or end is not None:
            lines = text.splitlines()
            first = max((start or 1) - 1, 0)
            last = end if end is not None else len(lines)
            text = "\n".join(lines[first:last])
        return self._truncate_text(text, max_chars=MAX_READ_FILE_CHARS)

    def _list_dir(self, args: dict[str, Any]) -> str:
        path = self._resolve(args.get("path", "."))
        if not path.is_dir():
            raise NotADirectoryError(f"Not a directory: {args.get('path', '.')}")
        entries = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        names = [f"{p.name}/" if p.is_dir() else p.name for p in entries]
        if len(names) > MAX_LISTING_ENTRIES:
            omitted = len(names) - MAX_LISTING_ENTRIES
            names = [*names[:MAX_LISTING_ENTRIES], f"... [{omitted} more entries]"]
        return "\n".join(names) if names else "(empty directory)"

    def _file_search(self, args: dict[str, Any]) -> str:
        pattern = args["query"]
        max_results = args.get("max_results") or DEFAULT_MAX_RESULTS
        root = Path(self.workspace_root)
        matches = [
            self._relative(path)
            for path in self._iter_files(root)
            if fnmatch.fnmatch(self._relative(path), pattern)
            or fnmatch.fnmatch(path.name, pattern)
        ]
        if not matches:
            return f"No files matching '{pattern}'"
        return "\n".join(matches[:max_results])

    def _grep_search(self, args: dict[str, Any]) -> str:
        query = args["query"]
        include = args.get("include_pattern")
        try:
            regex = re.compile(query if args.get("is_regexp") else re.escape(query))
        except re.error as e:
            raise ToolArgumentError(f"Invalid regular expression: {e}") from e

        root = Path(self.workspace_root)
        lines: list[str] = []
        for path in self._iter_files(root):
            relative = self._relative(path)
            if include and not (
                fnmatch.fnmatch(relative, include) or fnmatch.fnmatch(path.name, include)
            ):
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for number, line in enumerate(content.splitlines(), start=1):
                if regex.search(line):
                    lines.append(f"{relative}:{number}: {line.strip()}")

        if not lines:
            return f"No matches for '{query}'"
        return self._truncate_text("\n".join(lines), max_chars=MAX_SEARCH_OUTPUT_CHARS)

    def _dispatch_tool(self, tool_name: str, args: dict[str, Any]) -> str:
        if tool_name == "read_file":
            return self._read_file(args)
        elif tool_name == "list_dir":
            return self._list_dir(args)
        elif tool_name == "file_search":
            return self._file_search(args)
        elif tool_name == "grep_search":
            return self._grep_search(args)
        raise ToolArgumentError(f"Unknown tool: {tool_name}")

    async def execute(self, tool_name: str, args: Any, tool_call_id: str = "") -> ToolResult:
        """Execute a tool call.

        Args:
            tool_name: Name of the tool to execute.
            args: Arguments for the tool.
            tool_call_id: Tool call ID from the LLM.

        Returns:
            ToolResult with the execution outcome.
        """
        try:
            normalized = self._normalize_tool_args(tool_name, args)
            # Filesystem walks block; keep them off the event loop
            content = await asyncio.to_thread(self._dispatch_tool, tool_name, normalized)
            success, error = True, None
        except (ToolArgumentError, OSError) as e:
            logger.warning(
                "tool_execution_failed",
                tool_name=tool_name,
                tool_call_id=tool_call_id,
                error=str(e),
            )
            content, success, error = f"Error: {e}", False, str(e)

        logger.debug(
            "tool_executed",
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            success=success,
        )
        return ToolResult(tool_call_id=tool_call_id, content=content, success=success, error=error)
