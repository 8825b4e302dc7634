"""Scripted pipeline for development and tests.

Each target can be given a script: a sequence of text chunks, MockToolCall
items (which go through the approval gate) and MockFailure items (which make
the invocation raise). Targets without a script echo the rendered prompt's
system message and user message back.

Usage:
    >>> pipeline = MockPipeline(
    ...     scripts={
    ...         "gpt-5": ["Hello", " world"],
    ...         "claude-sonnet-4": [MockToolCall("read_file", {"path": "a.py"}), "done"],
    ...     }
    ... )
"""

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from comparison.cloner import Messages
from comparison.gate import ApprovalState
from pipelines.base import InvocationContext, InvocationPipeline

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class MockToolCall:
    """A tool call the mock target proposes. Approved calls report as executed."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    tool_call_id: str | None = None
    result: str = "ok"


@dataclass(frozen=True)
class MockFailure:
    """Makes the invocation raise at this point of the script."""

    message: str = "Mock target failure"


ScriptItem = str | MockToolCall | MockFailure


@dataclass(frozen=True)
class RenderRecord:
    """One rendered prompt, as the pipeline would have sent it."""

    request_id: str
    target_id: str
    invocation_id: str
    messages: Messages


class MockPipeline(InvocationPipeline):
    """Pipeline that replays per-target scripts.

    Attributes:
        scripts: Target id -> script items.
        chunk_delay: Seconds to sleep before each item, to force interleaving.
        render_log: Every rendered prompt, in render order.
        render_delay: Seconds to sleep between building and rendering the
            prompt, to widen the window other invocations run in.
    """

    def __init__(
        self,
        scripts: Mapping[str, Sequence[ScriptItem]] | None = None,
        chunk_delay: float = 0.0,
        render_delay: float = 0.0,
    ) -> None:
        self.scripts: dict[str, list[ScriptItem]] = {
            target_id: list(items) for target_id, items in (scripts or {}).items()
        }
        self.chunk_delay = chunk_delay
        self.render_delay = render_delay
        self.render_log: list[RenderRecord] = []

    def rendered_for(self, target_id: str) -> list[Messages]:
        return [record.messages for record in self.render_log if record.target_id == target_id]

    def _default_script(self, messages: Messages) -> list[ScriptItem]:
        system = next((m.get("content") for m in messages if m.get("role") == "system"), None)
        user = messages[-1].get("content") if messages else ""
        chunks: list[ScriptItem] = [f"[{system}] "] if system else []
        chunks.extend(f"{word} " for word in str(user).split())
        return chunks or ["(empty)"]

    async def invoke(self, context: InvocationContext) -> None:
        messages = self.build_messages(context)
        if self.render_delay:
            await asyncio.sleep(self.render_delay)
        rendered = self.render_prompt(context, messages)
        self.render_log.append(
            RenderRecord(
                request_id=context.request_id,
                target_id=context.target_id,
                invocation_id=context.invocation_id,
                messages=[dict(m) for m in rendered],
            )
        )

        script = self.scripts.get(context.target_id)
        if script is None:
            script = self._default_script(rendered)

        for position, item in enumerate(script):
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)

            if isinstance(item, MockFailure):
                raise RuntimeError(item.message)

            if isinstance(item, MockToolCall):
                call_id = item.tool_call_id or f"{context.target_id}_call_{position}"
                state = await context.sink.request_tool_approval(call_id, item.name, item.arguments)
                if state == ApprovalState.APPROVED:
                    await context.sink.tool_executed(call_id)
                    await context.sink.on_delta(f"[{item.name}: {item.result}] ")
                else:
                    await context.sink.on_delta(f"[{item.name}: denied] ")
                continue

            await context.sink.on_delta(item)

        logger.debug(
            "mock_invocation_complete",
            request_id=context.request_id,
            target_id=context.target_id,
        )
