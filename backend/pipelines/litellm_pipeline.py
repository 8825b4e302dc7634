"""Streaming LiteLLM pipeline with an approval-gated tool loop.

One invocation renders the prompt through ``render_prompt``, streams the
model's reply as deltas, and, when the model asks for tools, routes every
call through the sink's approval request before executing it. Tool results
are appended to the conversation and the model is called again, up to
``max_tool_rounds`` times. Failures are raised; there are no retries.
"""

import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from comparison.cloner import Messages
from comparison.errors import TargetError
from comparison.gate import ApprovalState
from comparison.tool_format import parse_tool_args
from config import settings
from pipelines.base import InvocationContext, InvocationPipeline
from pipelines.tools import ToolExecutor, get_tool_definitions_for_llm

logger = structlog.get_logger(__name__)

_FAILURE_MESSAGES: tuple[tuple[type[Exception], str], ...] = (
    (AuthenticationError, "Authentication failed; check the provider API key"),
    (RateLimitError, "Rate limited by provider"),
    (Timeout, "Request timed out"),
    (ServiceUnavailableError, "Provider unavailable"),
    (BadRequestError, "Provider rejected the request"),
)


@dataclass
class _PendingToolCall:
    """A tool call assembled from streamed fragments."""

    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class _StreamResult:
    content: str = ""
    tool_calls: list[_PendingToolCall] = field(default_factory=list)
    finish_reason: str | None = None


def _describe_failure(error: Exception) -> str:
    for error_type, prefix in _FAILURE_MESSAGES:
        if isinstance(error, error_type):
            return f"{prefix}: {error}"
    return str(error) or type(error).__name__


class LiteLLMPipeline(InvocationPipeline):
    """Invokes targets through ``litellm.acompletion`` with streaming.

    Attributes:
        resolve_model: Maps a target id to a LiteLLM model string.
        tool_executor: Executes approved tool calls; None disables tools.
        temperature: Sampling temperature.
        max_tool_rounds: Maximum model calls that may end in tool use.
    """

    def __init__(
        self,
        resolve_model: Callable[[str], str] | None = None,
        tool_executor: ToolExecutor | None = None,
        temperature: float | None = None,
        max_tool_rounds: int | None = None,
    ) -> None:
        self.resolve_model = resolve_model or (lambda target_id: target_id)
        self.tool_executor = tool_executor
        self.temperature = temperature if temperature is not None else settings.temperature
        self.max_tool_rounds = (
            max_tool_rounds if max_tool_rounds is not None else settings.max_tool_rounds
        )

    async def _stream_completion(
        self,
        context: InvocationContext,
        model: str,
        messages: Messages,
    ) -> _StreamResult:
        """Make one streamed call, forwarding content deltas as they arrive."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature,
            "stream": True,
            "timeout": settings.llm_request_timeout_seconds,
        }
        if self.tool_executor is not None:
            kwargs["tools"] = get_tool_definitions_for_llm()
            kwargs["tool_choice"] = "auto"

        result = _StreamResult()
        fragments: dict[int, _PendingToolCall] = {}

        response = await acompletion(**kwargs)
        async for chunk in response:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta

            text = getattr(delta, "content", None)
            if text:
                result.content += text
                await context.sink.on_delta(text)

            # Tool calls arrive in fragments keyed by index
            for fragment in getattr(delta, "tool_calls", None) or []:
                index = getattr(fragment, "index", None) or 0
                pending = fragments.setdefault(index, _PendingToolCall())
                if fragment.id:
                    pending.id = fragment.id
                function = getattr(fragment, "function", None)
                if function is not None:
                    if function.name:
                        pending.name = function.name
                    if function.arguments:
                        pending.arguments += function.arguments

            if choice.finish_reason:
                result.finish_reason = choice.finish_reason

        result.tool_calls = [fragments[i] for i in sorted(fragments) if fragments[i].name]
        return result

    async def _run_tool_calls(
        self,
        context: InvocationContext,
        tool_calls: list[_PendingToolCall],
        messages: Messages,
        round_index: int,
    ) -> None:
        """Gate, execute and record every tool call of one model turn."""
        messages.append(
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments or "{}"},
                    }
                    for call in tool_calls
                ],
            }
        )

        for position, call in enumerate(tool_calls):
            call_id = call.id or f"call_{round_index}_{position}"
            arguments = parse_tool_args(call.arguments or "{}")
            state = await context.sink.request_tool_approval(call_id, call.name, arguments)

            if state == ApprovalState.APPROVED and self.tool_executor is not None:
                result = await self.tool_executor.execute(call.name, arguments, call_id)
                content = result.content
                await context.sink.tool_executed(call_id)
            else:
                content = "Tool call denied by the user."

            messages.append({"role": "tool", "tool_call_id": call.id or call_id, "content": content})

    async def invoke(self, context: InvocationContext) -> None:
        """Run one streamed invocation, including any approved tool rounds.

        Raises:
            TargetError: If the provider call fails or the tool loop is exhausted.
        """
        model = self.resolve_model(context.target_id)
        messages = self.render_prompt(context, self.build_messages(context))
        start_time = time.time()

        logger.info(
            "llm_invocation_start",
            request_id=context.request_id,
            target_id=context.target_id,
            model=model,
            message_count=len(messages),
        )

        for round_index in range(self.max_tool_rounds + 1):
            try:
                result = await self._stream_completion(context, model, messages)
            except TargetError:
                raise
            except Exception as e:
                logger.warning(
                    "llm_invocation_failed",
                    request_id=context.request_id,
                    target_id=context.target_id,
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise TargetError(context.target_id, _describe_failure(e)) from e

            if not result.tool_calls or self.tool_executor is None:
                logger.info(
                    "llm_invocation_complete",
                    request_id=context.request_id,
                    target_id=context.target_id,
                    model=model,
                    tool_rounds=round_index,
                    latency_ms=int((time.time() - start_time) * 1000),
                )
                return

            if round_index == self.max_tool_rounds:
                break
            await self._run_tool_calls(context, result.tool_calls, messages, round_index)

        raise TargetError(
            context.target_id,
            f"Tool loop exceeded {self.max_tool_rounds} rounds without a final answer",
        )
