"""Per-target invocation adapter.

All targets share one pipeline instance, and that pipeline has a single
prompt hook (``render_prompt``). Swapping the hook's behaviour per call is
unsafe: a second invocation can replace it before the first one renders, and
the first target would then be rendered with the second target's prompt.

Instead the hook is wrapped exactly once per pipeline instance. The wrapper
holds no per-target configuration; it reads the render observer and prompt
modifier from the InvocationContext it is called with. Each invocation owns
its context (and its frozen DispatchDescriptor), so no matter how many other
invocations run in between, rendering always applies the caller's own
configuration. No lock is taken around invocations.

``TargetAdapter.dispatch`` drives one invocation and turns the pipeline's
callbacks into an ordered stream of TargetEvents, forwarding each one to the
aggregator as it happens.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import threading
from collections.abc import AsyncIterator
from typing import Any

import structlog

from comparison.aggregator import ResponseAggregator, TargetEvent, ToolCallStatus
from comparison.cloner import DispatchDescriptor, Messages
from comparison.errors import TargetCancelledError, TargetError
from comparison.gate import ApprovalGate, ApprovalState, ProposedToolCall
from pipelines.base import InvocationContext, InvocationPipeline

logger = structlog.get_logger(__name__)

_HOOK_MARKER = "_context_hook_installed"
_install_lock = threading.Lock()


def install_prompt_hook(pipeline: InvocationPipeline) -> bool:
    """Wrap ``pipeline.render_prompt`` so it applies per-invocation configuration.

    Idempotent: a pipeline whose hook is already wrapped is left untouched.

    Args:
        pipeline: The shared pipeline instance.

    Returns:
        True if the hook was wrapped by this call, False if it already was.
    """
    with _install_lock:
        current = pipeline.render_prompt
        if getattr(current, _HOOK_MARKER, False):
            return False
        pipeline.render_prompt = _wrap_render_prompt(current)  # type: ignore[method-assign]
    logger.info("prompt_hook_installed", pipeline=type(pipeline).__name__)
    return True


def _wrap_render_prompt(current: Any) -> Any:
    """Build the context-reading wrapper around the original hook."""

    @functools.wraps(current)
    def render_with_context(context: InvocationContext, messages: Messages) -> Messages:
        descriptor = context.descriptor
        if descriptor.on_render_observed is not None:
            try:
                descriptor.on_render_observed([dict(m) for m in messages])
            except Exception as e:
                logger.warning(
                    "render_observer_failed",
                    request_id=descriptor.request_id,
                    target_id=descriptor.target_id,
                    error=str(e),
                )
        if descriptor.prompt_modifier is not None:
            messages = descriptor.prompt_modifier([dict(m) for m in messages])
        return current(context, messages)

    setattr(render_with_context, _HOOK_MARKER, True)
    return render_with_context


class _QueueSink:
    """InvocationSink that turns pipeline callbacks into queued TargetEvents."""

    def __init__(
        self,
        descriptor: DispatchDescriptor,
        queue: asyncio.Queue[TargetEvent],
        gate: ApprovalGate | None,
    ) -> None:
        self._descriptor = descriptor
        self._queue = queue
        self._gate = gate
        self._calls: dict[str, ProposedToolCall] = {}

    async def on_delta(self, text: str) -> None:
        if text:
            await self._queue.put(TargetEvent.delta(self._descriptor.target_id, text))

    async def request_tool_approval(
        self,
        tool_call_id: str,
        name: str,
        arguments: dict[str, Any] | None,
    ) -> ApprovalState:
        target_id = self._descriptor.target_id
        await self._queue.put(
            TargetEvent.tool_pending(target_id, tool_call_id, name, arguments)
        )

        if self._gate is None:
            logger.warning(
                "tool_call_denied_no_gate",
                request_id=self._descriptor.request_id,
                target_id=target_id,
                tool_call_id=tool_call_id,
            )
            state = ApprovalState.DENIED
        else:
            call = self._gate.propose(
                self._descriptor.request_id, target_id, tool_call_id, name, arguments
            )
            self._calls[tool_call_id] = call
            state = await self._gate.wait(call)
            if state == ApprovalState.DENIED:
                self._gate.mark_skipped(call)

        status = ToolCallStatus.APPROVED if state == ApprovalState.APPROVED else ToolCallStatus.DENIED
        await self._queue.put(TargetEvent.tool_resolved(target_id, tool_call_id, status))
        return state

    async def tool_executed(self, tool_call_id: str) -> None:
        call = self._calls.get(tool_call_id)
        if call is not None and self._gate is not None:
            self._gate.mark_executed(call)
        await self._queue.put(
            TargetEvent.tool_resolved(
                self._descriptor.target_id, tool_call_id, ToolCallStatus.EXECUTED
            )
        )


class TargetAdapter:
    """Drives one pipeline invocation per descriptor.

    Attributes:
        pipeline: The shared pipeline all targets are invoked through.
        aggregator: Optional aggregator every event is forwarded to.
        gate: Approval gate used when a descriptor does not carry its own.
    """

    def __init__(
        self,
        pipeline: InvocationPipeline,
        aggregator: ResponseAggregator | None = None,
        gate: ApprovalGate | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.aggregator = aggregator
        self.gate = gate
        install_prompt_hook(pipeline)

    async def _run_pipeline(
        self, context: InvocationContext, queue: asyncio.Queue[TargetEvent]
    ) -> None:
        """Run the invocation and enqueue exactly one terminal event."""
        target_id = context.target_id
        try:
            await self.pipeline.invoke(context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e if isinstance(e, TargetError) else TargetError(target_id, str(e) or type(e).__name__)
            logger.warning(
                "target_invocation_failed",
                request_id=context.request_id,
                target_id=target_id,
                error_type=type(e).__name__,
                error=error.message,
            )
            await queue.put(TargetEvent.failed(target_id, error.message))
            return
        await queue.put(TargetEvent.complete(target_id))

    def _forward(self, descriptor: DispatchDescriptor, event: TargetEvent) -> None:
        if self.aggregator is not None:
            self.aggregator.update_response(descriptor.request_id, event)

    async def dispatch(self, descriptor: DispatchDescriptor) -> AsyncIterator[TargetEvent]:
        """Invoke the pipeline for one descriptor and stream its events.

        Events are yielded in the order the pipeline produced them and end
        with exactly one terminal event (complete or error). Each event is
        forwarded to the aggregator before it is yielded.

        Args:
            descriptor: The target's dispatch descriptor.

        Yields:
            TargetEvent objects for this descriptor's target.
        """
        queue: asyncio.Queue[TargetEvent] = asyncio.Queue()
        sink = _QueueSink(descriptor, queue, descriptor.approval_gate or self.gate)
        context = InvocationContext(descriptor=descriptor, sink=sink)
        cancel_event = descriptor.cancel_event

        logger.debug(
            "target_dispatch_start",
            request_id=descriptor.request_id,
            target_id=descriptor.target_id,
            invocation_id=context.invocation_id,
        )

        invocation = asyncio.create_task(
            self._run_pipeline(context, queue),
            name=f"invoke_{descriptor.request_id}_{descriptor.target_id}",
        )
        cancel_waiter: asyncio.Task[bool] | None = (
            asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        )

        try:
            while True:
                getter: asyncio.Task[TargetEvent] = asyncio.create_task(queue.get())
                waiters: set[asyncio.Task[Any]] = {getter}
                if cancel_waiter is not None:
                    waiters.add(cancel_waiter)
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

                if cancel_event is not None and cancel_event.is_set():
                    # Output after cancellation is dropped, even if already queued
                    getter.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await getter
                    event = TargetEvent.failed(
                        descriptor.target_id,
                        TargetCancelledError(descriptor.target_id).message,
                        cancelled=True,
                    )
                    logger.info(
                        "target_cancelled",
                        request_id=descriptor.request_id,
                        target_id=descriptor.target_id,
                    )
                    self._forward(descriptor, event)
                    yield event
                    return

                event = getter.result()
                self._forward(descriptor, event)
                yield event
                if event.is_terminal:
                    return
        finally:
            for task in (invocation, cancel_waiter):
                if task is not None and not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            logger.debug(
                "target_dispatch_end",
                request_id=descriptor.request_id,
                target_id=descriptor.target_id,
            )
