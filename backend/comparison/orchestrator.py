"""Fan-out orchestration for one logical request across many targets.

The orchestrator clones the request into per-target descriptors, starts one
adapter task per target without waiting for any of them, and resolves once
the aggregator reports the request complete. Progress is reported
incrementally through the ``on_delta`` / ``on_complete`` callbacks.

Usage:
    >>> orchestrator = ComparisonOrchestrator(MockPipeline())
    >>> request = clone_request("Explain closures", [])
    >>> result = await orchestrator.send_to_multiple_targets(
    ...     request,
    ...     ["gpt-5", "claude-sonnet-4"],
    ...     on_delta=lambda target_id, event, aggregated: print(target_id, event.text),
    ... )
    >>> result.is_complete
    True
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Mapping, Sequence

import structlog

from comparison.adapter import TargetAdapter
from comparison.aggregator import AggregatedResponse, ResponseAggregator, TargetEvent
from comparison.cloner import (
    DispatchDescriptor,
    LogicalRequest,
    PromptModifier,
    RenderObserver,
    create_parallel_requests,
    validate_request,
)
from comparison.errors import InvalidRequestError
from comparison.gate import ApprovalDecision, ApprovalGate, ProposedToolCall
from comparison.prompts import PromptModification, build_prompt_modifier
from pipelines.base import InvocationPipeline

logger = structlog.get_logger(__name__)

DeltaCallback = Callable[[str, TargetEvent, AggregatedResponse], None]
CompleteCallback = Callable[[str, AggregatedResponse], None]


class ComparisonOrchestrator:
    """Sends one request to many targets and merges their progress.

    Attributes:
        pipeline: Pipeline shared by every target invocation.
        aggregator: Tracks per-request state.
        gate: Approval gate for tool calls.
    """

    def __init__(
        self,
        pipeline: InvocationPipeline,
        aggregator: ResponseAggregator | None = None,
        gate: ApprovalGate | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.aggregator = aggregator or ResponseAggregator()
        self.gate = gate or ApprovalGate()
        self.adapter = TargetAdapter(pipeline, self.aggregator, self.gate)
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, set[asyncio.Task[None]]] = {}

    @staticmethod
    def _resolve_modifiers(
        prompt_modifiers: Mapping[str, PromptModifier | PromptModification | None] | None,
    ) -> dict[str, PromptModifier | None]:
        resolved: dict[str, PromptModifier | None] = {}
        for target_id, value in (prompt_modifiers or {}).items():
            if isinstance(value, PromptModification):
                resolved[target_id] = build_prompt_modifier(value)
            else:
                resolved[target_id] = value
        return resolved

    async def _drive_target(self, descriptor: DispatchDescriptor) -> None:
        """Consume one adapter stream. The adapter forwards events to the aggregator."""
        try:
            async for _event in self.adapter.dispatch(descriptor):
                pass
        except Exception as e:
            # The adapter contains pipeline failures; anything reaching here is
            # a bug in the adapter itself, so the target is closed out with it.
            logger.error(
                "target_task_failed",
                request_id=descriptor.request_id,
                target_id=descriptor.target_id,
                error=str(e),
            )
            self.aggregator.update_response(
                descriptor.request_id,
                TargetEvent.failed(descriptor.target_id, f"Internal error: {e}"),
            )

    async def _watch_cancellation(self, request_id: str, cancel_event: asyncio.Event) -> None:
        await cancel_event.wait()
        self.gate.cancel_request(request_id)

    async def send_to_multiple_targets(
        self,
        request: LogicalRequest,
        target_ids: Sequence[str],
        prompt_modifiers: Mapping[str, PromptModifier | PromptModification | None] | None = None,
        on_delta: DeltaCallback | None = None,
        on_complete: CompleteCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        render_observer: Callable[[str], RenderObserver | None] | None = None,
    ) -> AggregatedResponse:
        """Dispatch a request to every target concurrently and await the aggregate.

        Args:
            request: The cloned logical request.
            target_ids: Unique target ids to compare.
            prompt_modifiers: Target id -> modifier, PromptModification, or None
                (None or missing means the target's default prompt).
            on_delta: Called for every non-terminal update with
                (target_id, event, aggregated).
            on_complete: Called when a target finishes with (target_id, aggregated).
            cancel_event: Cancellation signal for the whole request.
            render_observer: Optional factory returning the render observer
                for a target id.

        Returns:
            The final AggregatedResponse (every target complete or errored).

        Raises:
            InvalidRequestError: If the request or target list is malformed.
            DuplicateRequestError: If the request id is already in flight.
        """
        if not validate_request(request):
            raise InvalidRequestError(f"Request '{request.request_id}' failed validation")

        request_id = request.request_id
        cancel_event = cancel_event or asyncio.Event()
        observers = (
            {target_id: render_observer(target_id) for target_id in target_ids}
            if render_observer is not None
            else None
        )
        descriptors = create_parallel_requests(
            request,
            target_ids,
            prompt_modifiers=self._resolve_modifiers(prompt_modifiers),
            render_observers=observers,
            approval_gate=self.gate,
            cancel_event=cancel_event,
        )

        done = asyncio.Event()

        def on_update(aggregated: AggregatedResponse, event: TargetEvent) -> None:
            if event.is_terminal:
                if on_complete is not None:
                    on_complete(event.target_id, aggregated)
            elif on_delta is not None:
                on_delta(event.target_id, event, aggregated)
            if aggregated.is_complete:
                done.set()

        self.aggregator.start_aggregation(
            request_id, request.message, target_ids, on_update=on_update
        )
        self._cancel_events[request_id] = cancel_event

        logger.info(
            "comparison_dispatch_start",
            request_id=request_id,
            target_ids=list(target_ids),
            modified_targets=[d.target_id for d in descriptors if d.prompt_modifier],
        )

        tasks = {
            asyncio.create_task(
                self._drive_target(descriptor),
                name=f"target_{request_id}_{descriptor.target_id}",
            )
            for descriptor in descriptors
        }
        self._tasks[request_id] = tasks
        watcher = asyncio.create_task(
            self._watch_cancellation(request_id, cancel_event),
            name=f"cancel_watch_{request_id}",
        )

        done_waiter = asyncio.create_task(done.wait(), name=f"done_wait_{request_id}")
        # Targets finishing without completing the aggregate means it was disposed
        all_finished = asyncio.gather(*tasks, return_exceptions=True)

        try:
            await asyncio.wait({done_waiter, all_finished}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            # Caller went away: stop every target before propagating
            cancel_event.set()
            self.gate.cancel_request(request_id)
            raise
        finally:
            for helper in (watcher, done_waiter):
                helper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await helper
            await asyncio.gather(*tasks, return_exceptions=True)
            self._tasks.pop(request_id, None)
            self._cancel_events.pop(request_id, None)
            result = self.aggregator.complete_aggregation(request_id)
            self.gate.release_request(request_id)

        logger.info(
            "comparison_dispatch_complete",
            request_id=request_id,
            success_count=result.stats.success_count if result else 0,
            error_count=result.stats.error_count if result else 0,
        )
        if result is None:
            # Only possible if the aggregator was disposed mid-request
            raise RuntimeError(f"Aggregation for '{request_id}' was released early")
        return result

    def cancel_request(self, request_id: str) -> bool:
        """Signal cancellation for an in-flight request. Returns False if unknown."""
        cancel_event = self._cancel_events.get(request_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        self.gate.cancel_request(request_id)
        logger.info("comparison_cancel_requested", request_id=request_id)
        return True

    def cancel_all(self) -> None:
        for request_id in list(self._cancel_events):
            self.cancel_request(request_id)

    def get_active_request_ids(self) -> list[str]:
        return list(self._cancel_events.keys())

    def get_snapshot(self, request_id: str) -> AggregatedResponse | None:
        return self.aggregator.get_aggregation(request_id)

    def submit_decision(self, decision: ApprovalDecision) -> list[ProposedToolCall]:
        return self.gate.decide(decision)

    def dispose(self) -> None:
        """Cancel every in-flight request and release the aggregator.

        Pending send_to_multiple_targets calls raise RuntimeError once their
        targets have stopped.
        """
        self.cancel_all()
        self.aggregator.dispose()
