"""Run manager for comparison requests.

This module provides the RunManager class that owns the lifecycle of
comparison runs: it turns an API call into a LogicalRequest, starts the
orchestrator in a background task, and publishes merged progress on the
event bus for WebSocket subscribers.

The RunManager coordinates between:
- ComparisonOrchestrator: Fan-out, aggregation and approval gating
- EventBus: Real-time event streaming to the frontend
- PromptModificationStore / TargetSelectionService: Saved user settings

Usage:
    >>> run_manager = RunManager(orchestrator, get_event_bus(), prompt_store, selection)
    >>> request_id = await run_manager.start_comparison("Explain closures")
    >>> run_manager.get_run(request_id).status
    <RunStatus.RUNNING: 'running'>
    >>> await run_manager.cleanup_all()
"""

import asyncio
import contextlib
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from comparison.aggregator import (
    AggregatedResponse,
    ResponseAggregator,
    TargetEvent,
    TargetEventKind,
)
from comparison.cloner import (
    HistoryTurn,
    LogicalRequest,
    Messages,
    RenderObserver,
    clone_request,
)
from comparison.gate import ApprovalDecision, Decision, ProposedToolCall
from comparison.orchestrator import ComparisonOrchestrator
from comparison.prompts import (
    PromptModification,
    PromptModificationStore,
    analyze_prompt,
    format_prompt_for_display,
)
from comparison.selection import TargetSelectionService
from comparison.tool_format import format_tool_call
from config import settings
from events import EventBus
from events.types import ComparisonEvent, EventType
from models.schemas import RunStatus

logger = structlog.get_logger(__name__)

_TERMINAL_STATUSES = (RunStatus.COMPLETE, RunStatus.ERROR, RunStatus.CANCELLED)


@dataclass
class ComparisonRun:
    """State of one comparison run.

    Attributes:
        request_id: The logical request id (e.g., "req_abc123def456")
        message: The user message
        target_ids: Participating targets, in order
        status: Current run status
        created_at: Unix timestamp when the run was created
        started_at: Unix timestamp when dispatch began
        completed_at: Unix timestamp when the run finished
        error_message: Error message if status is "error"
        modified_targets: Targets that ran with a prompt modification
        result: Final presentation projection, once complete
        cancel_event: Cancellation signal handed to the orchestrator
        timed_out: True if the run was cancelled by the comparison timeout
    """

    request_id: str
    message: str
    target_ids: list[str]
    status: RunStatus
    created_at: float
    started_at: float | None = None
    completed_at: float | None = None
    error_message: str | None = None
    modified_targets: list[str] = field(default_factory=list)
    result: dict[str, Any] | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    timed_out: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_STATUSES


class RunManager:
    """Manages the lifecycle of comparison runs.

    Thread Safety:
        The run registry is guarded by an asyncio.Lock. Orchestrator
        callbacks run synchronously inside aggregator updates and publish
        with ``EventBus.publish_sync``.

    Attributes:
        orchestrator: The comparison orchestrator
        event_bus: Event bus for real-time event streaming
        prompt_store: Saved per-target prompt modifications
        selection: Saved target selection
    """

    def __init__(
        self,
        orchestrator: ComparisonOrchestrator,
        event_bus: EventBus,
        prompt_store: PromptModificationStore | None = None,
        selection: TargetSelectionService | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.event_bus = event_bus
        self.prompt_store = prompt_store
        self.selection = selection
        self._runs: dict[str, ComparisonRun] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()
        logger.info("run_manager_initialized")

    def _resolve_targets(self, target_ids: Sequence[str] | None) -> list[str]:
        if self.selection is None:
            return list(target_ids) if target_ids else list(settings.default_targets)
        if target_ids:
            return self.selection.validate_targets(target_ids)
        return self.selection.selected_targets()

    async def start_comparison(
        self,
        message: str,
        history: Sequence[HistoryTurn | Mapping[str, Any]] | None = None,
        target_ids: Sequence[str] | None = None,
    ) -> str:
        """Create and start a comparison run.

        This method:
        1. Clones the message and history into a LogicalRequest
        2. Resolves targets (explicit list or the saved selection)
        3. Loads the saved prompt modifications of those targets
        4. Starts the orchestrator in a background task

        Args:
            message: The user message
            history: Prior turns, oldest first
            target_ids: Targets to compare; defaults to the saved selection

        Returns:
            The logical request id

        Raises:
            InvalidRequestError: If the message or history is malformed.
            SelectionError: If explicit targets are unknown or out of bounds.
        """
        targets = self._resolve_targets(target_ids)
        request = clone_request(message, history)

        modifications: dict[str, PromptModification | None] = (
            self.prompt_store.modifications_for(targets) if self.prompt_store else {}
        )
        run = ComparisonRun(
            request_id=request.request_id,
            message=request.message,
            target_ids=targets,
            status=RunStatus.STARTED,
            created_at=time.time(),
            modified_targets=[t for t, mod in modifications.items() if mod is not None],
        )

        async with self._lock:
            self._runs[run.request_id] = run
            task = asyncio.create_task(
                self._run_comparison(run, request, modifications),
                name=f"comparison_{run.request_id}",
            )
            self._tasks[run.request_id] = task

            def _remove_task(t: asyncio.Task[None], rid: str = run.request_id) -> None:
                self._tasks.pop(rid, None)

            task.add_done_callback(_remove_task)

        logger.info(
            "comparison_started",
            request_id=run.request_id,
            target_ids=targets,
            modified_targets=run.modified_targets,
            message_length=len(run.message),
        )
        return run.request_id

    def _publish(
        self,
        run: ComparisonRun,
        event_type: EventType,
        target_id: str | None = None,
        **data: Any,
    ) -> None:
        self.event_bus.publish_sync(
            ComparisonEvent(
                type=event_type,
                request_id=run.request_id,
                target_id=target_id,
                data=data,
            )
        )

    def _on_delta(
        self, run: ComparisonRun, target_id: str, event: TargetEvent, aggregated: AggregatedResponse
    ) -> None:
        state = aggregated.per_target[target_id]
        if event.kind == TargetEventKind.DELTA:
            self._publish(
                run,
                EventType.TARGET_DELTA,
                target_id,
                text=event.text,
                accumulated_length=len(state.accumulated_text),
            )
        elif event.kind == TargetEventKind.TOOL_PENDING:
            self._publish(
                run,
                EventType.TOOL_PENDING,
                target_id,
                tool_call_id=event.tool_call_id,
                tool_name=event.tool_name,
                arguments=event.arguments or {},
                display_message=format_tool_call(event.tool_name or "", event.arguments),
            )
        elif event.kind == TargetEventKind.TOOL_RESOLVED:
            self._publish(
                run,
                EventType.TOOL_RESOLVED,
                target_id,
                tool_call_id=event.tool_call_id,
                status=event.tool_status.value if event.tool_status else None,
            )

    def _on_complete(
        self, run: ComparisonRun, target_id: str, aggregated: AggregatedResponse
    ) -> None:
        state = aggregated.per_target[target_id]
        if state.error is not None:
            self._publish(
                run,
                EventType.TARGET_ERROR,
                target_id,
                error=state.error,
                cancelled=state.cancelled,
            )
        else:
            self._publish(
                run,
                EventType.TARGET_COMPLETE,
                target_id,
                response=state.accumulated_text,
                response_time_ms=state.response_time_ms,
            )

    def _render_observer(self, run: ComparisonRun, target_id: str) -> RenderObserver:
        modified = target_id in run.modified_targets

        def observe(messages: Messages) -> None:
            self._publish(
                run,
                EventType.PROMPT_RENDERED,
                target_id,
                prompt=format_prompt_for_display(messages),
                analysis=analyze_prompt(messages),
                modified=modified,
            )

        return observe

    def _on_timeout(self, run: ComparisonRun) -> None:
        if run.is_terminal:
            return
        logger.warning(
            "comparison_timeout",
            request_id=run.request_id,
            timeout_seconds=settings.comparison_timeout_seconds,
        )
        run.timed_out = True
        run.cancel_event.set()

    async def _run_comparison(
        self,
        run: ComparisonRun,
        request: LogicalRequest,
        modifications: Mapping[str, PromptModification | None],
    ) -> None:
        """Run the orchestrator in the background and publish its lifecycle."""
        timer = asyncio.get_running_loop().call_later(
            settings.comparison_timeout_seconds, self._on_timeout, run
        )
        try:
            await self.event_bus.publish(
                ComparisonEvent(
                    type=EventType.REQUEST_STARTED,
                    request_id=run.request_id,
                    data={
                        "message": run.message,
                        "target_ids": run.target_ids,
                        "modified_targets": run.modified_targets,
                    },
                )
            )

            async with self._lock:
                run.status = RunStatus.RUNNING
                run.started_at = time.time()

            aggregated = await self.orchestrator.send_to_multiple_targets(
                request,
                run.target_ids,
                prompt_modifiers=modifications,
                on_delta=lambda target_id, event, agg: self._on_delta(run, target_id, event, agg),
                on_complete=lambda target_id, agg: self._on_complete(run, target_id, agg),
                cancel_event=run.cancel_event,
                render_observer=lambda target_id: self._render_observer(run, target_id),
            )
            result = ResponseAggregator.to_webview_format(aggregated)

            async with self._lock:
                run.result = result
                run.completed_at = time.time()
                if run.timed_out:
                    run.status = RunStatus.ERROR
                    run.error_message = (
                        f"Comparison timed out after {settings.comparison_timeout_seconds}s"
                    )
                elif run.cancel_event.is_set():
                    run.status = RunStatus.CANCELLED
                else:
                    run.status = RunStatus.COMPLETE

            await self.event_bus.publish(
                ComparisonEvent(
                    type=EventType.REQUEST_COMPLETE,
                    request_id=run.request_id,
                    data={"status": run.status.value, "result": result},
                )
            )
            if run.status == RunStatus.CANCELLED:
                await self.event_bus.publish(
                    ComparisonEvent(
                        type=EventType.REQUEST_CANCELLED,
                        request_id=run.request_id,
                        data={"reason": "user_cancelled"},
                    )
                )
            elif run.status == RunStatus.ERROR:
                await self.event_bus.publish(
                    ComparisonEvent(
                        type=EventType.REQUEST_ERROR,
                        request_id=run.request_id,
                        data={"error": run.error_message, "phase": "timeout"},
                    )
                )

            logger.info(
                "comparison_complete",
                request_id=run.request_id,
                status=run.status.value,
                success_count=aggregated.stats.success_count,
                error_count=aggregated.stats.error_count,
            )

        except asyncio.CancelledError:
            logger.info("comparison_task_cancelled", request_id=run.request_id)
            async with self._lock:
                run.status = RunStatus.CANCELLED
                run.completed_at = time.time()
            raise

        except Exception as e:
            logger.error(
                "comparison_error",
                request_id=run.request_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            async with self._lock:
                run.status = RunStatus.ERROR
                run.error_message = str(e)
                run.completed_at = time.time()

            await self.event_bus.publish(
                ComparisonEvent(
                    type=EventType.REQUEST_ERROR,
                    request_id=run.request_id,
                    data={"error": str(e), "phase": "execution"},
                )
            )

        finally:
            timer.cancel()
            await self.event_bus.close_request(run.request_id)

    async def cancel_comparison(self, request_id: str) -> bool:
        """Cancel a running comparison.

        Every target still running reports a cancelled error and pending
        tool calls are denied; the run then finishes through its normal
        completion path.

        Returns:
            False if the run had already finished.

        Raises:
            KeyError: If the run doesn't exist.
        """
        async with self._lock:
            run = self._runs.get(request_id)
            if run is None:
                raise KeyError(f"Comparison '{request_id}' not found")
            if run.is_terminal:
                logger.info(
                    "cancel_comparison_noop_terminal_state",
                    request_id=request_id,
                    status=run.status.value,
                )
                return False
            run.cancel_event.set()

        logger.info("cancel_comparison_requested", request_id=request_id)
        return True

    def submit_decision(
        self,
        request_id: str,
        decision: Decision,
        target_id: str | None = None,
        tool_call_id: str | None = None,
    ) -> list[ProposedToolCall]:
        """Apply an approval decision to the run's pending tool calls.

        Raises:
            KeyError: If the run doesn't exist.
        """
        if request_id not in self._runs:
            raise KeyError(f"Comparison '{request_id}' not found")

        kwargs: dict[str, str] = {}
        if target_id:
            kwargs["target_id"] = target_id
        if tool_call_id:
            kwargs["tool_call_id"] = tool_call_id
        return self.orchestrator.submit_decision(
            ApprovalDecision(request_id=request_id, decision=decision, **kwargs)
        )

    def pending_tool_calls(self, request_id: str) -> list[dict[str, Any]]:
        """Tool calls of a run still waiting for a decision.

        Raises:
            KeyError: If the run doesn't exist.
        """
        if request_id not in self._runs:
            raise KeyError(f"Comparison '{request_id}' not found")
        return [
            {**call.to_dict(), "display_message": format_tool_call(call.name, call.arguments)}
            for call in self.orchestrator.gate.pending_calls(request_id)
        ]

    def get_run(self, request_id: str) -> ComparisonRun | None:
        return self._runs.get(request_id)

    def get_all_runs(self) -> list[ComparisonRun]:
        return list(self._runs.values())

    def get_active_count(self) -> int:
        return sum(1 for run in self._runs.values() if not run.is_terminal)

    def get_snapshot(self, request_id: str) -> dict[str, Any] | None:
        """Live projection while running, the final one afterwards."""
        run = self._runs.get(request_id)
        if run is None:
            return None
        if run.result is not None:
            return run.result
        aggregated = self.orchestrator.get_snapshot(request_id)
        return ResponseAggregator.to_webview_format(aggregated) if aggregated else None

    async def cleanup_all(self) -> None:
        """Cancel every running comparison and drop all runs.

        Called during application shutdown.
        """
        logger.info("cleanup_all_start", run_count=len(self._runs))

        async with self._lock:
            tasks = list(self._tasks.items())
            self._tasks.clear()
            request_ids = list(self._runs.keys())

        for request_id, task in tasks:
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            logger.debug("cleanup_task_cancelled", request_id=request_id)

        for request_id in request_ids:
            self.event_bus.clear_event_history(request_id)

        async with self._lock:
            self._runs.clear()

        logger.info("cleanup_all_complete")
