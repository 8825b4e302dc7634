"""Response aggregation for one logical request fanned out to many targets.

The ResponseAggregator owns the only mutable state of a comparison: per-target
text, tool calls, errors and completion bookkeeping. Every mutation goes
through ``update_response``, which applies one TargetEvent as an indivisible
read-modify-write under a lock, so concurrent targets of the same request can
report in any interleaving without corrupting each other's state.

Completion is computed in exactly one place: when the last pending target
reports a terminal event, ``is_complete`` flips to True and ``end_time`` is
stamped. A second terminal event for the same target is ignored.

Usage:
    >>> aggregator = ResponseAggregator()
    >>> aggregator.start_aggregation("r1", "hi", ["m1", "m2"])
    >>> aggregator.update_response("r1", TargetEvent.from_response("m1", "ok", is_complete=True))
    >>> aggregator.update_response(
    ...     "r1", TargetEvent.from_response("m2", "", is_complete=True, error="boom")
    ... ).is_complete
    True
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from comparison.errors import DuplicateRequestError
from comparison.tool_format import format_tool_call, format_tool_call_summary

logger = structlog.get_logger(__name__)


class TargetEventKind(StrEnum):
    """Kinds of events a target's invocation produces."""

    DELTA = "delta"
    TOOL_PENDING = "tool_pending"
    TOOL_RESOLVED = "tool_resolved"
    COMPLETE = "complete"
    ERROR = "error"


class ToolCallStatus(StrEnum):
    """Status of a tool call as recorded in a target's state."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXECUTED = "executed"


@dataclass(frozen=True)
class TargetEvent:
    """One event produced for one target.

    ``text`` is appended to the target's accumulated text. When ``response``
    is set it replaces the accumulated text first (a full snapshot).

    Attributes:
        target_id: The target that produced the event.
        kind: What happened.
        text: Text delta to append.
        response: Optional full-text snapshot replacing the accumulated text.
        error: Error message (ERROR events only).
        tool_call_id: Tool call id (tool events only).
        tool_name: Tool name (TOOL_PENDING only).
        arguments: Tool arguments if known (TOOL_PENDING only).
        tool_status: New tool call status (TOOL_RESOLVED only).
        cancelled: True when an ERROR event was caused by cancellation.
        timestamp: Unix timestamp of the event.
    """

    target_id: str
    kind: TargetEventKind
    text: str = ""
    response: str | None = None
    error: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments: dict[str, Any] | None = None
    tool_status: ToolCallStatus | None = None
    cancelled: bool = False
    timestamp: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.kind in (TargetEventKind.COMPLETE, TargetEventKind.ERROR)

    @classmethod
    def delta(cls, target_id: str, text: str) -> TargetEvent:
        return cls(target_id=target_id, kind=TargetEventKind.DELTA, text=text)

    @classmethod
    def tool_pending(
        cls,
        target_id: str,
        tool_call_id: str,
        name: str,
        arguments: dict[str, Any] | None = None,
    ) -> TargetEvent:
        return cls(
            target_id=target_id,
            kind=TargetEventKind.TOOL_PENDING,
            tool_call_id=tool_call_id,
            tool_name=name,
            arguments=arguments,
        )

    @classmethod
    def tool_resolved(
        cls, target_id: str, tool_call_id: str, status: ToolCallStatus
    ) -> TargetEvent:
        return cls(
            target_id=target_id,
            kind=TargetEventKind.TOOL_RESOLVED,
            tool_call_id=tool_call_id,
            tool_status=status,
        )

    @classmethod
    def complete(cls, target_id: str, response: str | None = None) -> TargetEvent:
        return cls(target_id=target_id, kind=TargetEventKind.COMPLETE, response=response)

    @classmethod
    def failed(
        cls, target_id: str, error: str, *, cancelled: bool = False
    ) -> TargetEvent:
        return cls(
            target_id=target_id,
            kind=TargetEventKind.ERROR,
            error=error,
            cancelled=cancelled,
        )

    @classmethod
    def from_response(
        cls,
        model_id: str,
        response: str,
        *,
        is_complete: bool,
        error: str | None = None,
    ) -> TargetEvent:
        """Build an event from a full response snapshot.

        Args:
            model_id: The target id.
            response: The complete text received so far.
            is_complete: Whether the target has finished.
            error: Error message if the target failed.
        """
        if error:
            return cls(
                target_id=model_id,
                kind=TargetEventKind.ERROR,
                response=response,
                error=error,
            )
        kind = TargetEventKind.COMPLETE if is_complete else TargetEventKind.DELTA
        return cls(target_id=model_id, kind=kind, response=response)


@dataclass
class ToolCallRecord:
    """A tool call as seen in a target's state."""

    tool_call_id: str
    name: str
    status: ToolCallStatus = ToolCallStatus.PENDING
    arguments: dict[str, Any] | None = None
    display_message: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.tool_call_id,
            "tool_name": self.name,
            "status": self.status.value,
            "parameters": self.arguments or {},
            "display_message": self.display_message,
            "timestamp": self.timestamp,
        }


@dataclass
class TargetState:
    """Progress of one target within an aggregation."""

    target_id: str
    accumulated_text: str = ""
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    error: str | None = None
    is_complete: bool = False
    cancelled: bool = False
    started_at: float = field(default_factory=time.time)
    last_update: float = field(default_factory=time.time)
    completed_at: float | None = None

    @property
    def response_time_ms(self) -> int | None:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at) * 1000)

    def find_tool_call(self, tool_call_id: str) -> ToolCallRecord | None:
        for record in self.tool_calls:
            if record.tool_call_id == tool_call_id:
                return record
        return None


@dataclass
class ResponseStats:
    success_count: int = 0
    error_count: int = 0


@dataclass
class AggregatedResponse:
    """Merged state of every target of one logical request.

    Invariant: ``pending_targets`` and ``completed_targets`` are disjoint and
    their union is exactly ``target_ids``. ``is_complete`` is True iff
    ``pending_targets`` is empty, and ``end_time`` is set at that transition.
    """

    request_id: str
    original_message: str
    target_ids: tuple[str, ...]
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    pending_targets: set[str] = field(default_factory=set)
    completed_targets: set[str] = field(default_factory=set)
    per_target: dict[str, TargetState] = field(default_factory=dict)
    stats: ResponseStats = field(default_factory=ResponseStats)
    is_complete: bool = False


UpdateCallback = Callable[[AggregatedResponse, TargetEvent], None]


@dataclass
class _Tracked:
    aggregated: AggregatedResponse
    on_update: UpdateCallback | None = None


class ResponseAggregator:
    """Tracks AggregatedResponses by request id.

    Thread Safety:
        All state changes happen under a threading.Lock, so updates may
        arrive from the event loop or from worker threads.
    """

    def __init__(self) -> None:
        self._aggregations: dict[str, _Tracked] = {}
        self._lock = threading.Lock()
        self._disposed = False

    def start_aggregation(
        self,
        request_id: str,
        message: str,
        target_ids: Sequence[str],
        on_update: UpdateCallback | None = None,
    ) -> AggregatedResponse:
        """Begin tracking a logical request.

        Args:
            request_id: The logical request id.
            message: The original user message.
            target_ids: Non-empty list of participating targets.
            on_update: Optional callback run after every successful update.

        Returns:
            The new AggregatedResponse with every target pending.

        Raises:
            ValueError: If target_ids is empty or contains duplicates.
            DuplicateRequestError: If request_id is already tracked.
            RuntimeError: If the aggregator has been disposed.
        """
        if not target_ids:
            raise ValueError("At least one target is required")
        if len(set(target_ids)) != len(target_ids):
            raise ValueError("Target ids must be unique")

        now = time.time()
        aggregated = AggregatedResponse(
            request_id=request_id,
            original_message=message,
            target_ids=tuple(target_ids),
            start_time=now,
            pending_targets=set(target_ids),
            per_target={
                target_id: TargetState(target_id=target_id, started_at=now, last_update=now)
                for target_id in target_ids
            },
        )

        with self._lock:
            if self._disposed:
                raise RuntimeError("ResponseAggregator has been disposed")
            if request_id in self._aggregations:
                raise DuplicateRequestError(request_id)
            self._aggregations[request_id] = _Tracked(aggregated, on_update)

        logger.info(
            "aggregation_started",
            request_id=request_id,
            target_ids=list(target_ids),
        )
        return aggregated

    def update_response(
        self, request_id: str, event: TargetEvent
    ) -> AggregatedResponse | None:
        """Apply one target event to its aggregation.

        Args:
            request_id: The logical request id.
            event: The event to apply.

        Returns:
            The updated AggregatedResponse, or None if the request (or the
            event's target) is not tracked. Late events after cancellation or
            disposal are expected and are not errors.
        """
        with self._lock:
            tracked = self._aggregations.get(request_id)
            if tracked is None:
                logger.debug(
                    "update_for_unknown_request",
                    request_id=request_id,
                    target_id=event.target_id,
                    kind=event.kind.value,
                )
                return None

            aggregated = tracked.aggregated
            state = aggregated.per_target.get(event.target_id)
            if state is None:
                logger.warning(
                    "update_for_unknown_target",
                    request_id=request_id,
                    target_id=event.target_id,
                )
                return None

            if state.is_complete:
                # Terminal once: later events for a finished target change nothing
                return aggregated

            self._apply_event(state, event)

            became_complete = False
            if event.is_terminal:
                became_complete = self._complete_target(aggregated, state, event)

            on_update = tracked.on_update

        if event.is_terminal:
            logger.info(
                "target_finished",
                request_id=request_id,
                target_id=event.target_id,
                success=event.kind == TargetEventKind.COMPLETE,
                cancelled=event.cancelled,
                pending=len(aggregated.pending_targets),
            )
        if became_complete:
            logger.info(
                "aggregation_complete",
                request_id=request_id,
                success_count=aggregated.stats.success_count,
                error_count=aggregated.stats.error_count,
                duration_ms=int((aggregated.end_time - aggregated.start_time) * 1000),
            )

        if on_update is not None:
            try:
                on_update(aggregated, event)
            except Exception as e:
                logger.error(
                    "aggregation_update_callback_failed",
                    request_id=request_id,
                    target_id=event.target_id,
                    error=str(e),
                )

        return aggregated

    def _apply_event(self, state: TargetState, event: TargetEvent) -> None:
        if event.response is not None:
            state.accumulated_text = event.response
        if event.text:
            state.accumulated_text += event.text

        if event.kind == TargetEventKind.TOOL_PENDING and event.tool_call_id:
            if state.find_tool_call(event.tool_call_id) is None:
                name = event.tool_name or "unknown_tool"
                state.tool_calls.append(
                    ToolCallRecord(
                        tool_call_id=event.tool_call_id,
                        name=name,
                        arguments=event.arguments,
                        display_message=format_tool_call(name, event.arguments),
                        timestamp=event.timestamp,
                    )
                )
        elif event.kind == TargetEventKind.TOOL_RESOLVED and event.tool_call_id:
            status = event.tool_status or ToolCallStatus.APPROVED
            record = state.find_tool_call(event.tool_call_id)
            if record is None:
                state.tool_calls.append(
                    ToolCallRecord(
                        tool_call_id=event.tool_call_id,
                        name=event.tool_name or "unknown_tool",
                        status=status,
                        timestamp=event.timestamp,
                    )
                )
            else:
                record.status = status
        elif event.kind == TargetEventKind.ERROR:
            state.error = event.error or "Unknown error"
            state.cancelled = event.cancelled

        state.last_update = event.timestamp

    def _complete_target(
        self,
        aggregated: AggregatedResponse,
        state: TargetState,
        event: TargetEvent,
    ) -> bool:
        """Move a target to completed. Returns True if the request just completed."""
        state.is_complete = True
        state.completed_at = event.timestamp

        aggregated.pending_targets.discard(state.target_id)
        aggregated.completed_targets.add(state.target_id)
        if event.kind == TargetEventKind.COMPLETE:
            aggregated.stats.success_count += 1
        else:
            aggregated.stats.error_count += 1

        if not aggregated.pending_targets and not aggregated.is_complete:
            aggregated.is_complete = True
            aggregated.end_time = time.time()
            return True
        return False

    def get_aggregation(self, request_id: str) -> AggregatedResponse | None:
        with self._lock:
            tracked = self._aggregations.get(request_id)
            return tracked.aggregated if tracked else None

    def complete_aggregation(self, request_id: str) -> AggregatedResponse | None:
        """Stop tracking a request and return its final state."""
        with self._lock:
            tracked = self._aggregations.pop(request_id, None)
        if tracked is None:
            return None
        logger.debug("aggregation_released", request_id=request_id)
        return tracked.aggregated

    def cancel_aggregation(self, request_id: str) -> bool:
        """Drop a request without waiting for its targets. Returns True if it was tracked."""
        with self._lock:
            removed = self._aggregations.pop(request_id, None) is not None
        if removed:
            logger.info("aggregation_cancelled", request_id=request_id)
        return removed

    def get_active_aggregation_ids(self) -> list[str]:
        with self._lock:
            return list(self._aggregations.keys())

    def dispose(self) -> None:
        """Release all tracked requests. Later updates return None."""
        with self._lock:
            count = len(self._aggregations)
            self._aggregations.clear()
            self._disposed = True
        logger.info("aggregator_disposed", released=count)

    @staticmethod
    def calculate_stats(aggregated: AggregatedResponse) -> dict[str, Any]:
        """Summary statistics for an aggregation.

        Returns:
            Dict with success/error/pending counts, the average length of
            successful responses, and the fastest/slowest response times of
            completed targets in milliseconds (None when nothing completed).
        """
        successful = [
            state
            for state in aggregated.per_target.values()
            if state.is_complete and state.error is None
        ]
        times = [
            state.response_time_ms
            for state in aggregated.per_target.values()
            if state.response_time_ms is not None
        ]
        average_length = (
            sum(len(state.accumulated_text) for state in successful) / len(successful)
            if successful
            else 0.0
        )
        return {
            "success_count": aggregated.stats.success_count,
            "error_count": aggregated.stats.error_count,
            "pending_count": len(aggregated.pending_targets),
            "average_response_length": average_length,
            "fastest_response_ms": min(times) if times else None,
            "slowest_response_ms": max(times) if times else None,
        }

    @staticmethod
    def to_webview_format(aggregated: AggregatedResponse) -> dict[str, Any]:
        """Read-only projection of an aggregation for the presentation layer.

        An errored target maps to an empty response and appears in ``errors``.
        """
        responses: dict[str, str] = {}
        errors: dict[str, str] = {}
        tool_calls: dict[str, list[dict[str, Any]]] = {}
        tool_summaries: dict[str, str] = {}

        for target_id in aggregated.target_ids:
            state = aggregated.per_target[target_id]
            if state.error is not None:
                responses[target_id] = ""
                errors[target_id] = state.error
            else:
                responses[target_id] = state.accumulated_text
            if state.tool_calls:
                tool_calls[target_id] = [record.to_dict() for record in state.tool_calls]
                tool_summaries[target_id] = format_tool_call_summary(
                    [record.name for record in state.tool_calls],
                    [record.display_message for record in state.tool_calls],
                )

        return {
            "request_id": aggregated.request_id,
            "message": aggregated.original_message,
            "responses": responses,
            "errors": errors,
            "selected_models": list(aggregated.target_ids),
            "timestamp": aggregated.start_time,
            "stats": ResponseAggregator.calculate_stats(aggregated),
            "is_complete": aggregated.is_complete,
            "tool_calls": tool_calls,
            "tool_summaries": tool_summaries,
        }
