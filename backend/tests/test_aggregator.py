"""Tests for comparison/aggregator.py -- per-request response aggregation.

Covers completion bookkeeping, exactly-once completion under concurrent
updates, terminal idempotence, tool call records, stats and the
presentation projection.
"""

import threading
from unittest.mock import MagicMock

import pytest

from comparison.aggregator import (
    ResponseAggregator,
    TargetEvent,
    TargetEventKind,
    ToolCallStatus,
)
from comparison.errors import DuplicateRequestError

# =========================================================================
# Lifecycle
# =========================================================================


class TestAggregationLifecycle:
    """start_aggregation / update_response / complete_aggregation."""

    def test_start_marks_every_target_pending(self, aggregator: ResponseAggregator) -> None:
        aggregated = aggregator.start_aggregation("r1", "hi", ["m1", "m2"])
        assert aggregated.pending_targets == {"m1", "m2"}
        assert aggregated.completed_targets == set()
        assert aggregated.is_complete is False
        assert aggregated.end_time is None

    def test_start_requires_targets(self, aggregator: ResponseAggregator) -> None:
        with pytest.raises(ValueError):
            aggregator.start_aggregation("r1", "hi", [])

    def test_start_rejects_duplicate_targets(self, aggregator: ResponseAggregator) -> None:
        with pytest.raises(ValueError):
            aggregator.start_aggregation("r1", "hi", ["m1", "m1"])
        assert aggregator.get_active_aggregation_ids() == []

    def test_duplicate_request_rejected(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1"])
        with pytest.raises(DuplicateRequestError):
            aggregator.start_aggregation("r1", "hi", ["m1"])

    def test_success_then_error_completes(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1", "m2"])

        aggregated = aggregator.update_response(
            "r1", TargetEvent.from_response("m1", "ok", is_complete=True)
        )
        assert aggregated is not None
        assert aggregated.pending_targets == {"m2"}
        assert aggregated.is_complete is False

        aggregated = aggregator.update_response(
            "r1", TargetEvent.from_response("m2", "", is_complete=True, error="boom")
        )
        assert aggregated is not None
        assert aggregated.is_complete is True
        assert aggregated.end_time is not None
        assert aggregated.stats.success_count == 1
        assert aggregated.stats.error_count == 1
        assert aggregated.per_target["m2"].error == "boom"

    def test_unknown_request_returns_none(self, aggregator: ResponseAggregator) -> None:
        assert aggregator.update_response("nope", TargetEvent.delta("m1", "x")) is None

    def test_unknown_target_returns_none(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1"])
        assert aggregator.update_response("r1", TargetEvent.delta("m9", "x")) is None
        assert aggregator.get_aggregation("r1").pending_targets == {"m1"}

    def test_complete_aggregation_releases(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1"])
        final = aggregator.complete_aggregation("r1")
        assert final is not None
        assert aggregator.get_aggregation("r1") is None
        assert aggregator.complete_aggregation("r1") is None
        # Late updates after release are ignored
        assert aggregator.update_response("r1", TargetEvent.complete("m1")) is None

    def test_cancel_aggregation(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1"])
        assert aggregator.cancel_aggregation("r1") is True
        assert aggregator.cancel_aggregation("r1") is False
        assert aggregator.get_active_aggregation_ids() == []

    def test_dispose_rejects_new_work(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1"])
        aggregator.dispose()
        assert aggregator.update_response("r1", TargetEvent.delta("m1", "x")) is None
        with pytest.raises(RuntimeError):
            aggregator.start_aggregation("r2", "hi", ["m1"])


# =========================================================================
# Text accumulation and terminal idempotence
# =========================================================================


class TestTextAccumulation:
    """Deltas append; snapshots replace."""

    def test_deltas_append(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1"])
        aggregator.update_response("r1", TargetEvent.delta("m1", "Hel"))
        aggregated = aggregator.update_response("r1", TargetEvent.delta("m1", "lo"))
        assert aggregated.per_target["m1"].accumulated_text == "Hello"

    def test_snapshot_replaces(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1"])
        aggregator.update_response("r1", TargetEvent.delta("m1", "draft"))
        aggregated = aggregator.update_response(
            "r1", TargetEvent.from_response("m1", "final", is_complete=False)
        )
        assert aggregated.per_target["m1"].accumulated_text == "final"

    def test_second_terminal_event_ignored(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1", "m2"])
        aggregator.update_response("r1", TargetEvent.complete("m1", "done"))
        aggregated = aggregator.update_response("r1", TargetEvent.failed("m1", "late"))

        assert aggregated.per_target["m1"].error is None
        assert aggregated.per_target["m1"].accumulated_text == "done"
        assert aggregated.stats.success_count == 1
        assert aggregated.stats.error_count == 0

    def test_deltas_after_completion_ignored(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1"])
        aggregator.update_response("r1", TargetEvent.complete("m1", "done"))
        aggregated = aggregator.update_response("r1", TargetEvent.delta("m1", " more"))
        assert aggregated.per_target["m1"].accumulated_text == "done"

    def test_cancelled_error_flag(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1"])
        aggregated = aggregator.update_response(
            "r1", TargetEvent.failed("m1", "Request cancelled", cancelled=True)
        )
        assert aggregated.per_target["m1"].cancelled is True
        assert aggregated.is_complete is True


# =========================================================================
# Concurrency
# =========================================================================


class TestConcurrentUpdates:
    """Updates from many threads complete the request exactly once."""

    def test_each_target_completes_once(self, aggregator: ResponseAggregator) -> None:
        targets = [f"m{i}" for i in range(20)]
        terminal_updates: list[str] = []

        def on_update(aggregated, event) -> None:  # noqa: ANN001
            if event.is_terminal:
                terminal_updates.append(event.target_id)

        aggregator.start_aggregation("r1", "hi", targets, on_update=on_update)
        barrier = threading.Barrier(len(targets))

        def report(target_id: str) -> None:
            barrier.wait()
            for _ in range(50):
                aggregator.update_response("r1", TargetEvent.delta(target_id, "x"))
            aggregator.update_response("r1", TargetEvent.complete(target_id))
            aggregator.update_response("r1", TargetEvent.failed(target_id, "dup"))

        threads = [threading.Thread(target=report, args=(t,)) for t in targets]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5.0)

        aggregated = aggregator.get_aggregation("r1")
        assert aggregated.is_complete is True
        assert aggregated.pending_targets == set()
        assert aggregated.completed_targets == set(targets)
        assert aggregated.stats.success_count == len(targets)
        assert aggregated.stats.error_count == 0
        assert all(
            state.accumulated_text == "x" * 50 for state in aggregated.per_target.values()
        )
        # Duplicate terminal events never reach the callback
        assert sorted(terminal_updates) == sorted(targets)

    def test_callback_error_does_not_break_update(
        self, aggregator: ResponseAggregator
    ) -> None:
        callback = MagicMock(side_effect=RuntimeError("listener bug"))
        aggregator.start_aggregation("r1", "hi", ["m1"], on_update=callback)
        aggregated = aggregator.update_response("r1", TargetEvent.complete("m1", "ok"))
        assert aggregated.is_complete is True
        callback.assert_called_once()


# =========================================================================
# Tool calls
# =========================================================================


class TestToolCallRecords:
    """Tool events become ToolCallRecords with display messages."""

    def test_pending_then_resolved(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1"])
        aggregator.update_response(
            "r1", TargetEvent.tool_pending("m1", "tc_1", "read_file", {"path": "a.py"})
        )
        aggregated = aggregator.update_response(
            "r1", TargetEvent.tool_resolved("m1", "tc_1", ToolCallStatus.EXECUTED)
        )

        (record,) = aggregated.per_target["m1"].tool_calls
        assert record.tool_call_id == "tc_1"
        assert record.status == ToolCallStatus.EXECUTED
        assert record.display_message == "Read a.py"

    def test_duplicate_pending_ignored(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1"])
        event = TargetEvent.tool_pending("m1", "tc_1", "list_dir", {"path": "src"})
        aggregator.update_response("r1", event)
        aggregated = aggregator.update_response("r1", event)
        assert len(aggregated.per_target["m1"].tool_calls) == 1


# =========================================================================
# Stats and projection
# =========================================================================


class TestStatsAndProjection:
    """calculate_stats / to_webview_format."""

    def test_stats_before_completion(self, aggregator: ResponseAggregator) -> None:
        aggregated = aggregator.start_aggregation("r1", "hi", ["m1", "m2"])
        stats = ResponseAggregator.calculate_stats(aggregated)
        assert stats["pending_count"] == 2
        assert stats["fastest_response_ms"] is None
        assert stats["average_response_length"] == 0.0

    def test_stats_after_completion(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1", "m2"])
        aggregator.update_response("r1", TargetEvent.complete("m1", "abcd"))
        aggregated = aggregator.update_response("r1", TargetEvent.complete("m2", "ab"))
        stats = ResponseAggregator.calculate_stats(aggregated)
        assert stats["success_count"] == 2
        assert stats["pending_count"] == 0
        assert stats["average_response_length"] == 3.0
        assert stats["fastest_response_ms"] <= stats["slowest_response_ms"]

    def test_webview_format(self, aggregator: ResponseAggregator) -> None:
        aggregator.start_aggregation("r1", "hi", ["m1", "m2"])
        aggregator.update_response(
            "r1", TargetEvent.tool_pending("m1", "tc_1", "list_dir", {"path": "src"})
        )
        aggregator.update_response("r1", TargetEvent.complete("m1", "answer"))
        aggregated = aggregator.update_response("r1", TargetEvent.failed("m2", "boom"))

        view = ResponseAggregator.to_webview_format(aggregated)
        assert view["request_id"] == "r1"
        assert view["message"] == "hi"
        assert view["responses"] == {"m1": "answer", "m2": ""}
        assert view["errors"] == {"m2": "boom"}
        assert view["selected_models"] == ["m1", "m2"]
        assert view["is_complete"] is True
        assert view["tool_calls"]["m1"][0]["tool_name"] == "list_dir"
        assert view["tool_summaries"]["m1"] == "List directory: src"
        assert "m2" not in view["tool_calls"]


class TestTargetEventFactories:
    def test_from_response_kinds(self) -> None:
        assert TargetEvent.from_response("m", "x", is_complete=False).kind == TargetEventKind.DELTA
        assert TargetEvent.from_response("m", "x", is_complete=True).kind == TargetEventKind.COMPLETE
        assert (
            TargetEvent.from_response("m", "", is_complete=True, error="e").kind
            == TargetEventKind.ERROR
        )

    def test_terminal_kinds(self) -> None:
        assert TargetEvent.complete("m").is_terminal
        assert TargetEvent.failed("m", "e").is_terminal
        assert not TargetEvent.delta("m", "x").is_terminal
