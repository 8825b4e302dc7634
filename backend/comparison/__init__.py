"""Multi-target comparison core.

Fans one request out to several models, tracks their independent streams,
applies per-target prompt modifications without cross-talk, and gates tool
calls behind explicit approval.

Key Components:
    - clone_request / create_parallel_requests: Immutable per-target dispatch
    - ResponseAggregator: Merged per-request progress and completion
    - ApprovalGate: Suspend/resume of proposed tool calls
    - TargetAdapter: One pipeline invocation as an event stream
      (``comparison.adapter``)
    - ComparisonOrchestrator: The fan-out entry point
      (``comparison.orchestrator``)
"""

from comparison.aggregator import (
    AggregatedResponse,
    ResponseAggregator,
    TargetEvent,
    TargetEventKind,
    TargetState,
    ToolCallStatus,
)
from comparison.cloner import (
    DispatchDescriptor,
    HistoryTurn,
    LogicalRequest,
    are_requests_equivalent,
    clone_request,
    create_parallel_requests,
    validate_request,
)
from comparison.errors import (
    ComparisonError,
    DuplicateRequestError,
    InvalidRequestError,
    PromptModificationImportError,
    SelectionError,
    TargetCancelledError,
    TargetError,
)
from comparison.gate import (
    ALL_PENDING,
    ALL_TARGETS,
    ApprovalDecision,
    ApprovalGate,
    ApprovalState,
    Decision,
    ProposedToolCall,
)

__all__ = [
    # Cloner
    "HistoryTurn",
    "LogicalRequest",
    "DispatchDescriptor",
    "clone_request",
    "create_parallel_requests",
    "validate_request",
    "are_requests_equivalent",
    # Aggregator
    "AggregatedResponse",
    "ResponseAggregator",
    "TargetEvent",
    "TargetEventKind",
    "TargetState",
    "ToolCallStatus",
    # Gate
    "ALL_TARGETS",
    "ALL_PENDING",
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalState",
    "Decision",
    "ProposedToolCall",
    # Errors
    "ComparisonError",
    "InvalidRequestError",
    "DuplicateRequestError",
    "TargetError",
    "TargetCancelledError",
    "SelectionError",
    "PromptModificationImportError",
]
