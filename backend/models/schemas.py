"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP API and WebSocket
handlers. All models use Pydantic v2.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field

from comparison.gate import ALL_PENDING, ALL_TARGETS, Decision
from comparison.prompts import PromptModification


class RunStatus(StrEnum):
    """Comparison run lifecycle status."""

    STARTED = "started"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class HistoryTurnModel(BaseModel):
    """One prior conversation turn."""

    role: str = Field(min_length=1, examples=["user", "assistant"])
    text: str = Field(description="Turn content")


class CreateComparisonRequest(BaseModel):
    """Request body for starting a comparison."""

    message: str = Field(
        min_length=1,
        max_length=20000,
        description="The user message sent to every target",
        examples=["Explain what a closure is in Python with a short example."],
    )
    history: list[HistoryTurnModel] = Field(
        default_factory=list,
        description="Prior turns, oldest first",
    )
    target_ids: list[str] | None = Field(
        default=None,
        description="Targets to compare; defaults to the saved selection",
        examples=[["gpt-5", "claude-sonnet-4"]],
    )


class ComparisonResponse(BaseModel):
    """Response for comparison creation."""

    request_id: str = Field(
        description="Logical request identifier shared by every target",
        examples=["req_abc123def456"],
    )
    websocket_url: str = Field(
        description="WebSocket URL for real-time event streaming",
        examples=["/ws/req_abc123def456"],
    )
    status: RunStatus = Field(description="Current run status")
    target_ids: list[str] = Field(description="Participating targets, in order")


class ComparisonSummaryResponse(BaseModel):
    """Summary information for listing comparisons."""

    request_id: str = Field(description="Logical request identifier")
    message: str = Field(description="The user message")
    status: RunStatus = Field(description="Current run status")
    target_ids: list[str] = Field(description="Participating targets, in order")
    created_at: float = Field(description="Unix timestamp of creation")
    started_at: float | None = Field(default=None, description="When dispatch began")
    completed_at: float | None = Field(default=None, description="When the run finished")
    error_message: str | None = Field(
        default=None,
        description="Error message if the run failed",
    )


class ComparisonDetailResponse(ComparisonSummaryResponse):
    """Detailed run information including the merged responses."""

    modified_targets: list[str] = Field(
        default_factory=list,
        description="Targets that ran with a prompt modification",
    )
    result: dict[str, Any] | None = Field(
        default=None,
        description="Presentation projection of the aggregate (live or final)",
    )


class ApprovalDecisionRequest(BaseModel):
    """Approve or deny pending tool calls."""

    decision: Decision = Field(examples=["approve", "deny"])
    target_id: str = Field(
        default=ALL_TARGETS,
        description="A target id, or 'all'",
    )
    tool_call_id: str = Field(
        default=ALL_PENDING,
        description="A tool call id, or 'all-pending'",
    )


class ToolCallInfo(BaseModel):
    """A proposed tool call."""

    tool_call_id: str
    target_id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    state: str = Field(examples=["proposed", "approved", "denied"])
    display_message: str = Field(description="Human-readable description of the call")


class ApprovalDecisionResponse(BaseModel):
    """Tool calls resolved by a decision. Empty for duplicate decisions."""

    request_id: str
    resolved: list[ToolCallInfo] = Field(default_factory=list)


class TargetInfo(BaseModel):
    """A target from the catalog."""

    id: str = Field(examples=["gpt-5"])
    name: str = Field(examples=["GPT-5"])
    provider: str = Field(examples=["openai"])
    model: str = Field(examples=["openai/gpt-5"])
    selected: bool = False


class TargetCatalogResponse(BaseModel):
    """Catalog plus the current selection."""

    targets: list[TargetInfo]
    selected: list[str]
    max_targets: int


class TargetSelectionRequest(BaseModel):
    """Replace the target selection."""

    target_ids: list[str] = Field(
        min_length=1,
        examples=[["gpt-5", "gemini-2.5-pro"]],
    )


class PromptModificationRequest(BaseModel):
    """Set a target's prompt modification."""

    custom_system_message: str = Field(
        min_length=1,
        max_length=20000,
        description="Text to prepend to (or replace) the system message",
    )
    replace_system_message: bool = Field(
        default=False,
        description="Replace the system message instead of prepending",
    )


class PromptModificationsResponse(BaseModel):
    """All saved prompt modifications."""

    modifications: dict[str, PromptModification]
    summary: list[dict[str, Any]]


class PromptImportRequest(BaseModel):
    """JSON document produced by the export endpoint."""

    payload: str = Field(min_length=2, description="Exported JSON text")


class PromptImportResponse(BaseModel):
    imported: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    active_comparisons: int = Field(
        default=0,
        description="Number of comparisons currently running",
    )
    mock_llm: bool = Field(
        default=False,
        description="Whether targets are served by the mock pipeline",
    )
