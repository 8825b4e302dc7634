"""Models module for Pydantic schemas and settings persistence.

This module exposes the request/response models used by the API.
"""

from models.schemas import (
    ApprovalDecisionRequest,
    ApprovalDecisionResponse,
    ComparisonDetailResponse,
    ComparisonResponse,
    ComparisonSummaryResponse,
    CreateComparisonRequest,
    HealthResponse,
    HistoryTurnModel,
    PromptImportRequest,
    PromptImportResponse,
    PromptModificationRequest,
    PromptModificationsResponse,
    RunStatus,
    TargetCatalogResponse,
    TargetInfo,
    TargetSelectionRequest,
    ToolCallInfo,
)

__all__ = [
    "ApprovalDecisionRequest",
    "ApprovalDecisionResponse",
    "ComparisonDetailResponse",
    "ComparisonResponse",
    "ComparisonSummaryResponse",
    "CreateComparisonRequest",
    "HealthResponse",
    "HistoryTurnModel",
    "PromptImportRequest",
    "PromptImportResponse",
    "PromptModificationRequest",
    "PromptModificationsResponse",
    "RunStatus",
    "TargetCatalogResponse",
    "TargetInfo",
    "TargetSelectionRequest",
    "ToolCallInfo",
]
