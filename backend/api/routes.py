"""HTTP API routes for the model comparison backend.

This module defines the endpoints for starting, inspecting and cancelling
comparisons, deciding on tool calls, and managing the saved target selection
and prompt modifications. Real-time events are handled via WebSocket in
websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status
from fastapi.responses import Response

from comparison.errors import (
    InvalidRequestError,
    PromptModificationImportError,
    SelectionError,
)
from comparison.prompts import PromptModification, PromptModificationStore
from comparison.selection import TargetSelectionService
from comparison.tool_format import format_tool_call
from config import settings
from models.schemas import (
    ApprovalDecisionRequest,
    ApprovalDecisionResponse,
    ComparisonDetailResponse,
    ComparisonResponse,
    ComparisonSummaryResponse,
    CreateComparisonRequest,
    HealthResponse,
    PromptImportRequest,
    PromptImportResponse,
    PromptModificationRequest,
    PromptModificationsResponse,
    TargetCatalogResponse,
    TargetInfo,
    TargetSelectionRequest,
    ToolCallInfo,
)

if TYPE_CHECKING:
    from run_manager import ComparisonRun, RunManager

logger = structlog.get_logger(__name__)

router = APIRouter()

# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------

# Run manager dependency (set during application startup)
_run_manager: RunManager | None = None


def set_run_manager(manager: RunManager) -> None:
    """Set the run manager instance for the routes.

    This should be called during application startup.
    """
    global _run_manager
    _run_manager = manager
    logger.info("run_manager_configured")


def get_run_manager() -> RunManager:
    """Get the run manager instance.

    Raises:
        RuntimeError: If the run manager has not been configured.
    """
    if _run_manager is None:
        logger.error("run_manager_not_configured")
        raise RuntimeError(
            "RunManager not configured. Call set_run_manager() during startup."
        )
    return _run_manager


def _get_selection() -> TargetSelectionService:
    selection = get_run_manager().selection
    if selection is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Target selection is not configured",
        )
    return selection


def _get_prompt_store() -> PromptModificationStore:
    store = get_run_manager().prompt_store
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Prompt modifications are not configured",
        )
    return store


def _not_found(request_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Comparison {request_id} not found",
    )


def _summary_fields(run: ComparisonRun) -> dict[str, object]:
    return {
        "request_id": run.request_id,
        "message": run.message,
        "status": run.status,
        "target_ids": run.target_ids,
        "created_at": run.created_at,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "error_message": run.error_message,
    }


# -----------------------------------------------------------------------------
# Comparisons
# -----------------------------------------------------------------------------


@router.post(
    "/api/comparisons",
    response_model=ComparisonResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a comparison",
    description="Send one message to several targets and stream their responses.",
)
async def create_comparison(request: CreateComparisonRequest) -> ComparisonResponse:
    """Start a comparison run.

    Raises:
        HTTPException: 400 for an invalid message, history or target list;
            500 if the run cannot be started.
    """
    run_manager = get_run_manager()

    try:
        request_id = await run_manager.start_comparison(
            message=request.message,
            history=[turn.model_dump() for turn in request.history],
            target_ids=request.target_ids,
        )
    except (InvalidRequestError, SelectionError) as e:
        logger.warning("comparison_rejected", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    except Exception as e:
        logger.error("comparison_creation_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to start comparison: {e}",
        ) from e

    run = run_manager.get_run(request_id)
    if run is None:
        raise _not_found(request_id)

    return ComparisonResponse(
        request_id=request_id,
        websocket_url=f"/ws/{request_id}",
        status=run.status,
        target_ids=run.target_ids,
    )


@router.get(
    "/api/comparisons",
    response_model=list[ComparisonSummaryResponse],
    summary="List comparisons",
)
async def list_comparisons(
    limit: Annotated[int, Query(description="Maximum runs to return", ge=1, le=200)] = 25,
) -> list[ComparisonSummaryResponse]:
    """List runs, newest first."""
    runs = sorted(
        get_run_manager().get_all_runs(),
        key=lambda r: r.created_at,
        reverse=True,
    )[:limit]
    return [ComparisonSummaryResponse(**_summary_fields(run)) for run in runs]


@router.get(
    "/api/comparisons/{request_id}",
    response_model=ComparisonDetailResponse,
    summary="Get comparison details",
)
async def get_comparison(
    request_id: Annotated[str, Path(description="The logical request ID")],
) -> ComparisonDetailResponse:
    """Run details plus the live (or final) merged responses."""
    run_manager = get_run_manager()
    run = run_manager.get_run(request_id)
    if run is None:
        raise _not_found(request_id)

    return ComparisonDetailResponse(
        **_summary_fields(run),
        modified_targets=run.modified_targets,
        result=run_manager.get_snapshot(request_id),
    )


@router.post(
    "/api/comparisons/{request_id}/cancel",
    status_code=status.HTTP_200_OK,
    summary="Cancel a comparison",
)
async def cancel_comparison(
    request_id: Annotated[str, Path(description="The logical request ID")],
) -> dict[str, object]:
    """Cancel every target still running. A finished run is left as is."""
    try:
        cancelled = await get_run_manager().cancel_comparison(request_id)
    except KeyError:
        raise _not_found(request_id) from None

    logger.info("comparison_cancel_endpoint", request_id=request_id, cancelled=cancelled)
    return {"request_id": request_id, "cancelled": cancelled}


@router.post(
    "/api/comparisons/{request_id}/approvals",
    response_model=ApprovalDecisionResponse,
    summary="Approve or deny tool calls",
    description=(
        "Resolve pending tool calls of one target or 'all' targets, for one "
        "call or 'all-pending'. Repeated decisions resolve nothing."
    ),
)
async def submit_approval(
    request_id: Annotated[str, Path(description="The logical request ID")],
    decision: ApprovalDecisionRequest,
) -> ApprovalDecisionResponse:
    try:
        resolved = get_run_manager().submit_decision(
            request_id,
            decision.decision,
            target_id=decision.target_id,
            tool_call_id=decision.tool_call_id,
        )
    except KeyError:
        raise _not_found(request_id) from None

    return ApprovalDecisionResponse(
        request_id=request_id,
        resolved=[
            ToolCallInfo(
                tool_call_id=call.tool_call_id,
                target_id=call.target_id,
                name=call.name,
                arguments=call.arguments or {},
                state=call.state.value,
                display_message=format_tool_call(call.name, call.arguments),
            )
            for call in resolved
        ],
    )


@router.get(
    "/api/comparisons/{request_id}/tool-calls",
    response_model=list[ToolCallInfo],
    summary="List pending tool calls",
)
async def list_pending_tool_calls(
    request_id: Annotated[str, Path(description="The logical request ID")],
) -> list[ToolCallInfo]:
    try:
        pending = get_run_manager().pending_tool_calls(request_id)
    except KeyError:
        raise _not_found(request_id) from None
    return [ToolCallInfo.model_validate(call) for call in pending]


# -----------------------------------------------------------------------------
# Targets
# -----------------------------------------------------------------------------


def _catalog_response(selection: TargetSelectionService) -> TargetCatalogResponse:
    return TargetCatalogResponse(
        targets=[
            TargetInfo(**target.to_dict(), selected=selection.is_selected(target.id))
            for target in selection.available_targets()
        ],
        selected=selection.selected_targets(),
        max_targets=selection.max_targets,
    )


@router.get(
    "/api/targets",
    response_model=TargetCatalogResponse,
    summary="List targets",
)
async def list_targets() -> TargetCatalogResponse:
    return _catalog_response(_get_selection())


@router.put(
    "/api/targets/selection",
    response_model=TargetCatalogResponse,
    summary="Set the target selection",
)
async def set_target_selection(request: TargetSelectionRequest) -> TargetCatalogResponse:
    selection = _get_selection()
    try:
        await selection.set_selected(request.target_ids)
    except SelectionError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    return _catalog_response(selection)


@router.post(
    "/api/targets/selection/reset",
    response_model=TargetCatalogResponse,
    summary="Reset the target selection to defaults",
)
async def reset_target_selection() -> TargetCatalogResponse:
    selection = _get_selection()
    await selection.reset_to_defaults()
    return _catalog_response(selection)


# -----------------------------------------------------------------------------
# Prompt modifications
# -----------------------------------------------------------------------------


@router.get(
    "/api/prompt-modifications",
    response_model=PromptModificationsResponse,
    summary="List prompt modifications",
)
async def list_prompt_modifications() -> PromptModificationsResponse:
    store = _get_prompt_store()
    return PromptModificationsResponse(
        modifications=store.get_all(),
        summary=store.get_summary(),
    )


@router.get(
    "/api/prompt-modifications/export",
    summary="Export prompt modifications as JSON",
)
async def export_prompt_modifications() -> Response:
    store = _get_prompt_store()
    return Response(
        content=store.export_as_json(),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="prompt-modifications.json"'},
    )


@router.post(
    "/api/prompt-modifications/import",
    response_model=PromptImportResponse,
    summary="Import prompt modifications",
    description="Replace all prompt modifications with an exported JSON document.",
)
async def import_prompt_modifications(request: PromptImportRequest) -> PromptImportResponse:
    store = _get_prompt_store()
    try:
        imported = await store.import_from_json(request.payload)
    except PromptModificationImportError as e:
        logger.warning("prompt_modifications_import_rejected", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    return PromptImportResponse(imported=imported)


@router.put(
    "/api/prompt-modifications/{target_id}",
    response_model=PromptModification,
    summary="Set a target's prompt modification",
)
async def set_prompt_modification(
    target_id: Annotated[str, Path(description="The target ID")],
    request: PromptModificationRequest,
) -> PromptModification:
    run_manager = get_run_manager()
    if run_manager.selection is not None and run_manager.selection.get_metadata(target_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Target {target_id} not found",
        )

    return await _get_prompt_store().set(
        target_id,
        PromptModification(
            custom_system_message=request.custom_system_message,
            replace_system_message=request.replace_system_message,
        ),
    )


@router.delete(
    "/api/prompt-modifications/{target_id}",
    status_code=status.HTTP_200_OK,
    summary="Reset a target to its default prompt",
)
async def delete_prompt_modification(
    target_id: Annotated[str, Path(description="The target ID")],
) -> dict[str, object]:
    removed = await _get_prompt_store().remove(target_id)
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No prompt modification for {target_id}",
        )
    return {"target_id": target_id, "removed": True}


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check() -> HealthResponse:
    """Health check with the number of running comparisons."""
    try:
        active = get_run_manager().get_active_count()
        overall_status = "healthy"
    except RuntimeError:
        # RunManager not configured yet (e.g., during startup)
        active = 0
        overall_status = "unhealthy"

    return HealthResponse(
        status=overall_status,
        timestamp=time.time(),
        active_comparisons=active,
        mock_llm=settings.use_mock_llm,
    )
