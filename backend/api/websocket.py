"""WebSocket handler for real-time comparison streaming.

This module streams comparison events to the frontend and receives commands
(cancel, approve, deny, ping) from clients.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from comparison.gate import Decision
from events import ComparisonEvent, EventType, get_event_bus

if TYPE_CHECKING:
    from run_manager import RunManager

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_run_manager: "RunManager | None" = None


def set_run_manager(manager: "RunManager") -> None:
    """Set the run manager used by WebSocket command handlers."""
    global _run_manager
    _run_manager = manager
    logger.info("websocket_run_manager_configured")


def get_run_manager() -> "RunManager":
    """Return the configured run manager for WebSocket command handlers."""
    if _run_manager is None:
        raise RuntimeError(
            "RunManager not configured for WebSocket handlers. "
            "Call set_run_manager() during startup."
        )
    return _run_manager


@websocket_router.websocket("/ws/{request_id}")
async def websocket_endpoint(websocket: WebSocket, request_id: str) -> None:
    """Stream a comparison's events and accept commands.

    - Server -> Client: ComparisonEvents (deltas, tool calls, completion)
    - Client -> Server: {"type": "cancel" | "approve" | "deny" | "ping", ...}

    Args:
        websocket: The WebSocket connection.
        request_id: The logical request to stream.
    """
    await websocket.accept()
    logger.info("websocket_connected", request_id=request_id)

    event_bus = get_event_bus()

    # Subscribe before reading history so nothing published in between is lost
    queue = event_bus.subscribe(request_id)

    try:
        last_replay_timestamp: float = 0.0
        history = event_bus.get_event_history(request_id)
        if history:
            logger.info(
                "replaying_event_history",
                request_id=request_id,
                event_count=len(history),
            )
            for event in history:
                await websocket.send_json(event.model_dump(mode="json"))
                last_replay_timestamp = event.timestamp

        run = _run_manager.get_run(request_id) if _run_manager is not None else None
        if run is not None and run.is_terminal:
            # Stream already closed; history was the whole story
            await websocket.send_json(
                ComparisonEvent(
                    type=EventType.STREAM_CLOSED,
                    request_id=request_id,
                    data={"reason": "request_finished"},
                ).model_dump(mode="json")
            )
            return

        async def send_events() -> None:
            """Forward bus events to the client, skipping ones already replayed."""
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.STREAM_CLOSED:
                        await websocket.send_json(event.model_dump(mode="json"))
                        logger.info("stream_closed_sentinel", request_id=request_id)
                        break
                    # Buffered events can also appear in the replayed history
                    if event.timestamp <= last_replay_timestamp:
                        continue
                    await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", request_id=request_id)
            except Exception as e:
                logger.error("websocket_send_error", request_id=request_id, error=str(e))

        async def receive_commands() -> None:
            """Receive and process commands from the client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", request_id=request_id)
                        continue
                    command_type = data.get("type")
                    logger.info(
                        "command_received",
                        request_id=request_id,
                        command_type=command_type,
                    )

                    if command_type == "cancel":
                        await handle_cancel_command(request_id)
                    elif command_type in ("approve", "deny"):
                        reply = await handle_decision_command(request_id, command_type, data)
                        await websocket.send_json(reply)
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command",
                            request_id=request_id,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", request_id=request_id)
            except Exception as e:
                logger.error("websocket_receive_error", request_id=request_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        # Either side finishing (disconnect or closed stream) ends the connection
        _, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", request_id=request_id)
    except Exception as e:
        logger.error("websocket_error", request_id=request_id, error=str(e))
    finally:
        event_bus.unsubscribe(request_id, queue)
        logger.info("websocket_cleanup_complete", request_id=request_id)


async def handle_cancel_command(request_id: str) -> None:
    """Cancel a comparison on behalf of a WebSocket client."""
    event_bus = get_event_bus()
    try:
        await get_run_manager().cancel_comparison(request_id)
    except KeyError:
        logger.warning("cancel_command_request_not_found", request_id=request_id)
        await event_bus.publish(
            ComparisonEvent(
                type=EventType.REQUEST_ERROR,
                request_id=request_id,
                data={"error": f"Comparison {request_id} not found", "phase": "cancellation"},
            )
        )


async def handle_decision_command(
    request_id: str, command_type: str, data: dict[str, Any]
) -> dict[str, Any]:
    """Apply an approve/deny command and describe what it resolved.

    ``target_id`` and ``tool_call_id`` are optional and default to every
    target and every pending call.
    """
    try:
        resolved = get_run_manager().submit_decision(
            request_id,
            Decision(command_type),
            target_id=data.get("target_id"),
            tool_call_id=data.get("tool_call_id"),
        )
    except KeyError:
        logger.warning("decision_command_request_not_found", request_id=request_id)
        return {"type": "decision_result", "error": f"Comparison {request_id} not found"}

    return {
        "type": "decision_result",
        "decision": command_type,
        "resolved": [
            {"target_id": call.target_id, "tool_call_id": call.tool_call_id}
            for call in resolved
        ],
    }
