"""Per-request pub/sub for comparison events.

The run manager publishes merged progress for a logical request; each
WebSocket connection watching that request subscribes with its own
asyncio.Queue.
"""

import asyncio
import contextlib
import threading
from collections import defaultdict

import structlog

from events.types import ComparisonEvent, EventType

logger = structlog.get_logger(__name__)


class EventBus:
    """Async pub/sub event bus keyed by request id.

    Event Buffering:
        Events published before anyone subscribes are buffered and handed to
        the first subscriber, since a comparison starts streaming before the
        client's WebSocket is connected.

    History:
        Every published event (except the close sentinel) is also kept, up to
        MAX_HISTORY_PER_REQUEST, so a reconnecting client can replay it.

    Thread Safety:
        The registry is guarded by a threading.Lock. ``publish_sync`` hands
        queue writes to the event loop thread.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("req_123")
        >>> await bus.publish(ComparisonEvent(
        ...     type=EventType.TARGET_DELTA,
        ...     request_id="req_123",
        ...     target_id="gpt-5",
        ...     data={"text": "Hi"},
        ... ))
        >>> event = await queue.get()
        >>> await bus.close_request("req_123")
    """

    MAX_HISTORY_PER_REQUEST = 5000
    DELIVERY_TIMEOUT_SECONDS = 5.0

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[ComparisonEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[ComparisonEvent]] = defaultdict(list)
        self._event_history: dict[str, list[ComparisonEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        logger.info("event_bus_initialized")

    def subscribe(self, request_id: str) -> asyncio.Queue[ComparisonEvent]:
        """Register a new subscriber queue for a request.

        Buffered events (published before any subscriber existed) are
        delivered to this queue immediately.

        Args:
            request_id: The request to subscribe to.

        Returns:
            A queue that receives ComparisonEvent objects.
        """
        queue: asyncio.Queue[ComparisonEvent] = asyncio.Queue()

        with self._lock:
            self._subscribers[request_id].append(queue)
            subscriber_count = len(self._subscribers[request_id])
            buffered = self._event_buffer.pop(request_id, [])

        for event in buffered:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            request_id=request_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered),
        )
        return queue

    def unsubscribe(self, request_id: str, queue: asyncio.Queue[ComparisonEvent]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored."""
        with self._lock:
            queues = self._subscribers.get(request_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", request_id=request_id)
                return
            queues.remove(queue)
            remaining = len(queues)
            if not queues:
                del self._subscribers[request_id]

        logger.info("subscriber_removed", request_id=request_id, subscriber_count=remaining)

    def _record(self, event: ComparisonEvent) -> list[asyncio.Queue[ComparisonEvent]]:
        """Store an event in history and return its subscribers.

        With no subscribers the event is buffered instead. Must hold the lock.
        """
        if event.type != EventType.STREAM_CLOSED:
            history = self._event_history[event.request_id]
            history.append(event)
            if len(history) > self.MAX_HISTORY_PER_REQUEST:
                del history[: len(history) - self.MAX_HISTORY_PER_REQUEST]

        subscribers = list(self._subscribers.get(event.request_id, []))
        if not subscribers:
            self._event_buffer[event.request_id].append(event)
        return subscribers

    async def publish(self, event: ComparisonEvent) -> None:
        """Deliver an event to every subscriber of its request.

        A stalled subscriber cannot block the publisher for longer than
        DELIVERY_TIMEOUT_SECONDS.
        """
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        with self._lock:
            subscribers = self._record(event)

        if not subscribers:
            logger.debug(
                "event_buffered",
                request_id=event.request_id,
                event_type=event.type.value,
            )
            return

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=self.DELIVERY_TIMEOUT_SECONDS)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    request_id=event.request_id,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.error(
                    "event_delivery_failed",
                    request_id=event.request_id,
                    event_type=event.type.value,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            request_id=event.request_id,
            event_type=event.type.value,
            target_id=event.target_id,
            subscriber_count=len(subscribers),
        )

    def publish_sync(self, event: ComparisonEvent) -> None:
        """Publish from synchronous code, such as aggregator callbacks.

        asyncio.Queue is not thread-safe, so writes are scheduled on the
        event loop with call_soon_threadsafe.
        """
        with self._lock:
            subscribers = self._record(event)
            loop = self._loop

        if not subscribers:
            logger.debug(
                "event_buffered_sync",
                request_id=event.request_id,
                event_type=event.type.value,
            )
            return

        if loop is not None and not loop.is_closed():
            for queue in subscribers:
                with contextlib.suppress(RuntimeError):
                    loop.call_soon_threadsafe(queue.put_nowait, event)
        else:
            for queue in subscribers:
                queue.put_nowait(event)

    def get_event_history(self, request_id: str) -> list[ComparisonEvent]:
        """All stored events of a request, oldest first."""
        with self._lock:
            return list(self._event_history.get(request_id, []))

    async def close_request(self, request_id: str) -> None:
        """End a request's stream.

        Each subscriber receives a STREAM_CLOSED sentinel so its read loop can
        exit, then subscribers and buffered events are dropped. History is
        kept for replay.
        """
        with self._lock:
            queues = self._subscribers.pop(request_id, [])
            buffered = self._event_buffer.pop(request_id, [])

        for queue in queues:
            await queue.put(
                ComparisonEvent(
                    type=EventType.STREAM_CLOSED,
                    request_id=request_id,
                    data={"reason": "request_closed"},
                )
            )

        logger.info(
            "request_stream_closed",
            request_id=request_id,
            subscribers_removed=len(queues),
            buffered_events_cleared=len(buffered),
        )

    def get_subscriber_count(self, request_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(request_id, []))

    def get_active_requests(self) -> list[str]:
        """Request ids with at least one subscriber."""
        with self._lock:
            return list(self._subscribers.keys())

    def clear_event_history(self, request_id: str) -> None:
        with self._lock:
            self._event_history.pop(request_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first use."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the global EventBus instance (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
