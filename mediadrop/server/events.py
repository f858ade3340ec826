"""In-process publish/subscribe channel for media status changes."""

import json
import logging
import queue
import threading
from typing import Iterator, List, Optional

from mediadrop.shared.models import StatusChangeEvent

logger = logging.getLogger(__name__)


class Subscription:
    """One listener's mailbox. Events published after subscribe() land here."""

    def __init__(self, bus: "EventBus"):
        self._bus = bus
        self._queue: "queue.Queue[StatusChangeEvent]" = queue.Queue()

    def deliver(self, event: StatusChangeEvent) -> None:
        self._queue.put_nowait(event)

    def get(self, timeout: Optional[float] = None) -> Optional[StatusChangeEvent]:
        """Next event, or None if nothing arrived within ``timeout`` seconds."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class EventBus:
    """Process-lifetime fan-out of StatusChangeEvents to live subscribers.

    Delivery is best-effort and in-memory only: nothing is persisted and a
    late subscriber never sees earlier events.
    """

    def __init__(self):
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        with self._lock:
            self._subscribers.append(subscription)
        logger.debug(f"Status subscriber added ({self.subscriber_count} active)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
        logger.debug(f"Status subscriber removed ({self.subscriber_count} active)")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: StatusChangeEvent) -> int:
        """Deliver ``event`` to every current subscriber; returns how many received it."""
        with self._lock:
            targets = list(self._subscribers)
        for subscription in targets:
            subscription.deliver(event)
        logger.debug(
            f"status-change asset={event.asset_id} status={event.status.value} -> {len(targets)} subscriber(s)"
        )
        return len(targets)


def format_sse(data: dict, event: Optional[str] = None) -> str:
    """Render one Server-Sent Events frame."""
    lines = []
    if event:
        lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data)}")
    return "\n".join(lines) + "\n\n"


SSE_HEARTBEAT = ": heartbeat\n\n"


def stream_status_events(bus: EventBus, heartbeat_seconds: float) -> Iterator[str]:
    """Yield SSE frames for a new subscriber until the consumer closes the generator.

    The subscription is registered when the first frame is produced,
    which is a ``connected`` frame. After that comes one ``status-change``
    frame per event and a comment-only heartbeat whenever
    ``heartbeat_seconds`` pass without traffic. Closing the generator
    (client disconnect) unsubscribes.
    """
    subscription = bus.subscribe()
    try:
        yield format_sse({"type": "connected"}, event="connected")
        while True:
            event = subscription.get(timeout=heartbeat_seconds)
            if event is None:
                yield SSE_HEARTBEAT
                continue
            yield format_sse(event.to_payload(), event=event.event_type)
    finally:
        subscription.close()
