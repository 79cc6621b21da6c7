"""
roomkeeper/realtime/hub.py
In-memory typed event bus for subscription observers.

Observers register per user (or globally with user_id=None) and are called
synchronously, in registration order, with a SubscriptionEvent. A listener
that raises is pruned so one broken observer cannot starve the others.
WebSocket clients attach through an asyncio.Queue listener.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from roomkeeper.core.metrics import event_subscribers, events_published_total
from roomkeeper.models.subscription import SubscriptionEvent

logger = logging.getLogger(__name__)

Listener = Callable[[SubscriptionEvent], None]

# Bound on per-socket backlog; a slow client drops its oldest events
QUEUE_MAXSIZE = 100


class SubscriptionEventBus:
    """
    Per-user observer registry.

    Maps user_id -> [listener]; the None key holds global listeners.
    """

    def __init__(self):
        self._listeners: Dict[Optional[str], List[Listener]] = {}

    def subscribe(self, user_id: Optional[str], listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Args:
            user_id: User to observe, or None for every user
            listener: Called with each event

        Returns:
            Zero-argument function that unsubscribes the listener
        """
        self._listeners.setdefault(user_id, []).append(listener)
        event_subscribers.set(self.listener_count())
        logger.debug(f"[HUB] Registered listener for user {user_id}. Total: {len(self._listeners[user_id])}")

        def _unsubscribe() -> None:
            self.unsubscribe(user_id, listener)

        return _unsubscribe

    def unsubscribe(self, user_id: Optional[str], listener: Listener) -> None:
        listeners = self._listeners.get(user_id)
        if not listeners:
            return
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            del self._listeners[user_id]
        event_subscribers.set(self.listener_count())

    def publish(self, event: SubscriptionEvent) -> None:
        """Deliver ``event`` to the user's listeners, then to global listeners."""
        events_published_total.inc(labels={"event_type": event.type.value})
        targets = list(self._listeners.get(event.user_id, [])) + list(self._listeners.get(None, []))

        dead = []
        for listener in targets:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"[HUB] Listener failed for user {event.user_id}: {e}")
                dead.append(listener)

        for listener in dead:
            self.unsubscribe(event.user_id, listener)
            self.unsubscribe(None, listener)
        if dead:
            logger.debug(f"[HUB] Pruned {len(dead)} failed listeners")

    def open_queue(self, user_id: str) -> "tuple[asyncio.Queue, Callable[[], None]]":
        """Attach an asyncio.Queue listener (for WebSocket streaming)."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_MAXSIZE)

        def _enqueue(event: SubscriptionEvent) -> None:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)

        return queue, self.subscribe(user_id, _enqueue)

    def listener_count(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return len(self._listeners.get(user_id, []))
        return sum(len(v) for v in self._listeners.values())

    def clear(self) -> None:
        self._listeners.clear()
        event_subscribers.set(0)
