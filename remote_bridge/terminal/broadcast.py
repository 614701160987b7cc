"""Publish/subscribe fan-out of terminal events, keyed by session id."""

import asyncio
import logging
from typing import Any, Dict, Set

from .buffer import now_ms

logger = logging.getLogger(__name__)


class Subscriber:
    """
    One attached connection's outbound mailbox.

    Delivery only enqueues; the owning connection drains the queue from its
    own task, so a slow client never blocks the publisher or other clients.
    """

    def __init__(self, client_id: str):
        self.client_id = client_id
        self.queue: asyncio.Queue = asyncio.Queue()

    def deliver(self, message: Dict[str, Any]) -> None:
        self.queue.put_nowait(message)


class Broadcaster:
    """Subscriber sets per session. All operations are synchronous."""

    def __init__(self):
        self._subscribers: Dict[str, Set[Subscriber]] = {}

    def subscribe(self, session_id: str, subscriber: Subscriber) -> None:
        self._subscribers.setdefault(session_id, set()).add(subscriber)
        logger.debug(f"Client {subscriber.client_id} subscribed to session {session_id}")

    def unsubscribe(self, session_id: str, subscriber: Subscriber) -> None:
        subscribers = self._subscribers.get(session_id)
        if not subscribers:
            return
        subscribers.discard(subscriber)
        if not subscribers:
            del self._subscribers[session_id]
        logger.debug(f"Client {subscriber.client_id} unsubscribed from session {session_id}")

    def count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def total(self) -> int:
        return sum(len(s) for s in self._subscribers.values())

    def publish(self, session_id: str, message: Dict[str, Any]) -> int:
        """Deliver a message to every subscriber of one session."""
        message.setdefault("timestamp", now_ms())
        subscribers = self._subscribers.get(session_id, ())
        for subscriber in list(subscribers):
            subscriber.deliver(message)
        return len(subscribers)

    def publish_all(self, message: Dict[str, Any]) -> int:
        """Deliver a message to every subscriber of every session."""
        message.setdefault("timestamp", now_ms())
        sent = 0
        for subscribers in list(self._subscribers.values()):
            for subscriber in list(subscribers):
                subscriber.deliver(message)
                sent += 1
        return sent

    def drop(self, session_id: str) -> None:
        """Forget a session's subscribers without closing their connections."""
        self._subscribers.pop(session_id, None)
