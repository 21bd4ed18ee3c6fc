"""Per-session FIFO of outgoing messages awaiting dispatch."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from sessiondeck.models import QueuedMessage
from sessiondeck.protocols import SessionCallback, Subscribers

if TYPE_CHECKING:
    from sessiondeck.approvals import ApprovalGate
    from sessiondeck.registry import SessionRegistry

log = logging.getLogger(__name__)


class MessageQueue:
    """Queued messages per session.

    Each session drains independently and only when the registry reports
    it idle and the gate has nothing pending. Callers react to state
    change notifications; nothing here polls.
    """

    def __init__(self, registry: SessionRegistry, gate: ApprovalGate) -> None:
        self._registry = registry
        self._gate = gate
        self._queues: dict[str, tuple[QueuedMessage, ...]] = {}
        self._subscribers = Subscribers()

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        return self._subscribers.subscribe(callback)

    def _set(self, session_id: str, items: tuple[QueuedMessage, ...]) -> None:
        if items:
            self._queues[session_id] = items
        else:
            self._queues.pop(session_id, None)
        self._subscribers.notify(session_id)

    def items(self, session_id: str) -> tuple[QueuedMessage, ...]:
        return self._queues.get(session_id, ())

    def length(self, session_id: str) -> int:
        return len(self.items(session_id))

    def peek(self, session_id: str) -> QueuedMessage | None:
        items = self.items(session_id)
        return items[0] if items else None

    def enqueue(self, session_id: str, message: QueuedMessage) -> None:
        """Append to the tail. Valid at any time."""
        self._set(session_id, self.items(session_id) + (message,))
        log.info(
            f"Queued message {message.id} for session {session_id} "
            f"(position {self.length(session_id)})"
        )

    def enqueue_front(self, session_id: str, message: QueuedMessage) -> None:
        """Put a follow-up (e.g. an approval) ahead of user messages."""
        self._set(session_id, (message,) + self.items(session_id))

    def can_drain(self, session_id: str) -> bool:
        return not self._registry.is_sending(session_id) and not self._gate.has_pending(
            session_id
        )

    def dequeue_next(self, session_id: str) -> QueuedMessage | None:
        """Pop the head, but only when the session is idle and ungated."""
        items = self.items(session_id)
        if not items or not self.can_drain(session_id):
            return None
        self._set(session_id, items[1:])
        return items[0]

    def remove(self, session_id: str, message_id: str) -> bool:
        items = self.items(session_id)
        remaining = tuple(m for m in items if m.id != message_id)
        if len(remaining) == len(items):
            return False
        self._set(session_id, remaining)
        log.info(f"Removed queued message {message_id} from session {session_id}")
        return True

    def force_send(self, session_id: str, message_id: str) -> QueuedMessage | None:
        """Take a specific message out of FIFO order for immediate dispatch.

        Only while idle: an in-flight run is never preempted.
        """
        if self._registry.is_sending(session_id):
            log.info(f"force_send ignored: session {session_id} is running")
            return None
        items = self.items(session_id)
        for message in items:
            if message.id == message_id:
                self._set(session_id, tuple(m for m in items if m.id != message_id))
                return message
        return None

    def clear(self, session_id: str) -> None:
        if session_id in self._queues:
            self._set(session_id, ())
