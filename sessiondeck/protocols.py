"""Collaborator protocols and the shared subscription helper."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, AsyncIterator, Callable, Iterable, Protocol

if TYPE_CHECKING:
    from sessiondeck.events import Event
    from sessiondeck.models import Attachments, RunConfig

log = logging.getLogger(__name__)

SessionCallback = Callable[[str], None]


class Engine(Protocol):
    """The agent engine, consumed as an opaque streaming service."""

    def send(
        self, session_id: str, message: str, config: RunConfig
    ) -> AsyncIterator[Event]:
        """Start a run and stream its events in emission order."""
        ...

    async def cancel(self, session_id: str) -> bool:
        """Request cancellation. True iff a running process was interrupted."""
        ...


class SessionStore(Protocol):
    """Durable store reached through read/write calls."""

    def list_sessions(self, worktree_id: str) -> Iterable[str] | None:
        """Known session ids for a worktree, or None when not loaded yet."""
        ...

    def persist_draft(self, session_id: str, draft: str) -> None:
        """Fire-and-forget draft save."""
        ...

    def persist_attachments(self, session_id: str, attachments: Attachments) -> None:
        """Fire-and-forget pending-attachment save."""
        ...


class Subscribers:
    """Per-component observer list keyed by nothing but the session id.

    Callbacks run synchronously in the tick that changed the state. A
    failing callback is logged and never interrupts the others.
    """

    def __init__(self) -> None:
        self._callbacks: list[SessionCallback] = []

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        """Register a callback. Returns an unsubscribe function."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def notify(self, session_id: str) -> None:
        for callback in list(self._callbacks):
            try:
                callback(session_id)
            except Exception:
                log.exception(f"Subscriber failed for session {session_id}")

    def __len__(self) -> int:
        return len(self._callbacks)
