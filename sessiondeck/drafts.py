"""Input drafts and pending attachments, with debounced persistence.

Saves are debounced while the user types, but any send or cancel flushes
the session's draft first, so a boundary never races a pending timer.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Iterator

from sessiondeck.config import CONFIG
from sessiondeck.models import NO_ATTACHMENTS, Attachments
from sessiondeck.protocols import SessionStore

log = logging.getLogger(__name__)


class DraftBuffers:
    """Per-session draft text and pending attachments."""

    def __init__(self, store: SessionStore | None = None, debounce: float | None = None):
        self._store = store
        self._debounce = (
            debounce
            if debounce is not None
            else float(CONFIG.get("drafts", {}).get("debounce-seconds", 0.5))
        )
        self._drafts: dict[str, str] = {}
        self._attachments: dict[str, Attachments] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._dirty: set[str] = set()

    def draft(self, session_id: str) -> str:
        return self._drafts.get(session_id, "")

    def attachments(self, session_id: str) -> Attachments:
        return self._attachments.get(session_id, NO_ATTACHMENTS)

    def set_draft(self, session_id: str, text: str) -> None:
        self._drafts[session_id] = text
        self._dirty.add(session_id)
        self._schedule(session_id)

    def add_attachments(self, session_id: str, attachments: Attachments) -> None:
        self._attachments[session_id] = self.attachments(session_id).merged(attachments)
        if self._store is not None:
            self._store.persist_attachments(session_id, self._attachments[session_id])

    def clear(self, session_id: str) -> None:
        """Empty draft and attachments (after a submission was accepted)."""
        had_attachments = session_id in self._attachments
        self._drafts.pop(session_id, None)
        self._attachments.pop(session_id, None)
        self._dirty.add(session_id)
        self.flush(session_id)
        if had_attachments and self._store is not None:
            self._store.persist_attachments(session_id, NO_ATTACHMENTS)

    def restore(self, session_id: str, text: str, attachments: Attachments) -> None:
        """Put a message back into the input after a failed or undone run."""
        if text and not self.draft(session_id):
            self._drafts[session_id] = text
            self._dirty.add(session_id)
        if not attachments.is_empty():
            self._attachments[session_id] = attachments.merged(self.attachments(session_id))
            if self._store is not None:
                self._store.persist_attachments(session_id, self._attachments[session_id])
        self.flush(session_id)

    def flush(self, session_id: str) -> None:
        """Persist now, cancelling any pending debounce timer."""
        timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()
        if session_id not in self._dirty:
            return
        self._dirty.discard(session_id)
        if self._store is not None:
            self._store.persist_draft(session_id, self.draft(session_id))

    @contextmanager
    def boundary(self, session_id: str) -> Iterator[None]:
        """Scope for a send/cancel: the draft is flushed before the body runs."""
        self.flush(session_id)
        yield

    def flush_all(self) -> None:
        for session_id in list(self._dirty | set(self._timers)):
            self.flush(session_id)

    def forget(self, session_id: str) -> None:
        timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()
        self._drafts.pop(session_id, None)
        self._attachments.pop(session_id, None)
        self._dirty.discard(session_id)

    def _schedule(self, session_id: str) -> None:
        timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): save immediately
            self.flush(session_id)
            return
        self._timers[session_id] = loop.call_later(
            self._debounce, self.flush, session_id
        )
