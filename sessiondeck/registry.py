"""SessionRegistry: single source of truth for per-session run state."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Iterator

from sessiondeck.config import CONFIG
from sessiondeck.enums import EffortLevel, ExecutionMode, RunStatus, ThinkingLevel
from sessiondeck.models import Message, QueuedMessage, Session
from sessiondeck.protocols import SessionCallback, Subscribers

log = logging.getLogger(__name__)

# Fields presentation may edit between runs
PREFERENCE_FIELDS = frozenset(
    {
        "model",
        "provider",
        "backend",
        "execution_mode",
        "thinking_level",
        "effort_level",
        "mcp_config",
    }
)


def _default_session(session_id: str, worktree_id: str | None) -> Session:
    defaults = CONFIG.get("defaults", {})
    effort = defaults.get("effort-level")
    return Session(
        id=session_id,
        worktree_id=worktree_id,
        model=defaults.get("model") or "opus",
        provider=defaults.get("provider"),
        backend=defaults.get("backend") or "claude",
        execution_mode=ExecutionMode(defaults.get("execution-mode") or "plan"),
        thinking_level=ThinkingLevel(defaults.get("thinking-level") or "off"),
        effort_level=EffortLevel(effort) if effort else None,
    )


class SessionRegistry:
    """Answers "is session X sending", "what mode is it running", "what went wrong".

    Sessions are created lazily on first reference. Every write replaces
    exactly one entry with a new frozen Session, then notifies
    subscribers. Nothing here is re-entrant: callers check is_sending()
    before begin_send().

    This class has no UI dependencies - it's pure state.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._subscribers = Subscribers()

        # Called after a run ends so the queue can drain (set by SendPipeline)
        self.on_idle: Callable[[str], None] | None = None

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get(self, session_id: str, worktree_id: str | None = None) -> Session:
        """Get a session record, creating it on first reference."""
        session = self._sessions.get(session_id)
        if session is None:
            session = _default_session(session_id, worktree_id)
            self._sessions[session_id] = session
            log.debug(f"Registered session {session_id}")
        elif worktree_id and session.worktree_id != worktree_id:
            session = self._replace(session_id, worktree_id=worktree_id)
        return session

    def peek(self, session_id: str) -> Session:
        """Like get(), but an unknown id gets a default record that is not registered."""
        session = self._sessions.get(session_id)
        return session if session is not None else _default_session(session_id, None)

    def is_sending(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session.is_sending if session else False

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        return self._subscribers.subscribe(callback)

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def _replace(self, session_id: str, **changes: Any) -> Session:
        old = self.get(session_id)
        new = replace(old, **changes)
        self._sessions[session_id] = new
        if new != old:
            self._subscribers.notify(session_id)
        return new

    def update(self, session_id: str, **changes: Any) -> Session:
        """Atomically replace one session entry."""
        return self._replace(session_id, **changes)

    def set_preferences(self, session_id: str, **changes: Any) -> Session:
        """Edit what the *next* submission will use.

        Snapshots already taken (queued or in flight) are unaffected.
        """
        unknown = set(changes) - PREFERENCE_FIELDS
        if unknown:
            raise ValueError(f"Not a preference: {', '.join(sorted(unknown))}")
        return self._replace(session_id, **changes)

    def begin_send(
        self,
        session_id: str,
        mode: ExecutionMode,
        *,
        run_id: str,
        message: QueuedMessage | None = None,
    ) -> bool:
        """Mark a session as sending. Returns False (and does nothing) if it already is."""
        session = self.get(session_id)
        if session.is_sending:
            log.warning(
                f"begin_send ignored: session {session_id} already running {session.run_id}"
            )
            return False
        self._replace(
            session_id,
            is_sending=True,
            run_id=run_id,
            executing_mode=mode,
            last_run_status=RunStatus.RUNNING,
            last_error=None,
            last_sent=message,
            waiting_for_input=False,
            reviewing=False,
        )
        log.info(f"Run {run_id} started for session {session_id} ({mode})")
        return True

    def complete_send(self, session_id: str, run_id: str | None = None) -> bool:
        """Clear sending state and trigger a drain check. Idempotent.

        With run_id, only that run can be completed; events from an older
        run can never end a newer one. Returns True if state changed.
        """
        session = self._sessions.get(session_id)
        if session is None or not session.is_sending:
            return False
        if run_id is not None and session.run_id != run_id:
            log.debug(
                f"complete_send for stale run {run_id} ignored (current: {session.run_id})"
            )
            return False
        status = session.last_run_status
        if status == RunStatus.RUNNING:
            status = RunStatus.COMPLETED
        self._replace(session_id, is_sending=False, last_run_status=status)
        log.info(f"Run {session.run_id} finished for session {session_id} ({status})")
        if self.on_idle:
            self.on_idle(session_id)
        return True

    def force_clear(self, session_id: str) -> bool:
        """Repair a stuck sending flag after the engine confirmed nothing is running."""
        return self.complete_send(session_id)

    def record_error(self, session_id: str, error: str) -> None:
        """Store the last error. Never clears sending state; only complete_send does."""
        self._replace(session_id, last_error=error)

    def clear_error(self, session_id: str) -> None:
        if session_id in self._sessions:
            self._replace(session_id, last_error=None)

    def append_message(self, session_id: str, message: Message) -> Session:
        session = self.get(session_id)
        return self._replace(session_id, messages=session.messages + (message,))

    def upsert_assistant_message(self, session_id: str, message: Message) -> Session:
        """Add an assistant message, replacing a trailing one from the same run.

        Prevents duplicates when a run commits content more than once
        (e.g. partial content on cancel, then a late done).
        """
        messages = self.get(session_id).messages
        if (
            messages
            and messages[-1].role == "assistant"
            and message.run_id is not None
            and messages[-1].run_id == message.run_id
        ):
            return self._replace(session_id, messages=messages[:-1] + (message,))
        return self._replace(session_id, messages=messages + (message,))

    def forget(self, session_id: str) -> None:
        """Tear down a session after an external archive/delete."""
        if self._sessions.pop(session_id, None) is not None:
            log.info(f"Forgot session {session_id}")
            self._subscribers.notify(session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
