"""Custom Textual messages carrying per-session state to the UI."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from textual.message import Message

from sessiondeck.enums import ApprovalKind, RunStatus

if TYPE_CHECKING:
    from textual.message_pump import MessagePump

    from sessiondeck.pipeline import SendPipeline, SessionView


class SessionChanged(Message):
    """Message sent when anything in a session's view changed."""

    def __init__(self, session_id: str, view: SessionView) -> None:
        self.session_id = session_id
        self.view = view
        super().__init__()


class ApprovalRequested(Message):
    """Message sent when a session starts waiting on the user."""

    def __init__(self, session_id: str, kind: ApprovalKind) -> None:
        self.session_id = session_id
        self.kind = kind
        super().__init__()


class RunFinished(Message):
    """Message sent when a session goes from sending to idle."""

    def __init__(self, session_id: str, status: RunStatus, error: str | None = None) -> None:
        self.session_id = session_id
        self.status = status
        self.error = error
        super().__init__()


class PipelineBridge:
    """Forwards pipeline notifications to a Textual app or widget.

    Notifications are coalesced per session: only a changed view is
    posted, and the transition messages (ApprovalRequested, RunFinished)
    fire once per transition.
    """

    def __init__(self, target: MessagePump, pipeline: SendPipeline) -> None:
        self.target = target
        self.pipeline = pipeline
        self._views: dict[str, SessionView] = {}
        self._unsubscribe: Callable[[], None] | None = None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.pipeline.subscribe(self._on_change)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_change(self, session_id: str) -> None:
        if session_id not in self.pipeline.registry:
            self._views.pop(session_id, None)
            return
        view = self.pipeline.view(session_id)
        old = self._views.get(session_id)
        if old == view:
            return
        self._views[session_id] = view
        self.target.post_message(SessionChanged(session_id, view))

        old_kind = old.pending_approval_kind if old else None
        if view.pending_approval_kind is not None and view.pending_approval_kind != old_kind:
            self.target.post_message(ApprovalRequested(session_id, view.pending_approval_kind))
        if old is not None and old.is_sending and not view.is_sending:
            self.target.post_message(
                RunFinished(session_id, view.last_run_status, view.last_error)
            )
