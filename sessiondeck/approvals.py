"""Approval gate: pending plan exits, permission denials and user questions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from sessiondeck.enums import ApprovalKind
from sessiondeck.models import (
    AnsweredQuestion,
    PendingPlan,
    PendingQuestion,
    PermissionDenial,
)
from sessiondeck.protocols import SessionCallback, Subscribers

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateState:
    """Everything the gate knows about one session."""

    plan: PendingPlan | None = None
    denials: tuple[PermissionDenial, ...] = ()
    question: PendingQuestion | None = None
    questions_skipped: bool = False
    answered: dict[str, AnsweredQuestion] = field(default_factory=dict)
    # Denials resolved with approve/approve-for-run since the last resume
    approved_denials: tuple[PermissionDenial, ...] = ()

    @property
    def awaiting(self) -> ApprovalKind | None:
        # The engine executes tools one at a time, so normally at most one of
        # these is set. Precedence only matters if that ever breaks.
        if self.question is not None:
            return ApprovalKind.QUESTION
        if self.plan is not None:
            return ApprovalKind.PLAN
        if self.denials:
            return ApprovalKind.PERMISSION
        return None


_EMPTY = GateState()


class ApprovalGate:
    """Tracks unresolved approvals per session.

    Any pending item blocks the session's queue from draining and keeps
    the run from being considered finished. Resolution only updates gate
    state; starting follow-up runs is the pipeline's job.
    """

    def __init__(self) -> None:
        self._states: dict[str, GateState] = {}
        self._subscribers = Subscribers()

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        return self._subscribers.subscribe(callback)

    def state(self, session_id: str) -> GateState:
        return self._states.get(session_id, _EMPTY)

    def _set(self, session_id: str, new: GateState) -> None:
        old = self.state(session_id)
        self._states[session_id] = new
        if new != old:
            self._subscribers.notify(session_id)

    def has_pending(self, session_id: str) -> bool:
        return self.state(session_id).awaiting is not None

    def pending_kind(self, session_id: str) -> ApprovalKind | None:
        return self.state(session_id).awaiting

    # -----------------------------------------------------------------------
    # Plan exit
    # -----------------------------------------------------------------------

    def request_plan(self, session_id: str, tool_call_id: str, plan: str = "") -> None:
        state = self.state(session_id)
        if tool_call_id in state.answered:
            return
        log.info(f"Session {session_id} awaiting plan approval ({tool_call_id})")
        self._set(session_id, replace(state, plan=PendingPlan(tool_call_id, plan)))

    def approve_plan(self, session_id: str) -> PendingPlan | None:
        """Resolve the pending plan. Returns it, or None if nothing was pending.

        Denials still pending from the same run are dropped: the approved
        plan starts a fresh run, which makes them stale.
        """
        state = self.state(session_id)
        plan = state.plan
        if plan is None:
            return None
        if state.denials:
            log.info(
                f"Plan approval for {session_id} drops {len(state.denials)} stale denial(s)"
            )
        answered = {**state.answered, plan.tool_call_id: AnsweredQuestion(plan.tool_call_id)}
        self._set(
            session_id,
            replace(state, plan=None, denials=(), approved_denials=(), answered=answered),
        )
        return plan

    # -----------------------------------------------------------------------
    # Permission denials
    # -----------------------------------------------------------------------

    def add_denials(self, session_id: str, denials: tuple[PermissionDenial, ...]) -> None:
        state = self.state(session_id)
        known = {d.tool_call_id for d in state.denials}
        fresh = tuple(d for d in denials if d.tool_call_id not in known)
        if not fresh:
            return
        log.info(
            f"Session {session_id} awaiting permission for "
            + ", ".join(d.tool_name for d in fresh)
        )
        self._set(session_id, replace(state, denials=state.denials + fresh))

    def denial(self, session_id: str, tool_call_id: str) -> PermissionDenial | None:
        for d in self.state(session_id).denials:
            if d.tool_call_id == tool_call_id:
                return d
        return None

    def resolve_denial(
        self, session_id: str, tool_call_id: str, *, approved: bool
    ) -> PermissionDenial | None:
        """Remove exactly one denial. Other denials of the run stay untouched."""
        state = self.state(session_id)
        target = self.denial(session_id, tool_call_id)
        if target is None:
            return None
        remaining = tuple(d for d in state.denials if d.tool_call_id != tool_call_id)
        approved_denials = state.approved_denials + ((target,) if approved else ())
        self._set(
            session_id,
            replace(state, denials=remaining, approved_denials=approved_denials),
        )
        return target

    def discard_denial(self, session_id: str, tool_call_id: str) -> None:
        """The tool ran anyway (pre-approved or yolo); forget its denial."""
        state = self.state(session_id)
        if any(d.tool_call_id == tool_call_id for d in state.denials):
            self._set(
                session_id,
                replace(
                    state,
                    denials=tuple(d for d in state.denials if d.tool_call_id != tool_call_id),
                ),
            )

    def take_approved_denials(self, session_id: str) -> tuple[PermissionDenial, ...]:
        """Pop the approvals collected since the last resume."""
        state = self.state(session_id)
        if not state.approved_denials:
            return ()
        self._set(session_id, replace(state, approved_denials=()))
        return state.approved_denials

    # -----------------------------------------------------------------------
    # Questions
    # -----------------------------------------------------------------------

    def request_question(
        self, session_id: str, tool_call_id: str, questions: tuple[dict[str, Any], ...]
    ) -> bool:
        """Block on a question. Returns False when questions were skipped this run."""
        state = self.state(session_id)
        if state.questions_skipped:
            log.info(f"Question {tool_call_id} auto-skipped for session {session_id}")
            answered = {
                **state.answered,
                tool_call_id: AnsweredQuestion(tool_call_id, skipped=True),
            }
            self._set(session_id, replace(state, answered=answered))
            return False
        if tool_call_id in state.answered:
            return False
        log.info(f"Session {session_id} awaiting answer to {tool_call_id}")
        self._set(
            session_id, replace(state, question=PendingQuestion(tool_call_id, questions))
        )
        return True

    def answer_question(
        self, session_id: str, tool_call_id: str, answers: dict[str, Any]
    ) -> PendingQuestion | None:
        state = self.state(session_id)
        question = state.question
        if question is None or question.tool_call_id != tool_call_id:
            return None
        answered = {
            **state.answered,
            tool_call_id: AnsweredQuestion(tool_call_id, dict(answers)),
        }
        self._set(session_id, replace(state, question=None, answered=answered))
        return question

    def skip_question(self, session_id: str) -> PendingQuestion | None:
        """Skip the pending question and stop later questions in this run from blocking."""
        state = self.state(session_id)
        question = state.question
        answered = dict(state.answered)
        if question is not None:
            answered[question.tool_call_id] = AnsweredQuestion(
                question.tool_call_id, skipped=True
            )
        self._set(
            session_id,
            replace(state, question=None, questions_skipped=True, answered=answered),
        )
        return question

    def is_answered(self, session_id: str, tool_call_id: str) -> bool:
        return tool_call_id in self.state(session_id).answered

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def begin_run(self, session_id: str) -> None:
        """A new user submission starts a new run: reset run-scoped flags."""
        state = self.state(session_id)
        if state.questions_skipped or state.approved_denials:
            self._set(
                session_id, replace(state, questions_skipped=False, approved_denials=())
            )

    def drop_plan(self, session_id: str) -> PendingPlan | None:
        """Abandon a pending plan without answering it. Other items stay."""
        state = self.state(session_id)
        if state.plan is None:
            return None
        log.info(f"Dropping pending plan for session {session_id} ({state.plan.tool_call_id})")
        self._set(session_id, replace(state, plan=None))
        return state.plan

    def clear(self, session_id: str) -> None:
        """Drop pending items the user superseded with a new message."""
        state = self.state(session_id)
        if state.awaiting is not None or state.approved_denials:
            log.info(f"Clearing pending approvals for session {session_id}")
            self._set(
                session_id,
                replace(state, plan=None, denials=(), question=None, approved_denials=()),
            )

    def forget(self, session_id: str) -> None:
        if self._states.pop(session_id, None) is not None:
            self._subscribers.notify(session_id)
