"""SendPipeline: the command surface that ties sessions, queue and gate together.

Every user intent (submit, cancel, approve, answer, ...) goes through here.
The pipeline owns the per-run asyncio task that consumes the engine's
event stream, and it is the only place that starts runs, so the
"one run per session" rule has a single enforcement point.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from sessiondeck.approvals import ApprovalGate
from sessiondeck.assembler import StreamAssembler
from sessiondeck.config import CONFIG
from sessiondeck.drafts import DraftBuffers
from sessiondeck.enums import (
    ApprovalKind,
    ApprovalState,
    ExecutionMode,
    RunStatus,
    SubmitOutcome,
    ToolName,
)
from sessiondeck.errors import EngineDispatchError, RaceRecoveryWarning, SessionNotFound
from sessiondeck.events import (
    Cancelled,
    Done,
    Error,
    Event,
    PermissionDenied,
    ToolCallResult,
    ToolCallStart,
)
from sessiondeck.formatting import (
    PLAN_APPROVED,
    PLAN_APPROVED_YOLO,
    build_message_with_refs,
    format_permission_continuation,
    format_plan_approval,
    format_question_answers,
)
from sessiondeck.message_queue import MessageQueue
from sessiondeck.models import (
    NO_ATTACHMENTS,
    Attachments,
    ContentBlock,
    Message,
    PendingPlan,
    PendingQuestion,
    PermissionDenial,
    QueuedMessage,
    RunConfig,
    new_id,
)
from sessiondeck.protocols import Engine, SessionCallback, SessionStore, Subscribers
from sessiondeck.registry import SessionRegistry

log = logging.getLogger(__name__)

CODEX_PLAN_APPROVED = (
    "Execute the plan you created. Proceed with the implementation now."
)


def _restore_threshold() -> int:
    return int(CONFIG.get("cancel", {}).get("restore-threshold", 50))


@dataclass(frozen=True)
class SessionView:
    """Read-only projection of one session for presentation."""

    session_id: str
    is_sending: bool
    execution_mode: ExecutionMode
    executing_mode: ExecutionMode | None
    queue_length: int
    queued: tuple[QueuedMessage, ...]
    pending_approval_kind: ApprovalKind | None
    pending_plan: PendingPlan | None
    pending_denials: tuple[PermissionDenial, ...]
    pending_question: PendingQuestion | None
    streaming_text: str
    streaming_blocks: tuple[ContentBlock, ...]
    spinner_index: int | None
    last_error: str | None
    last_run_status: RunStatus
    waiting_for_input: bool
    reviewing: bool
    draft: str
    attachments: Attachments


class SendPipeline:
    """Orchestrates runs for any number of sessions.

    Sessions are independent: each has its own queue, gate state and run
    task. State lives in the registry/gate/queue/assembler; this class
    only sequences calls between them.
    """

    def __init__(
        self,
        engine: Engine,
        store: SessionStore | None = None,
        *,
        registry: SessionRegistry | None = None,
        gate: ApprovalGate | None = None,
        assembler: StreamAssembler | None = None,
        drafts: DraftBuffers | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.registry = registry or SessionRegistry()
        self.gate = gate or ApprovalGate()
        self.queue = MessageQueue(self.registry, self.gate)
        self.assembler = assembler or StreamAssembler()
        self.drafts = drafts or DraftBuffers(store)

        # run_id -> (session_id, task)
        self._tasks: dict[str, tuple[str, asyncio.Task]] = {}
        self._cancel_requested: set[str] = set()
        # Sessions whose drain is deferred while an approval is being resolved
        self._held: set[str] = set()
        self._closing = False

        self._views = Subscribers()
        self.registry.on_idle = self._drain
        self.gate.subscribe(self._drain)
        for source in (self.registry, self.gate, self.queue, self.assembler):
            source.subscribe(self._views.notify)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        """Called with a session id whenever anything in its view may have changed."""
        return self._views.subscribe(callback)

    def view(self, session_id: str) -> SessionView:
        session = self.registry.peek(session_id)
        gate = self.gate.state(session_id)
        snap = self.assembler.snapshot(session_id)
        queued = self.queue.items(session_id)
        return SessionView(
            session_id=session_id,
            is_sending=session.is_sending,
            execution_mode=session.execution_mode,
            executing_mode=session.executing_mode if session.is_sending else None,
            queue_length=len(queued),
            queued=queued,
            pending_approval_kind=gate.awaiting,
            pending_plan=gate.plan,
            pending_denials=gate.denials,
            pending_question=gate.question,
            streaming_text=snap.text,
            streaming_blocks=snap.blocks,
            spinner_index=snap.spinner_index,
            last_error=session.last_error,
            last_run_status=session.last_run_status,
            waiting_for_input=session.waiting_for_input,
            reviewing=session.reviewing,
            draft=self.drafts.draft(session_id),
            attachments=self.drafts.attachments(session_id),
        )

    # -----------------------------------------------------------------------
    # Input helpers
    # -----------------------------------------------------------------------

    def set_draft(self, session_id: str, text: str) -> None:
        self.drafts.set_draft(session_id, text)

    def add_attachments(self, session_id: str, attachments: Attachments) -> None:
        self.drafts.add_attachments(session_id, attachments)

    def set_preferences(self, session_id: str, **changes: Any) -> None:
        self.registry.set_preferences(session_id, **changes)

    # -----------------------------------------------------------------------
    # Commands
    # -----------------------------------------------------------------------

    def submit(
        self,
        session_id: str,
        text: str,
        attachments: Attachments | None = None,
        *,
        worktree_id: str | None = None,
    ) -> SubmitOutcome:
        """Send now if the session is idle, otherwise queue behind the current run."""
        text = (text or "").strip()
        attachments = attachments or NO_ATTACHMENTS
        if not text and attachments.is_empty():
            return SubmitOutcome.IGNORED

        session = self.registry.get(session_id, worktree_id)
        self._ensure_exists(session_id, session.worktree_id)

        message = QueuedMessage(
            text=text, attachments=attachments, config=session.snapshot_config()
        )
        self.drafts.clear(session_id)
        self.registry.update(session_id, reviewing=False)

        if self.registry.is_sending(session_id):
            self.queue.enqueue(session_id, message)
            return SubmitOutcome.QUEUED

        # A new message supersedes whatever the idle session was waiting on
        with self._resolving(session_id):
            self.gate.clear(session_id)
            self.registry.update(session_id, waiting_for_input=False)
            self._dispatch(session_id, message)
        return SubmitOutcome.DISPATCHED

    async def cancel(self, session_id: str) -> bool:
        """Stop the running turn. Returns True if the engine cancelled something."""
        session = self.registry.get(session_id)
        if not session.is_sending:
            return False
        run_id = session.run_id
        with self.drafts.boundary(session_id):
            if run_id is not None:
                self._cancel_requested.add(run_id)
            try:
                cancelled = await self.engine.cancel(session_id)
            except Exception as e:
                log.exception(f"Cancel failed for session {session_id}")
                self.registry.record_error(session_id, f"Cancel failed: {e}")
                return False

        if cancelled:
            return True

        # Engine had nothing running: the run already finished but the
        # completion hasn't reached us. Repair instead of hanging.
        session = self.registry.get(session_id)
        if session.is_sending and session.run_id == run_id:
            warning = RaceRecoveryWarning(
                f"Cancel race on session {session_id}: engine idle but run "
                f"{run_id} still marked sending; forcing completion"
            )
            log.warning(str(warning))
            self._commit(session_id, run_id)
            self.registry.force_clear(session_id)
        return False

    def approve_plan(self, session_id: str, updated_plan: str | None = None) -> bool:
        """Approve the pending plan and continue in build mode."""
        return self._approve_plan(session_id, updated_plan, ExecutionMode.BUILD)

    def approve_plan_yolo(self, session_id: str, updated_plan: str | None = None) -> bool:
        """Approve the pending plan and continue with all permissions bypassed."""
        return self._approve_plan(session_id, updated_plan, ExecutionMode.YOLO)

    def answer_question(
        self, session_id: str, tool_call_id: str, answers: dict[str, Any]
    ) -> bool:
        with self._resolving(session_id):
            question = self.gate.answer_question(session_id, tool_call_id, answers)
            if question is None:
                log.info(f"No pending question {tool_call_id} in session {session_id}")
                return False
            self.assembler.set_approval(session_id, tool_call_id, ApprovalState.APPROVED)
            self.registry.update(session_id, waiting_for_input=False)
            text = format_question_answers(question.questions, answers)
            self._follow_up(
                session_id, QueuedMessage(text=text, config=self._run_config(session_id))
            )
        return True

    def skip_question(self, session_id: str) -> bool:
        """Dismiss the pending question; later questions in this run won't block."""
        with self._resolving(session_id):
            question = self.gate.skip_question(session_id)
            if question is not None:
                self.assembler.set_approval(
                    session_id, question.tool_call_id, ApprovalState.DENIED
                )
            self._settle(session_id)
        return question is not None

    def approve_permission(
        self, session_id: str, tool_call_id: str, *, remember: bool = False
    ) -> bool:
        """Approve one denied tool call. `remember` keeps the tool allowed for the rest of the run."""
        with self._resolving(session_id):
            denial = self.gate.resolve_denial(session_id, tool_call_id, approved=True)
            if denial is None:
                return False
            self.assembler.set_approval(session_id, tool_call_id, ApprovalState.APPROVED)
            if remember:
                approved = self.registry.get(session_id).approved_tools
                if denial.tool_name not in approved:
                    self.registry.update(
                        session_id, approved_tools=approved + (denial.tool_name,)
                    )
            self._resume_after_permissions(session_id)
        return True

    def deny_permission(self, session_id: str, tool_call_id: str) -> bool:
        with self._resolving(session_id):
            denial = self.gate.resolve_denial(session_id, tool_call_id, approved=False)
            if denial is None:
                return False
            self.assembler.set_approval(session_id, tool_call_id, ApprovalState.DENIED)
            self._resume_after_permissions(session_id)
        return True

    def remove_queued_message(self, session_id: str, message_id: str) -> bool:
        return self.queue.remove(session_id, message_id)

    def force_send_queued(self, session_id: str, message_id: str) -> bool:
        """Dispatch a queued message now, out of order. Never preempts a running turn."""
        with self._resolving(session_id):
            message = self.queue.force_send(session_id, message_id)
            if message is None:
                return False
            self.gate.clear(session_id)
            self.registry.update(session_id, waiting_for_input=False)
            self._dispatch(session_id, message)
        return True

    def forget(self, session_id: str) -> None:
        """Drop all state for a session that was archived or deleted elsewhere."""
        self.queue.clear(session_id)
        self.gate.forget(session_id)
        self.assembler.forget(session_id)
        self.drafts.forget(session_id)
        self.registry.forget(session_id)

    async def wait_idle(self, session_id: str, timeout: float | None = None) -> None:
        """Wait until the session has no run in flight and nothing left to drain."""

        async def _wait() -> None:
            while self.registry.is_sending(session_id):
                tasks = [t for sid, t in self._tasks.values() if sid == session_id]
                if tasks:
                    await asyncio.wait(tasks)
                else:
                    await asyncio.sleep(0.01)

        await asyncio.wait_for(_wait(), timeout=timeout)

    async def close(self) -> None:
        """Cancel in-flight run tasks and flush drafts."""
        self._closing = True
        tasks = [t for _, t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.drafts.flush_all()

    # -----------------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------------

    def _ensure_exists(self, session_id: str, worktree_id: str | None) -> None:
        if self.store is None or worktree_id is None:
            return
        known = self.store.list_sessions(worktree_id)
        if known is not None and session_id not in set(known):
            raise SessionNotFound(session_id)

    def _run_config(self, session_id: str) -> RunConfig:
        """Config of the run being continued, plus tools approved for it."""
        session = self.registry.get(session_id)
        base = session.last_sent.config if session.last_sent else session.snapshot_config()
        return base.with_allowed_tools(session.approved_tools)

    def _dispatch(self, session_id: str, message: QueuedMessage) -> str | None:
        # Gate and registry writes below must not trigger a nested drain
        with self._resolving(session_id):
            return self._start_run(session_id, message)

    def _start_run(self, session_id: str, message: QueuedMessage) -> str | None:
        run_id = new_id()[:8]
        config = message.config
        if not message.follow_up:
            # A user message starts a new logical run
            self.gate.begin_run(session_id)
            self.registry.update(session_id, approved_tools=())
        if not self.registry.begin_send(
            session_id, config.execution_mode, run_id=run_id, message=message
        ):
            self.queue.enqueue_front(session_id, message)
            return None

        with self.drafts.boundary(session_id):
            self.assembler.reset(session_id)
            self.registry.append_message(
                session_id,
                Message(
                    role="user",
                    text=message.display_text or message.text,
                    attachments=message.attachments,
                    run_id=run_id,
                ),
            )
            prompt = build_message_with_refs(message.text, message.attachments)
            task = asyncio.create_task(
                self._run(session_id, run_id, prompt, config),
                name=f"run-{session_id}-{run_id}",
            )
        self._tasks[run_id] = (session_id, task)
        task.add_done_callback(lambda _t: self._tasks.pop(run_id, None))
        return run_id

    def _follow_up(self, session_id: str, message: QueuedMessage) -> None:
        """Continue the current run; jumps ahead of user messages when busy."""
        message = QueuedMessage(
            text=message.text,
            config=message.config,
            display_text=message.display_text,
            follow_up=True,
        )
        if self.registry.is_sending(session_id):
            self.queue.enqueue_front(session_id, message)
        else:
            self._dispatch(session_id, message)

    def _drain(self, session_id: str) -> None:
        if self._closing or session_id in self._held:
            return
        message = self.queue.dequeue_next(session_id)
        if message is not None:
            log.info(f"Draining queued message {message.id} for session {session_id}")
            self._dispatch(session_id, message)

    @contextmanager
    def _resolving(self, session_id: str) -> Iterator[None]:
        """Defer queue drains until a resolution has dispatched its follow-up."""
        nested = session_id in self._held
        self._held.add(session_id)
        try:
            yield
        finally:
            if not nested:
                self._held.discard(session_id)
                self._drain(session_id)

    def _approve_plan(
        self, session_id: str, updated_plan: str | None, mode: ExecutionMode
    ) -> bool:
        with self._resolving(session_id):
            plan = self.gate.approve_plan(session_id)
            if plan is None:
                log.info(f"No pending plan in session {session_id}")
                return False
            self.assembler.set_approval(session_id, plan.tool_call_id, ApprovalState.APPROVED)
            self.registry.update(session_id, execution_mode=mode, waiting_for_input=False)

            if self.registry.get(session_id).backend == "codex":
                base = CODEX_PLAN_APPROVED
            else:
                base = PLAN_APPROVED_YOLO if mode == ExecutionMode.YOLO else PLAN_APPROVED
            text = format_plan_approval(base, updated_plan, plan.plan)
            display = PLAN_APPROVED_YOLO if mode == ExecutionMode.YOLO else PLAN_APPROVED
            self._follow_up(
                session_id,
                QueuedMessage(
                    text=text,
                    config=self._run_config(session_id).with_mode(mode),
                    display_text=display,
                ),
            )
        return True

    def _resume_after_permissions(self, session_id: str) -> None:
        if self.gate.state(session_id).denials:
            return
        approved = self.gate.take_approved_denials(session_id)
        if not approved:
            self._settle(session_id)
            return
        tools = tuple(d.tool_name for d in approved)
        self.registry.update(session_id, waiting_for_input=False)
        self._follow_up(
            session_id,
            QueuedMessage(
                text=format_permission_continuation(list(tools)),
                config=self._run_config(session_id).with_allowed_tools(tools),
            ),
        )

    def _settle(self, session_id: str) -> None:
        """Gate emptied without a follow-up: the run is over."""
        if self.gate.has_pending(session_id):
            return
        session = self.registry.get(session_id)
        changes: dict[str, Any] = {"waiting_for_input": False}
        if not session.is_sending and session.last_run_status == RunStatus.RESUMABLE:
            changes["last_run_status"] = RunStatus.COMPLETED
        self.registry.update(session_id, **changes)

    # -----------------------------------------------------------------------
    # Run task
    # -----------------------------------------------------------------------

    def _is_current(self, session_id: str, run_id: str) -> bool:
        session = self.registry.get(session_id)
        return session.is_sending and session.run_id == run_id

    async def _run(
        self, session_id: str, run_id: str, prompt: str, config: RunConfig
    ) -> None:
        """Consume one run's event stream."""
        try:
            async for event in self.engine.send(session_id, prompt, config):
                if not self._is_current(session_id, run_id):
                    log.debug(f"Dropping {type(event).__name__} from stale run {run_id}")
                    continue
                self._handle_event(session_id, run_id, event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = EngineDispatchError(session_id, str(e) or type(e).__name__)
            log.exception(f"Run {run_id} for session {session_id} failed")
            if self._is_current(session_id, run_id):
                self._fail(session_id, run_id, str(error))
        finally:
            self._finish(session_id, run_id)

    def _finish(self, session_id: str, run_id: str) -> None:
        cancel_requested = run_id in self._cancel_requested
        self._cancel_requested.discard(run_id)
        session = self.registry.get(session_id)
        if (
            session.run_id == run_id
            and session.is_sending
            and session.last_run_status == RunStatus.RUNNING
        ):
            # Stream ended without a terminal event
            self._commit(session_id, run_id)
            if cancel_requested:
                status = RunStatus.CANCELLED
            elif self.gate.has_pending(session_id):
                status = RunStatus.RESUMABLE
            else:
                status = RunStatus.COMPLETED
            self.registry.update(session_id, last_run_status=status)
        self.registry.complete_send(session_id, run_id)

    def _handle_event(self, session_id: str, run_id: str, event: Event) -> None:
        self.assembler.apply(session_id, event)
        if isinstance(event, ToolCallStart):
            self._on_tool_start(session_id, event)
        elif isinstance(event, ToolCallResult):
            self.gate.discard_denial(session_id, event.tool_call_id)
            plan = self.gate.state(session_id).plan
            ran = plan is not None and plan.tool_call_id == event.tool_call_id
            if ran and not event.is_error:
                # The plan tool ran without waiting for the user
                self.gate.drop_plan(session_id)
        elif isinstance(event, PermissionDenied):
            self._on_permission_denied(session_id, event)
        elif isinstance(event, Done):
            self._on_done(session_id, run_id, event)
        elif isinstance(event, Error):
            self._fail(session_id, run_id, event.message)
        elif isinstance(event, Cancelled):
            self._on_cancelled(session_id, run_id, event)

    def _on_tool_start(self, session_id: str, event: ToolCallStart) -> None:
        if event.name == ToolName.EXIT_PLAN_MODE:
            # Gated in any mode: the run may have entered plan mode itself
            self.gate.request_plan(session_id, event.id, str(event.input.get("plan", "")))
        elif event.name == ToolName.ASK_USER_QUESTION:
            questions = tuple(event.input.get("questions") or ())
            if not questions:
                return
            if not self.gate.request_question(session_id, event.id, questions):
                self.assembler.set_approval(session_id, event.id, ApprovalState.DENIED)
        elif event.name == ToolName.ENTER_PLAN_MODE:
            # The running turn keeps its mode; only the next submission changes
            self.registry.update(session_id, execution_mode=ExecutionMode.PLAN)

    def _on_permission_denied(self, session_id: str, event: PermissionDenied) -> None:
        session = self.registry.get(session_id)
        if session.executing_mode == ExecutionMode.YOLO:
            log.warning(f"Ignoring permission denial in yolo run for session {session_id}")
            return
        self.gate.add_denials(session_id, event.denials)

    def _on_done(self, session_id: str, run_id: str, event: Done) -> None:
        self._commit(session_id, run_id)
        if event.waiting_for_plan and self.gate.state(session_id).plan is None:
            self.gate.request_plan(
                session_id, f"plan-{run_id}", self.assembler.snapshot(session_id).text
            )
        if (
            self.gate.pending_kind(session_id) == ApprovalKind.PLAN
            and not self.gate.state(session_id).denials
            and self.queue.length(session_id) > 0
        ):
            # A queued message takes priority over an unanswered plan
            self.gate.drop_plan(session_id)
        if self.gate.has_pending(session_id):
            self.registry.update(
                session_id, last_run_status=RunStatus.RESUMABLE, waiting_for_input=True
            )
        else:
            self.registry.update(
                session_id, last_run_status=RunStatus.COMPLETED, reviewing=True
            )
        self.registry.complete_send(session_id, run_id)

    def _fail(self, session_id: str, run_id: str, message: str) -> None:
        self._commit(session_id, run_id)
        self.registry.record_error(session_id, message)
        self.registry.update(session_id, last_run_status=RunStatus.CRASHED)
        sent = self.registry.get(session_id).last_sent
        if sent is not None and not sent.follow_up:
            self.drafts.restore(session_id, sent.text, sent.attachments)

    def _on_cancelled(self, session_id: str, run_id: str, event: Cancelled) -> None:
        self._commit(session_id, run_id)
        self.registry.update(session_id, last_run_status=RunStatus.CANCELLED)
        snap = self.assembler.snapshot(session_id)
        substantial = bool(snap.tool_calls) or len(snap.text.strip()) >= _restore_threshold()
        sent = self.registry.get(session_id).last_sent
        if (
            sent is not None
            and not sent.follow_up
            and self.queue.length(session_id) == 0
            and (event.undo_send or not substantial)
        ):
            self.drafts.restore(session_id, sent.text, sent.attachments)
        self.registry.complete_send(session_id, run_id)

    def _commit(self, session_id: str, run_id: str) -> None:
        """Move streamed content into the session's message history."""
        snap = self.assembler.snapshot(session_id)
        if not snap.blocks:
            return
        self.registry.upsert_assistant_message(
            session_id,
            Message(
                role="assistant",
                text=snap.text,
                blocks=snap.blocks,
                tool_calls=snap.tool_calls,
                run_id=run_id,
            ),
        )
