"""Typed commands from the presentation layer to the pipeline.

Presentation code never pokes the registry or gate directly: it builds a
command and hands it to `execute()`. Commands arrive three ways: built in
code, parsed from slash text typed into the input (`parse_slash`), or
decoded from JSON by the remote server (`from_dict`).

The COMMANDS registry is the single source of truth for slash commands.
It's used by `/help` and by the CLI's prompt.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from typing import TYPE_CHECKING, Any, Union

from sessiondeck.enums import ExecutionMode, SubmitOutcome
from sessiondeck.errors import EmptySubmission, ValidationError
from sessiondeck.models import Attachments
from sessiondeck.store import attachments_from_dict

if TYPE_CHECKING:
    from sessiondeck.pipeline import SendPipeline

log = logging.getLogger(__name__)

# (name, description); the first word after the slash maps to a command type
COMMANDS: list[tuple[str, str]] = [
    ("/cancel", "Stop the running turn"),
    ("/approve [plan]", "Approve the pending plan and build"),
    ("/yolo [plan]", "Approve the pending plan, skip all permission prompts"),
    ("/skip", "Skip the pending question"),
    ("/allow <tool-call-id>", "Allow one blocked tool call"),
    ("/always <tool-call-id>", "Allow the tool for the rest of this run"),
    ("/deny <tool-call-id>", "Deny a blocked tool call"),
    ("/remove <message-id>", "Remove a queued message"),
    ("/send <message-id>", "Send a queued message now"),
    ("/mode <plan|build|yolo>", "Set the mode for the next message"),
    ("/model <name>", "Set the model for the next message"),
]


@dataclass(frozen=True)
class Submit:
    session_id: str
    text: str
    attachments: Attachments = field(default_factory=Attachments)
    worktree_id: str | None = None


@dataclass(frozen=True)
class Cancel:
    session_id: str


@dataclass(frozen=True)
class ApprovePlan:
    session_id: str
    updated_plan: str | None = None
    yolo: bool = False


@dataclass(frozen=True)
class AnswerQuestion:
    session_id: str
    tool_call_id: str
    answers: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SkipQuestion:
    session_id: str


@dataclass(frozen=True)
class ApprovePermission:
    session_id: str
    tool_call_id: str
    remember: bool = False


@dataclass(frozen=True)
class DenyPermission:
    session_id: str
    tool_call_id: str


@dataclass(frozen=True)
class RemoveQueuedMessage:
    session_id: str
    message_id: str


@dataclass(frozen=True)
class ForceSendQueued:
    session_id: str
    message_id: str


@dataclass(frozen=True)
class SetDraft:
    session_id: str
    text: str


@dataclass(frozen=True)
class SetPreferences:
    session_id: str
    changes: dict[str, Any] = field(default_factory=dict)


Command = Union[
    Submit,
    Cancel,
    ApprovePlan,
    AnswerQuestion,
    SkipQuestion,
    ApprovePermission,
    DenyPermission,
    RemoveQueuedMessage,
    ForceSendQueued,
    SetDraft,
    SetPreferences,
]

COMMAND_TYPES: dict[str, type] = {
    "submit": Submit,
    "cancel": Cancel,
    "approve_plan": ApprovePlan,
    "answer_question": AnswerQuestion,
    "skip_question": SkipQuestion,
    "approve_permission": ApprovePermission,
    "deny_permission": DenyPermission,
    "remove_queued_message": RemoveQueuedMessage,
    "force_send_queued": ForceSendQueued,
    "set_draft": SetDraft,
    "set_preferences": SetPreferences,
}
_TYPE_NAMES = {cls: name for name, cls in COMMAND_TYPES.items()}


async def execute(pipeline: SendPipeline, command: Command) -> Any:
    """Run a command against the pipeline and return its result.

    An empty submission raises EmptySubmission so the caller can show a
    notice; the pipeline itself treats it as a no-op.
    """
    log.debug(f"Executing {command!r}")
    sid = command.session_id
    if isinstance(command, Submit):
        outcome = pipeline.submit(
            sid, command.text, command.attachments, worktree_id=command.worktree_id
        )
        if outcome == SubmitOutcome.IGNORED:
            raise EmptySubmission(sid)
        return outcome
    if isinstance(command, Cancel):
        return await pipeline.cancel(sid)
    if isinstance(command, ApprovePlan):
        if command.yolo:
            return pipeline.approve_plan_yolo(sid, command.updated_plan)
        return pipeline.approve_plan(sid, command.updated_plan)
    if isinstance(command, AnswerQuestion):
        return pipeline.answer_question(sid, command.tool_call_id, command.answers)
    if isinstance(command, SkipQuestion):
        return pipeline.skip_question(sid)
    if isinstance(command, ApprovePermission):
        return pipeline.approve_permission(
            sid, command.tool_call_id, remember=command.remember
        )
    if isinstance(command, DenyPermission):
        return pipeline.deny_permission(sid, command.tool_call_id)
    if isinstance(command, RemoveQueuedMessage):
        return pipeline.remove_queued_message(sid, command.message_id)
    if isinstance(command, ForceSendQueued):
        return pipeline.force_send_queued(sid, command.message_id)
    if isinstance(command, SetDraft):
        pipeline.set_draft(sid, command.text)
        return None
    if isinstance(command, SetPreferences):
        pipeline.set_preferences(sid, **command.changes)
        return None
    raise ValidationError(f"Unknown command: {command!r}")


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def from_dict(payload: dict[str, Any]) -> Command:
    """Decode `{"type": "approve_plan", "session_id": ..., ...}`."""
    kind = payload.get("type")
    cls = COMMAND_TYPES.get(kind) if isinstance(kind, str) else None
    if cls is None:
        raise ValidationError(f"Unknown command type: {kind!r}")
    names = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in payload.items() if k in names}
    if "attachments" in kwargs:
        try:
            kwargs["attachments"] = attachments_from_dict(kwargs["attachments"])
        except TypeError as e:
            raise ValidationError(f"Bad attachments: {e}") from e
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ValidationError(f"Bad {kind} command: {e}") from e


def to_dict(command: Command) -> dict[str, Any]:
    return {"type": _TYPE_NAMES[type(command)], **asdict(command)}


def parse_slash(session_id: str, text: str) -> Command | None:
    """Route slash text to a command. Returns None for plain prompts."""
    cmd = text.strip()
    if not cmd.startswith("/"):
        return None
    parts = cmd.split(maxsplit=1)
    name, arg = parts[0], (parts[1].strip() if len(parts) > 1 else "")

    if name == "/cancel":
        return Cancel(session_id)
    if name == "/approve":
        return ApprovePlan(session_id, updated_plan=arg or None)
    if name == "/yolo":
        return ApprovePlan(session_id, updated_plan=arg or None, yolo=True)
    if name == "/skip":
        return SkipQuestion(session_id)
    if name in ("/allow", "/always", "/deny", "/remove", "/send"):
        if not arg:
            raise ValidationError(f"{name} needs an id")
        if name == "/allow":
            return ApprovePermission(session_id, arg)
        if name == "/always":
            return ApprovePermission(session_id, arg, remember=True)
        if name == "/deny":
            return DenyPermission(session_id, arg)
        if name == "/remove":
            return RemoveQueuedMessage(session_id, arg)
        return ForceSendQueued(session_id, arg)
    if name == "/mode":
        try:
            mode = ExecutionMode(arg.lower())
        except ValueError:
            raise ValidationError(
                f"Invalid mode '{arg}'. Use: plan, build, yolo"
            ) from None
        return SetPreferences(session_id, {"execution_mode": mode})
    if name == "/model":
        if not arg:
            raise ValidationError("/model needs a name")
        return SetPreferences(session_id, {"model": arg.lower()})
    return None


def get_help_commands() -> list[tuple[str, str]]:
    """(command, description) pairs for help display."""
    return list(COMMANDS)
