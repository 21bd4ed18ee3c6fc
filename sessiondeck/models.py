"""Immutable data model shared by every component.

Everything here is a frozen dataclass. State changes produce a new value
via dataclasses.replace, so a reader holding an old reference never sees
a half-updated record.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from sessiondeck.enums import (
    ApprovalState,
    BlockType,
    EffortLevel,
    ExecutionMode,
    RunStatus,
    ThinkingLevel,
)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageAttachment:
    """An image saved to disk and referenced from the message."""

    path: str


@dataclass(frozen=True)
class TextFileAttachment:
    """A pasted text blob saved to disk."""

    path: str
    size: int = 0


@dataclass(frozen=True)
class FileMention:
    """An @-mentioned file or directory in the worktree."""

    relative_path: str
    is_directory: bool = False


@dataclass(frozen=True)
class SkillRef:
    name: str
    path: str


@dataclass(frozen=True)
class Attachments:
    images: tuple[ImageAttachment, ...] = ()
    text_files: tuple[TextFileAttachment, ...] = ()
    files: tuple[FileMention, ...] = ()
    skills: tuple[SkillRef, ...] = ()

    def is_empty(self) -> bool:
        return not (self.images or self.text_files or self.files or self.skills)

    def merged(self, other: Attachments) -> Attachments:
        return Attachments(
            images=self.images + other.images,
            text_files=self.text_files + other.text_files,
            files=self.files + other.files,
            skills=self.skills + other.skills,
        )


NO_ATTACHMENTS = Attachments()


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunConfig:
    """Snapshot of model/mode settings, captured when a message is submitted.

    Passed by value from enqueue through dispatch; later preference edits
    produce a new snapshot and never touch this one.
    """

    model: str
    execution_mode: ExecutionMode
    provider: str | None = None
    backend: str = "claude"
    thinking_level: ThinkingLevel = ThinkingLevel.OFF
    effort_level: EffortLevel | None = None
    mcp_config: str | None = None
    allowed_tools: tuple[str, ...] = ()

    def with_mode(self, mode: ExecutionMode) -> RunConfig:
        return replace(self, execution_mode=mode)

    def with_allowed_tools(self, tools: tuple[str, ...]) -> RunConfig:
        merged = tuple(dict.fromkeys(self.allowed_tools + tools))
        return replace(self, allowed_tools=merged)


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCall:
    """A tool use within an assistant turn."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    output: str | None = None
    is_error: bool = False
    approval: ApprovalState = ApprovalState.NONE
    parent_tool_use_id: str | None = None

    @property
    def pending(self) -> bool:
        return self.output is None


@dataclass(frozen=True)
class ContentBlock:
    """One ordered unit of assistant output.

    `index` is the arrival order within the message. Unknown blocks keep
    the raw payload so newer engine event types survive a round trip.
    """

    type: BlockType
    index: int
    text: str = ""
    tool_call: ToolCall | None = None
    complete: bool = False
    raw: Any = None
    unsupported: bool = False

    @property
    def tool_call_id(self) -> str | None:
        return self.tool_call.id if self.tool_call else None


@dataclass(frozen=True)
class Message:
    role: Literal["user", "assistant"]
    text: str = ""
    blocks: tuple[ContentBlock, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    attachments: Attachments = NO_ATTACHMENTS
    run_id: str | None = None
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class QueuedMessage:
    """A user submission waiting for (or about to start) a run."""

    text: str
    config: RunConfig
    attachments: Attachments = NO_ATTACHMENTS
    id: str = field(default_factory=new_id)
    queued_at: float = field(default_factory=time.time)
    # Shown in history instead of the full prompt (e.g. "Approved")
    display_text: str | None = None
    # Synthesized by an approval; continues the current run instead of starting one
    follow_up: bool = False


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionDenial:
    """A tool call the engine refused to run without approval."""

    tool_call_id: str
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        from sessiondeck.formatting import format_tool_header

        return f"Allow {format_tool_header(self.tool_name, self.tool_input)}?"


@dataclass(frozen=True)
class PendingPlan:
    tool_call_id: str
    plan: str = ""


@dataclass(frozen=True)
class PendingQuestion:
    tool_call_id: str
    questions: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class AnsweredQuestion:
    tool_call_id: str
    answers: dict[str, Any] = field(default_factory=dict)
    skipped: bool = False


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Session:
    """Per-session record held by the registry."""

    id: str
    worktree_id: str | None = None
    messages: tuple[Message, ...] = ()

    # Preferences (what the next submission will use)
    model: str = "opus"
    provider: str | None = None
    backend: str = "claude"
    execution_mode: ExecutionMode = ExecutionMode.PLAN
    thinking_level: ThinkingLevel = ThinkingLevel.OFF
    effort_level: EffortLevel | None = None
    mcp_config: str | None = None
    approved_tools: tuple[str, ...] = ()

    # Run state
    is_sending: bool = False
    run_id: str | None = None
    executing_mode: ExecutionMode | None = None
    last_run_status: RunStatus = RunStatus.IDLE
    last_error: str | None = None
    last_sent: QueuedMessage | None = None
    waiting_for_input: bool = False
    reviewing: bool = False

    def snapshot_config(self) -> RunConfig:
        """Freeze the current preferences into a RunConfig."""
        return RunConfig(
            model=self.model,
            provider=self.provider,
            backend=self.backend,
            execution_mode=self.execution_mode,
            thinking_level=self.thinking_level,
            effort_level=self.effort_level,
            mcp_config=self.mcp_config,
        )
