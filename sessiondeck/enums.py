"""Enums for magic strings used throughout the codebase."""

from enum import Enum


class StrEnum(str, Enum):
    """String enum base class (compatible with Python < 3.11)."""

    def __str__(self) -> str:
        return self.value


class ToolName(StrEnum):
    """Tool names the coordinator reacts to."""

    # File operations
    EDIT = "Edit"
    WRITE = "Write"
    READ = "Read"

    # Command execution
    BASH = "Bash"

    # Search tools
    GLOB = "Glob"
    GREP = "Grep"

    # Web tools
    WEB_SEARCH = "WebSearch"
    WEB_FETCH = "WebFetch"

    # User interaction
    ASK_USER_QUESTION = "AskUserQuestion"

    # Plan mode
    ENTER_PLAN_MODE = "EnterPlanMode"
    EXIT_PLAN_MODE = "ExitPlanMode"

    # Skills
    SKILL = "Skill"


class ExecutionMode(StrEnum):
    """How much autonomy a run gets."""

    PLAN = "plan"
    BUILD = "build"
    YOLO = "yolo"


class RunStatus(StrEnum):
    """Last known status of a session's run."""

    IDLE = "idle"
    RUNNING = "running"
    RESUMABLE = "resumable"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    CRASHED = "crashed"


class BlockType(StrEnum):
    """Content block variants."""

    TEXT = "text"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    UNKNOWN = "unknown"


class EventType(StrEnum):
    """Engine event kinds, as they appear on the wire."""

    TEXT_DELTA = "text_delta"
    THINKING_DELTA = "thinking_delta"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_RESULT = "tool_call_result"
    PERMISSION_DENIED = "permission_denied"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


class ApprovalKind(StrEnum):
    """Pending approval categories tracked by the gate."""

    PLAN = "plan"
    PERMISSION = "permission"
    QUESTION = "question"


class ApprovalState(StrEnum):
    """Approval state of a single tool call."""

    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class PermissionChoice(StrEnum):
    """Permission choice values returned from permission prompts."""

    ALLOW = "allow"
    ALLOW_RUN = "allow_run"
    DENY = "deny"


class ThinkingLevel(StrEnum):
    """Extended thinking budget."""

    OFF = "off"
    THINK = "think"
    MEGATHINK = "megathink"
    ULTRATHINK = "ultrathink"


class EffortLevel(StrEnum):
    """Adaptive thinking effort."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    MAX = "max"


class SubmitOutcome(StrEnum):
    """What submit() did with a message."""

    IGNORED = "ignored"
    DISPATCHED = "dispatched"
    QUEUED = "queued"
