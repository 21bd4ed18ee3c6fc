"""Engine events.

The engine delivers one ordered stream per run. Adapters either yield
these dataclasses directly or hand raw dicts to parse_event().
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from sessiondeck.enums import EventType
from sessiondeck.errors import StreamProtocolError
from sessiondeck.models import PermissionDenial


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    parent_tool_use_id: str | None = None


@dataclass(frozen=True)
class ToolCallResult:
    tool_call_id: str
    output: str = ""
    is_error: bool = False


@dataclass(frozen=True)
class PermissionDenied:
    denials: tuple[PermissionDenial, ...]


@dataclass(frozen=True)
class Done:
    # Engine-side hint that the run stopped to wait for plan approval
    waiting_for_plan: bool = False


@dataclass(frozen=True)
class Error:
    message: str


@dataclass(frozen=True)
class Cancelled:
    # True when cancellation was instant and the prompt should go back to the input
    undo_send: bool = False


@dataclass(frozen=True)
class UnknownEvent:
    """An event type this client does not understand yet."""

    type: str
    payload: Any = None
    reason: str = ""


Event = Union[
    TextDelta,
    ThinkingDelta,
    ToolCallStart,
    ToolCallResult,
    PermissionDenied,
    Done,
    Error,
    Cancelled,
    UnknownEvent,
]

TERMINAL_EVENTS = (Done, Error, Cancelled)


def _require(payload: dict[str, Any], key: str, kind: type = str) -> Any:
    value = payload.get(key)
    if not isinstance(value, kind):
        raise StreamProtocolError(
            f"{payload.get('type')!r} event missing {key!r}", payload
        )
    return value


def _parse_denial(raw: Any) -> PermissionDenial:
    if not isinstance(raw, dict):
        raise StreamProtocolError("permission denial is not an object", raw)
    tool_input = raw.get("tool_input") or {}
    return PermissionDenial(
        tool_call_id=_require(raw, "tool_use_id"),
        tool_name=_require(raw, "tool_name"),
        tool_input=tool_input if isinstance(tool_input, dict) else {"value": tool_input},
    )


def parse_event(payload: dict[str, Any]) -> Event:
    """Convert a raw wire payload into a typed event.

    Unknown types come back as UnknownEvent. Known types with missing
    fields raise StreamProtocolError so the caller can flag the block.
    """
    if not isinstance(payload, dict):
        raise StreamProtocolError("event payload is not an object", payload)

    ev_type = payload.get("type")
    if ev_type == EventType.TEXT_DELTA:
        return TextDelta(_require(payload, "content"))
    if ev_type == EventType.THINKING_DELTA:
        return ThinkingDelta(_require(payload, "content"))
    if ev_type == EventType.TOOL_CALL_START:
        tool_input = payload.get("input") or {}
        if not isinstance(tool_input, dict):
            raise StreamProtocolError("tool_call_start input is not an object", payload)
        return ToolCallStart(
            id=_require(payload, "id"),
            name=_require(payload, "name"),
            input=tool_input,
            parent_tool_use_id=payload.get("parent_tool_use_id"),
        )
    if ev_type == EventType.TOOL_CALL_RESULT:
        output = payload.get("output", "")
        return ToolCallResult(
            tool_call_id=_require(payload, "tool_use_id"),
            output=output if isinstance(output, str) else str(output),
            is_error=bool(payload.get("is_error", False)),
        )
    if ev_type == EventType.PERMISSION_DENIED:
        denials = _require(payload, "denials", list)
        return PermissionDenied(tuple(_parse_denial(d) for d in denials))
    if ev_type == EventType.DONE:
        return Done(waiting_for_plan=bool(payload.get("waiting_for_plan", False)))
    if ev_type == EventType.ERROR:
        return Error(str(payload.get("error") or "Unknown error"))
    if ev_type == EventType.CANCELLED:
        return Cancelled(undo_send=bool(payload.get("undo_send", False)))
    return UnknownEvent(type=str(ev_type), payload=payload)
