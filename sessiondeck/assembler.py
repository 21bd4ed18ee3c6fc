"""StreamAssembler: turns a run's event stream into ordered content blocks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from sessiondeck.config import CONFIG
from sessiondeck.enums import ApprovalState, BlockType
from sessiondeck.errors import StreamProtocolError
from sessiondeck.events import (
    Cancelled,
    Done,
    Error,
    Event,
    PermissionDenied,
    TextDelta,
    ThinkingDelta,
    ToolCallResult,
    ToolCallStart,
    UnknownEvent,
    parse_event,
)
from sessiondeck.models import ContentBlock, ToolCall
from sessiondeck.protocols import SessionCallback, Subscribers

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamSnapshot:
    """What presentation needs to draw a streaming message."""

    text: str = ""
    blocks: tuple[ContentBlock, ...] = ()
    spinner_index: int | None = None

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        return tuple(b.tool_call for b in self.blocks if b.tool_call is not None)

    def tool_call(self, tool_call_id: str) -> ToolCall | None:
        for tool in self.tool_calls:
            if tool.id == tool_call_id:
                return tool
        return None


@dataclass
class _Buffer:
    """Mutable working state for one session's current run."""

    text: str = ""
    blocks: list[ContentBlock] = field(default_factory=list)
    tool_index: dict[str, int] = field(default_factory=dict)
    finished: bool = False


_EMPTY = StreamSnapshot()


def _skip_output_tools() -> set[str]:
    return set(CONFIG.get("stream", {}).get("skip-output-tools", ["Read"]) or ())


class StreamAssembler:
    """Reassembles per-session engine events.

    Produces (a) a flat text buffer for fallback rendering and (b) an
    ordered block list with embedded tool-call state. Consecutive events
    of the same type (or the same tool id) merge into the open block.
    Nothing the engine sends is dropped: events this client doesn't
    understand become `unknown` blocks flagged unsupported.

    The buffer is reset exactly once per run, by the pipeline at dispatch
    time, never when the first event arrives.
    """

    def __init__(self) -> None:
        self._buffers: dict[str, _Buffer] = {}
        self._snapshots: dict[str, StreamSnapshot] = {}
        # Tool ids from earlier runs; ids must stay unique for the session's lifetime
        self._retired_ids: dict[str, set[str]] = {}
        self._subscribers = Subscribers()

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        return self._subscribers.subscribe(callback)

    def snapshot(self, session_id: str) -> StreamSnapshot:
        return self._snapshots.get(session_id, _EMPTY)

    def reset(self, session_id: str) -> None:
        """Start a fresh buffer for a new run."""
        old = self._buffers.pop(session_id, None)
        if old is not None:
            self._retired_ids.setdefault(session_id, set()).update(old.tool_index)
        self._buffers[session_id] = _Buffer()
        self._publish(session_id)

    def forget(self, session_id: str) -> None:
        self._buffers.pop(session_id, None)
        self._snapshots.pop(session_id, None)
        self._retired_ids.pop(session_id, None)

    # -----------------------------------------------------------------------
    # Event intake
    # -----------------------------------------------------------------------

    def apply_raw(self, session_id: str, payload: dict[str, Any]) -> Event | None:
        """Parse and apply a wire payload. Returns the event, or None if malformed."""
        try:
            event = parse_event(payload)
        except StreamProtocolError as e:
            self._flag_unsupported(session_id, payload, str(e))
            return None
        self.apply(session_id, event)
        return event

    def apply(self, session_id: str, event: Event) -> None:
        buf = self._buffers.setdefault(session_id, _Buffer())

        if isinstance(event, TextDelta):
            self._append_text(buf, BlockType.TEXT, event.text)
            buf.text += event.text
        elif isinstance(event, ThinkingDelta):
            self._append_text(buf, BlockType.THINKING, event.text)
        elif isinstance(event, ToolCallStart):
            self._start_tool(session_id, buf, event)
        elif isinstance(event, ToolCallResult):
            self._finish_tool(session_id, buf, event)
        elif isinstance(event, PermissionDenied):
            for denial in event.denials:
                self._set_approval(buf, denial.tool_call_id, ApprovalState.PENDING)
        elif isinstance(event, (Done, Error, Cancelled)):
            self._close_open_block(buf)
            buf.finished = True
        elif isinstance(event, UnknownEvent):
            self._flag_unsupported(
                session_id, event.payload, event.reason or f"unknown event {event.type!r}"
            )
            return
        self._publish(session_id)

    def set_approval(self, session_id: str, tool_call_id: str, state: ApprovalState) -> None:
        buf = self._buffers.get(session_id)
        if buf is not None and self._set_approval(buf, tool_call_id, state):
            self._publish(session_id)

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _close_open_block(self, buf: _Buffer) -> None:
        """Text and thinking blocks complete as soon as something else starts."""
        if buf.blocks:
            last = buf.blocks[-1]
            if last.type in (BlockType.TEXT, BlockType.THINKING) and not last.complete:
                buf.blocks[-1] = replace(last, complete=True)

    def _append_text(self, buf: _Buffer, block_type: BlockType, text: str) -> None:
        if not text:
            return
        if buf.blocks:
            last = buf.blocks[-1]
            if last.type == block_type and not last.complete:
                buf.blocks[-1] = replace(last, text=last.text + text)
                return
        self._close_open_block(buf)
        buf.blocks.append(ContentBlock(type=block_type, index=len(buf.blocks), text=text))

    def _start_tool(self, session_id: str, buf: _Buffer, event: ToolCallStart) -> None:
        idx = buf.tool_index.get(event.id)
        if idx is not None:
            # Same id again (e.g. input streamed in pieces): merge into the block
            block = buf.blocks[idx]
            tool = block.tool_call
            if tool is None:
                return
            merged = replace(
                tool,
                name=event.name or tool.name,
                input={**tool.input, **event.input},
            )
            buf.blocks[idx] = replace(block, tool_call=merged)
            return

        if event.id in self._retired_ids.get(session_id, ()):
            reason = f"tool call id {event.id!r} reused within session {session_id}"
            self._flag_unsupported(session_id, event, reason, publish=False)
            return

        self._close_open_block(buf)
        tool = ToolCall(
            id=event.id,
            name=event.name,
            input=dict(event.input),
            parent_tool_use_id=event.parent_tool_use_id,
        )
        buf.tool_index[event.id] = len(buf.blocks)
        buf.blocks.append(
            ContentBlock(type=BlockType.TOOL_CALL, index=len(buf.blocks), tool_call=tool)
        )

    def _finish_tool(self, session_id: str, buf: _Buffer, event: ToolCallResult) -> None:
        idx = buf.tool_index.get(event.tool_call_id)
        if idx is None:
            self._flag_unsupported(
                session_id,
                event,
                f"result for unknown tool call {event.tool_call_id!r}",
                publish=False,
            )
            return
        block = buf.blocks[idx]
        tool = block.tool_call
        if tool is None:
            return
        # Large outputs (file reads) aren't kept; the block still completes
        output = "" if tool.name in _skip_output_tools() else event.output
        buf.blocks[idx] = replace(
            block,
            tool_call=replace(tool, output=output, is_error=event.is_error),
            complete=True,
        )

    def _set_approval(self, buf: _Buffer, tool_call_id: str, state: ApprovalState) -> bool:
        idx = buf.tool_index.get(tool_call_id)
        if idx is None:
            return False
        block = buf.blocks[idx]
        if block.tool_call is None:
            return False
        buf.blocks[idx] = replace(block, tool_call=replace(block.tool_call, approval=state))
        return True

    def _flag_unsupported(
        self, session_id: str, raw: Any, reason: str, *, publish: bool = True
    ) -> None:
        log.warning(f"Stream protocol issue in session {session_id}: {reason}")
        buf = self._buffers.setdefault(session_id, _Buffer())
        self._close_open_block(buf)
        buf.blocks.append(
            ContentBlock(
                type=BlockType.UNKNOWN,
                index=len(buf.blocks),
                text=reason,
                raw=raw,
                complete=True,
                unsupported=True,
            )
        )
        if publish:
            self._publish(session_id)

    def _publish(self, session_id: str) -> None:
        buf = self._buffers.get(session_id)
        if buf is None:
            return
        spinner = None
        for block in reversed(buf.blocks if not buf.finished else ()):
            if block.type == BlockType.TOOL_CALL and not block.complete:
                spinner = block.index
                break
        self._snapshots[session_id] = StreamSnapshot(
            text=buf.text, blocks=tuple(buf.blocks), spinner_index=spinner
        )
        self._subscribers.notify(session_id)
