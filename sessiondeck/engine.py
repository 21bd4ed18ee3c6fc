"""ClaudeEngine: the Engine protocol on top of claude_agent_sdk.

One ClaudeSDKClient per session. SDK messages are translated into the
typed events in `sessiondeck.events`; tool calls that need the user's
approval are refused in `can_use_tool` and reported as a
`PermissionDenied` event, so the run ends and the approval gate takes
over instead of the stream blocking on a prompt.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    SystemMessage,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from claude_agent_sdk.types import (
    PermissionResult,
    PermissionResultAllow,
    PermissionResultDeny,
    StreamEvent,
    ToolPermissionContext,
)

from sessiondeck.config import CONFIG
from sessiondeck.enums import ExecutionMode, ThinkingLevel, ToolName
from sessiondeck.events import (
    Cancelled,
    Done,
    Error,
    Event,
    PermissionDenied,
    TERMINAL_EVENTS,
    TextDelta,
    ThinkingDelta,
    ToolCallResult,
    ToolCallStart,
)
from sessiondeck.models import PermissionDenial, RunConfig

log = logging.getLogger(__name__)

PERMISSION_MODES = {
    ExecutionMode.PLAN: "plan",
    ExecutionMode.BUILD: "acceptEdits",
    ExecutionMode.YOLO: "bypassPermissions",
}

THINKING_TOKENS = {
    ThinkingLevel.THINK: 4_000,
    ThinkingLevel.MEGATHINK: 10_000,
    ThinkingLevel.ULTRATHINK: 31_999,
}

# Answered through a follow-up message rather than a permission prompt
USER_RESOLVED_TOOLS = {ToolName.EXIT_PLAN_MODE, ToolName.ASK_USER_QUESTION}

WAITING_FOR_USER = "The user will respond in their next message. Stop here and wait."
NEEDS_APPROVAL = "Permission for {tool} has not been granted yet. Stop and wait for the user."


def _result_text(content: Any) -> str:
    """Tool result content is a string or a list of content parts."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
            else:
                parts.append(str(part))
        return "\n".join(parts)
    return str(content)


class ClaudeEngine:
    """Runs sessions through the Claude Code CLI via the Agent SDK."""

    def __init__(
        self,
        cwd: Path | None = None,
        *,
        client_factory: Callable[[ClaudeAgentOptions], Any] = ClaudeSDKClient,
    ) -> None:
        self.cwd = cwd
        self._client_factory = client_factory
        self._clients: dict[str, Any] = {}
        # Config the session's client was connected with
        self._client_configs: dict[str, RunConfig] = {}
        # Our session id -> SDK session id, for resume after reconnect
        self._sdk_sessions: dict[str, str] = {}
        self._running: set[str] = set()
        self._cancelling: set[str] = set()
        self._denials: dict[str, list[PermissionDenial]] = {}
        # Tool uses without a result in the current run: id -> (name, input)
        self._open_tools: dict[str, dict[str, tuple[str, dict[str, Any]]]] = {}

    # -----------------------------------------------------------------------
    # Engine protocol
    # -----------------------------------------------------------------------

    async def send(
        self, session_id: str, message: str, config: RunConfig
    ) -> AsyncIterator[Event]:
        client = await self._client_for(session_id, config)
        self._running.add(session_id)
        self._cancelling.discard(session_id)
        self._denials[session_id] = []
        self._open_tools[session_id] = {}
        finished = False
        try:
            await client.query(message)
            async for sdk_message in client.receive_response():
                for event in self._translate(session_id, sdk_message):
                    if isinstance(event, TERMINAL_EVENTS):
                        finished = True
                    yield event
                denials = self._take_denials(session_id)
                if denials:
                    yield PermissionDenied(denials)
            if not finished and session_id in self._cancelling:
                yield Cancelled()
        finally:
            self._running.discard(session_id)
            self._cancelling.discard(session_id)
            self._open_tools.pop(session_id, None)

    async def cancel(self, session_id: str) -> bool:
        """Interrupt the running query. False when nothing was running."""
        client = self._clients.get(session_id)
        if client is None or session_id not in self._running:
            return False
        self._cancelling.add(session_id)
        await client.interrupt()
        log.info(f"Interrupted session {session_id}")
        return True

    async def close(self) -> None:
        for session_id in list(self._clients):
            await self._disconnect(session_id)

    # -----------------------------------------------------------------------
    # Client lifecycle
    # -----------------------------------------------------------------------

    def _options(self, session_id: str, config: RunConfig) -> ClaudeAgentOptions:
        allowed = list(
            dict.fromkeys(
                list(CONFIG.get("engine", {}).get("allowed-tools") or [])
                + list(config.allowed_tools)
            )
        )
        options = ClaudeAgentOptions(
            permission_mode=PERMISSION_MODES[config.execution_mode],
            setting_sources=["user", "project", "local"],
            cwd=self.cwd,
            resume=self._sdk_sessions.get(session_id),
            model=config.model,
            allowed_tools=allowed,
            include_partial_messages=True,
        )
        if config.thinking_level in THINKING_TOKENS:
            options.max_thinking_tokens = THINKING_TOKENS[config.thinking_level]
        if config.mcp_config:
            options.mcp_servers = config.mcp_config
        options.can_use_tool = self._permission_handler(session_id)
        return options

    async def _client_for(self, session_id: str, config: RunConfig) -> Any:
        # Options are fixed at connect time; a changed config means a new client
        client = self._clients.get(session_id)
        if client is not None and self._client_configs.get(session_id) == config:
            return client
        if client is not None:
            await self._disconnect(session_id)
        client = self._client_factory(self._options(session_id, config))
        await client.connect()
        self._clients[session_id] = client
        self._client_configs[session_id] = config
        log.info(
            f"Connected session {session_id} ({config.model}, {config.execution_mode})"
        )
        return client

    async def _disconnect(self, session_id: str) -> None:
        client = self._clients.pop(session_id, None)
        self._client_configs.pop(session_id, None)
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception:
            log.exception(f"Disconnect failed for session {session_id}")

    # -----------------------------------------------------------------------
    # Translation
    # -----------------------------------------------------------------------

    def _translate(self, session_id: str, message: Any) -> list[Event]:
        events: list[Event] = []
        open_tools = self._open_tools.setdefault(session_id, {})

        if isinstance(message, StreamEvent):
            ev = message.event
            if ev.get("type") == "content_block_delta" and not message.parent_tool_use_id:
                delta = ev.get("delta", {})
                if delta.get("type") == "text_delta" and delta.get("text"):
                    events.append(TextDelta(delta["text"]))
                elif delta.get("type") == "thinking_delta" and delta.get("thinking"):
                    events.append(ThinkingDelta(delta["thinking"]))

        elif isinstance(message, AssistantMessage):
            # Text arrives through StreamEvents; only tool blocks matter here
            for block in message.content:
                if isinstance(block, ToolUseBlock):
                    open_tools[block.id] = (block.name, dict(block.input))
                    events.append(
                        ToolCallStart(
                            id=block.id,
                            name=block.name,
                            input=dict(block.input),
                            parent_tool_use_id=message.parent_tool_use_id,
                        )
                    )
                elif isinstance(block, ToolResultBlock):
                    events.append(self._tool_result(open_tools, block))

        elif isinstance(message, UserMessage):
            content = getattr(message, "content", "")
            if isinstance(content, list):
                for block in content:
                    if isinstance(block, ToolResultBlock):
                        events.append(self._tool_result(open_tools, block))

        elif isinstance(message, SystemMessage):
            log.debug(f"System message for {session_id}: {getattr(message, 'subtype', '')}")

        elif isinstance(message, ResultMessage):
            if message.session_id:
                self._sdk_sessions[session_id] = message.session_id
            denials = self._take_denials(session_id)
            if denials:
                events.append(PermissionDenied(denials))
            if session_id in self._cancelling:
                events.append(Cancelled())
            elif message.is_error:
                events.append(Error(message.result or f"Run failed ({message.subtype})"))
            else:
                events.append(Done())

        return events

    def _tool_result(
        self, open_tools: dict[str, tuple[str, dict[str, Any]]], block: ToolResultBlock
    ) -> ToolCallResult:
        open_tools.pop(block.tool_use_id, None)
        return ToolCallResult(
            tool_call_id=block.tool_use_id,
            output=_result_text(block.content),
            is_error=bool(block.is_error),
        )

    def _take_denials(self, session_id: str) -> tuple[PermissionDenial, ...]:
        denials = self._denials.get(session_id)
        if not denials:
            return ()
        self._denials[session_id] = []
        return tuple(denials)

    # -----------------------------------------------------------------------
    # Permissions
    # -----------------------------------------------------------------------

    def _permission_handler(self, session_id: str):
        async def can_use_tool(
            tool_name: str,
            tool_input: dict[str, Any],
            context: ToolPermissionContext,  # noqa: ARG001
        ) -> PermissionResult:
            return self._decide(session_id, tool_name, tool_input)

        return can_use_tool

    def _decide(
        self, session_id: str, tool_name: str, tool_input: dict[str, Any]
    ) -> PermissionResult:
        log.info(f"Permission requested for {tool_name}: {str(tool_input)[:100]}")
        if tool_name == ToolName.ENTER_PLAN_MODE or tool_name.startswith("mcp__"):
            return PermissionResultAllow()
        if tool_name in USER_RESOLVED_TOOLS:
            return PermissionResultDeny(message=WAITING_FOR_USER)

        tool_call_id = self._match_tool_use(session_id, tool_name, tool_input)
        self._denials.setdefault(session_id, []).append(
            PermissionDenial(tool_call_id, tool_name, dict(tool_input))
        )
        return PermissionResultDeny(message=NEEDS_APPROVAL.format(tool=tool_name))

    def _match_tool_use(
        self, session_id: str, tool_name: str, tool_input: dict[str, Any]
    ) -> str:
        """Find the streamed tool use this permission request belongs to."""
        open_tools = self._open_tools.get(session_id, {})
        for tool_id, (name, params) in reversed(list(open_tools.items())):
            if name == tool_name and params == tool_input:
                return tool_id
        for tool_id, (name, _) in reversed(list(open_tools.items())):
            if name == tool_name:
                return tool_id
        # Not streamed yet; synthesize a stable id
        return f"denied-{tool_name}-{len(self._denials.get(session_id, ()))}"
