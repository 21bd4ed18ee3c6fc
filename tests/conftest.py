"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from sessiondeck.drafts import DraftBuffers
from sessiondeck.enums import ExecutionMode
from sessiondeck.events import TERMINAL_EVENTS, Cancelled, Event, ToolCallStart
from sessiondeck.models import Attachments, QueuedMessage, RunConfig
from sessiondeck.pipeline import SendPipeline


async def flush(times: int = 10) -> None:
    """Let run tasks consume whatever is queued on their streams."""
    for _ in range(times):
        await asyncio.sleep(0)


class FakeEngine:
    """Scripted engine: every send() opens a stream the test feeds with emit()."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, RunConfig]] = []
        self.streams: list[asyncio.Queue] = []
        self.cancel_calls: list[str] = []
        # Force cancel()'s return value (None = behave like a real engine)
        self.cancel_result: bool | None = None
        # Raised by the next stream before it yields anything
        self.fail_next: Exception | None = None
        self._active: dict[str, asyncio.Queue] = {}

    def send(self, session_id: str, message: str, config: RunConfig):
        self.sent.append((session_id, message, config))
        queue: asyncio.Queue = asyncio.Queue()
        self.streams.append(queue)
        error, self.fail_next = self.fail_next, None
        return self._stream(session_id, queue, error)

    async def _stream(self, session_id: str, queue: asyncio.Queue, error: Exception | None):
        if error is not None:
            raise error
        self._active[session_id] = queue
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
                if isinstance(event, TERMINAL_EVENTS):
                    return
        finally:
            if self._active.get(session_id) is queue:
                del self._active[session_id]

    def emit(self, *events: Event, run: int = -1) -> None:
        for event in events:
            self.streams[run].put_nowait(event)

    def end(self, run: int = -1) -> None:
        """Close a stream without a terminal event."""
        self.streams[run].put_nowait(None)

    async def cancel(self, session_id: str) -> bool:
        self.cancel_calls.append(session_id)
        if self.cancel_result is not None:
            return self.cancel_result
        queue = self._active.get(session_id)
        if queue is None:
            return False
        queue.put_nowait(Cancelled())
        return True


class FakeStore:
    """In-memory SessionStore."""

    def __init__(self) -> None:
        self.sessions: dict[str, list[str]] = {}
        self.drafts: dict[str, str] = {}
        self.attachments: dict[str, Attachments] = {}
        self.draft_writes: list[tuple[str, str]] = []

    def list_sessions(self, worktree_id: str):
        return self.sessions.get(worktree_id)

    def persist_draft(self, session_id: str, draft: str) -> None:
        self.drafts[session_id] = draft
        self.draft_writes.append((session_id, draft))

    def persist_attachments(self, session_id: str, attachments: Attachments) -> None:
        self.attachments[session_id] = attachments


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest_asyncio.fixture
async def pipeline(engine, store):
    pipe = SendPipeline(engine, store, drafts=DraftBuffers(store, debounce=0.01))
    yield pipe
    await pipe.close()


@pytest.fixture
def run_config_factory():
    """Create RunConfig instances with sensible defaults.

    Usage::

        def test_example(run_config_factory):
            config = run_config_factory(execution_mode=ExecutionMode.YOLO)
    """

    def _create(**kwargs: Any) -> RunConfig:
        defaults: dict[str, Any] = {"model": "opus", "execution_mode": ExecutionMode.BUILD}
        defaults.update(kwargs)
        return RunConfig(**defaults)

    return _create


@pytest.fixture
def queued_message_factory(run_config_factory):
    def _create(text: str = "hello", **kwargs: Any) -> QueuedMessage:
        kwargs.setdefault("config", run_config_factory())
        return QueuedMessage(text=text, **kwargs)

    return _create


def tool_start(tool_id: str, name: str, **tool_input: Any) -> ToolCallStart:
    return ToolCallStart(id=tool_id, name=name, input=tool_input)

