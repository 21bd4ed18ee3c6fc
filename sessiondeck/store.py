"""JSON file store for session lists, drafts and pending attachments.

Layout under the store root (default ~/.claude/sessiondeck):

    worktrees/<worktree_id>.json   {"sessions": ["<session id>", ...]}
    drafts/<session_id>.json       {"draft": "...", "attachments": {...}}

Reads that the coordinator needs synchronously (`list_sessions`) come
from an in-memory cache filled by `refresh()`. Writes are fire-and-forget
tasks; the latest payload for a session always wins.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Iterable

import aiofiles

from sessiondeck.config import CONFIG
from sessiondeck.models import (
    Attachments,
    FileMention,
    ImageAttachment,
    SkillRef,
    TextFileAttachment,
)

log = logging.getLogger(__name__)


def default_root() -> Path:
    return Path(CONFIG.get("store", {}).get("root") or "~/.claude/sessiondeck").expanduser()


def attachments_to_dict(attachments: Attachments) -> dict[str, Any]:
    return asdict(attachments)


def attachments_from_dict(data: dict[str, Any] | None) -> Attachments:
    if not data:
        return Attachments()
    return Attachments(
        images=tuple(ImageAttachment(**i) for i in data.get("images", ())),
        text_files=tuple(TextFileAttachment(**t) for t in data.get("text_files", ())),
        files=tuple(FileMention(**f) for f in data.get("files", ())),
        skills=tuple(SkillRef(**s) for s in data.get("skills", ())),
    )


class JsonSessionStore:
    """SessionStore backed by small JSON files."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or default_root()
        self._sessions: dict[str, list[str]] = {}
        self._drafts: dict[str, dict[str, Any]] = {}
        # Latest unwritten draft payload per session
        self._pending: dict[str, dict[str, Any]] = {}
        self._writers: dict[str, asyncio.Task] = {}

    def _worktree_file(self, worktree_id: str) -> Path:
        return self.root / "worktrees" / f"{worktree_id}.json"

    def _draft_file(self, session_id: str) -> Path:
        return self.root / "drafts" / f"{session_id}.json"

    # -----------------------------------------------------------------------
    # Session lists
    # -----------------------------------------------------------------------

    def list_sessions(self, worktree_id: str) -> Iterable[str] | None:
        """Known sessions for a worktree, or None if never loaded."""
        sessions = self._sessions.get(worktree_id)
        return list(sessions) if sessions is not None else None

    async def refresh(self, worktree_id: str) -> list[str]:
        path = self._worktree_file(worktree_id)
        sessions: list[str] = []
        try:
            async with aiofiles.open(path) as f:
                data = json.loads(await f.read())
            sessions = [str(s) for s in data.get("sessions", [])]
        except FileNotFoundError:
            pass
        except (json.JSONDecodeError, OSError, AttributeError):
            log.warning(f"Unreadable session list {path}", exc_info=True)
        self._sessions[worktree_id] = sessions
        return sessions

    async def add_session(self, worktree_id: str, session_id: str) -> None:
        sessions = self._sessions.get(worktree_id)
        if sessions is None:
            sessions = await self.refresh(worktree_id)
        if session_id not in sessions:
            sessions.append(session_id)
            await self._write_json(self._worktree_file(worktree_id), {"sessions": sessions})

    async def remove_session(self, worktree_id: str, session_id: str) -> None:
        sessions = self._sessions.get(worktree_id)
        if sessions is None:
            sessions = await self.refresh(worktree_id)
        if session_id in sessions:
            sessions.remove(session_id)
            await self._write_json(self._worktree_file(worktree_id), {"sessions": sessions})

    # -----------------------------------------------------------------------
    # Drafts
    # -----------------------------------------------------------------------

    def persist_draft(self, session_id: str, draft: str) -> None:
        payload = {**self._draft_payload(session_id), "draft": draft}
        self._queue_write(session_id, payload)

    def persist_attachments(self, session_id: str, attachments: Attachments) -> None:
        payload = {
            **self._draft_payload(session_id),
            "attachments": attachments_to_dict(attachments),
        }
        self._queue_write(session_id, payload)

    async def load_draft(self, session_id: str) -> tuple[str, Attachments]:
        path = self._draft_file(session_id)
        try:
            async with aiofiles.open(path) as f:
                data = json.loads(await f.read())
        except FileNotFoundError:
            return "", Attachments()
        except (json.JSONDecodeError, OSError):
            log.warning(f"Unreadable draft {path}", exc_info=True)
            return "", Attachments()
        self._drafts[session_id] = data
        return str(data.get("draft", "")), attachments_from_dict(data.get("attachments"))

    async def flush(self) -> None:
        """Wait for all pending writes."""
        while self._writers:
            await asyncio.gather(*list(self._writers.values()), return_exceptions=True)

    def _draft_payload(self, session_id: str) -> dict[str, Any]:
        return self._pending.get(session_id) or self._drafts.get(session_id) or {}

    def _queue_write(self, session_id: str, payload: dict[str, Any]) -> None:
        self._drafts[session_id] = payload
        self._pending[session_id] = payload
        if session_id in self._writers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: write synchronously
            self._pending.pop(session_id, None)
            path = self._draft_file(session_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload))
            return
        task = loop.create_task(self._writer(session_id), name=f"draft-{session_id}")
        self._writers[session_id] = task

    async def _writer(self, session_id: str) -> None:
        try:
            while session_id in self._pending:
                payload = self._pending.pop(session_id)
                try:
                    await self._write_json(self._draft_file(session_id), payload)
                except OSError:
                    log.exception(f"Failed to persist draft for session {session_id}")
        finally:
            self._writers.pop(session_id, None)

    async def _write_json(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        async with aiofiles.open(tmp, "w") as f:
            await f.write(json.dumps(data, indent=2))
        tmp.replace(path)
