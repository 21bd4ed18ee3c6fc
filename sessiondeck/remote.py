"""HTTP server for remote control of sessiondeck.

Lets external processes drive sessions through the same command
interface the UI uses:
- Send a prompt or slash command to a session
- Post a typed command (approve, answer, cancel, ...)
- Read a session's view
- Wait for a session to go idle

Start with --remote-port flag or SESSIONDECK_REMOTE_PORT env var.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from sessiondeck import commands
from sessiondeck.commands import Submit
from sessiondeck.errors import SessionNotFound, ValidationError

if TYPE_CHECKING:
    from sessiondeck.pipeline import SendPipeline, SessionView

log = logging.getLogger(__name__)

PIPELINE = web.AppKey("pipeline", object)

_server: web.AppRunner | None = None

_dumps = functools.partial(json.dumps, default=str)


def _json(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


def view_to_dict(view: SessionView) -> dict[str, Any]:
    data = asdict(view)
    data["queued"] = [
        {"id": m.id, "text": m.display_text or m.text, "queued_at": m.queued_at}
        for m in view.queued
    ]
    return data


def _pipeline(request: web.Request) -> SendPipeline:
    return request.app[PIPELINE]  # type: ignore[return-value]


async def _run_command(pipeline: SendPipeline, command: commands.Command) -> web.Response:
    try:
        result = await commands.execute(pipeline, command)
    except SessionNotFound as e:
        return _json({"error": str(e)}, status=404)
    except (ValidationError, ValueError) as e:
        return _json({"error": str(e)}, status=400)
    except Exception as e:
        log.exception(f"Command failed: {command!r}")
        return _json({"error": str(e)}, status=500)
    return _json({"status": "ok", "result": result})


async def handle_send(request: web.Request) -> web.Response:
    """Send a prompt or slash command. Body: {"text": "message"}

    If text starts with /, it's treated as a command.
    """
    session_id = request.match_info["session_id"]
    try:
        data = await request.json()
    except json.JSONDecodeError:
        # Plain text body
        data = {"text": await request.text()}
    if not isinstance(data, dict):
        return _json({"error": "Expected a JSON object"}, status=400)

    text = str(data.get("text", ""))
    try:
        command = commands.parse_slash(session_id, text)
        if command is None:
            command = commands.from_dict(
                {**data, "type": "submit", "session_id": session_id, "text": text}
            )
    except ValidationError as e:
        return _json({"error": str(e)}, status=400)
    if isinstance(command, Submit) and not text.strip() and command.attachments.is_empty():
        return _json({"error": "No text provided"}, status=400)
    return await _run_command(_pipeline(request), command)


async def handle_command(request: web.Request) -> web.Response:
    """Post a typed command. Body: {"type": "approve_plan", ...}"""
    session_id = request.match_info["session_id"]
    try:
        data = await request.json()
    except json.JSONDecodeError:
        return _json({"error": "Invalid JSON"}, status=400)
    if not isinstance(data, dict):
        return _json({"error": "Expected a JSON object"}, status=400)
    try:
        command = commands.from_dict({**data, "session_id": session_id})
    except ValidationError as e:
        return _json({"error": str(e)}, status=400)
    return await _run_command(_pipeline(request), command)


async def handle_view(request: web.Request) -> web.Response:
    session_id = request.match_info["session_id"]
    return _json(view_to_dict(_pipeline(request).view(session_id)))


async def handle_wait_idle(request: web.Request) -> web.Response:
    """Wait until the session is idle. Query param: ?timeout=30"""
    session_id = request.match_info["session_id"]
    try:
        timeout = float(request.query.get("timeout", "30"))
    except ValueError:
        return _json({"error": "Invalid timeout"}, status=400)
    try:
        await _pipeline(request).wait_idle(session_id, timeout=timeout)
    except asyncio.TimeoutError:
        return _json({"error": "Timeout waiting for idle"}, status=408)
    return _json({"status": "idle"})


async def handle_status(request: web.Request) -> web.Response:
    """List known sessions."""
    pipeline = _pipeline(request)
    sessions = [
        {
            "id": s.id,
            "worktree_id": s.worktree_id,
            "is_sending": s.is_sending,
            "execution_mode": s.execution_mode,
            "last_run_status": s.last_run_status,
            "queue_length": pipeline.queue.length(s.id),
            "pending_approval": pipeline.gate.pending_kind(s.id),
        }
        for s in pipeline.registry
    ]
    return _json({"sessions": sessions})


def create_app(pipeline: SendPipeline) -> web.Application:
    webapp = web.Application()
    webapp[PIPELINE] = pipeline
    webapp.router.add_get("/status", handle_status)
    webapp.router.add_get("/sessions/{session_id}", handle_view)
    webapp.router.add_post("/sessions/{session_id}/send", handle_send)
    webapp.router.add_post("/sessions/{session_id}/commands", handle_command)
    webapp.router.add_get("/sessions/{session_id}/wait_idle", handle_wait_idle)
    return webapp


async def start_server(pipeline: SendPipeline, port: int) -> None:
    """Start the remote control HTTP server."""
    global _server

    runner = web.AppRunner(create_app(pipeline))
    await runner.setup()
    _server = runner

    site = web.TCPSite(runner, "localhost", port)
    await site.start()
    log.info(f"Remote control server started on http://localhost:{port}")


async def stop_server() -> None:
    global _server
    if _server is not None:
        await _server.cleanup()
        _server = None
