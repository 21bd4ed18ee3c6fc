"""Entry point for the sessiondeck CLI."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt

from sessiondeck import commands
from sessiondeck.enums import ApprovalKind, BlockType, ExecutionMode, PermissionChoice
from sessiondeck.config import NEW_INSTALL
from sessiondeck.config import save as save_config
from sessiondeck.errors import (
    ValidationError,
    log_exception,
    set_notify_callback,
    setup_logging,
)
from sessiondeck.formatting import format_tool_header
from sessiondeck.models import Message, new_id

console = Console()


def _version() -> str:
    try:
        return version("sessiondeck")
    except PackageNotFoundError:
        return "unknown"


def _worktree_id(cwd: Path) -> str:
    """File-name-safe id for a working directory."""
    return str(cwd.resolve()).strip("/").replace("/", "-") or "root"


def render_message(message: Message, cwd: Path | None = None) -> None:
    """Print one committed assistant message."""
    for block in message.blocks:
        if block.type == BlockType.TEXT:
            console.print(Markdown(block.text))
        elif block.type == BlockType.THINKING:
            console.print(block.text, style="dim italic")
        elif block.type == BlockType.TOOL_CALL and block.tool_call is not None:
            tool = block.tool_call
            header = format_tool_header(tool.name, tool.input, cwd)
            style = "red" if tool.is_error else "cyan"
            console.print(f"● {header}", style=style, markup=False)
        else:
            console.print(f"⚠ unsupported: {block.text}", style="yellow", markup=False)


async def _ask(prompt: str, choices: list[str] | None = None, default: str | None = None) -> str:
    return await asyncio.to_thread(Prompt.ask, prompt, choices=choices, default=default)


async def _resolve_approvals(pipeline, session_id: str) -> None:
    """Prompt for whatever the session is waiting on."""
    view = pipeline.view(session_id)
    kind = view.pending_approval_kind
    if kind == ApprovalKind.PLAN and view.pending_plan is not None:
        console.print(Panel(Markdown(view.pending_plan.plan or "(empty plan)"), title="Plan"))
        choice = await _ask("Approve plan?", ["build", "yolo", "no"], "build")
        if choice == "build":
            pipeline.approve_plan(session_id)
        elif choice == "yolo":
            pipeline.approve_plan_yolo(session_id)
    elif kind == ApprovalKind.QUESTION and view.pending_question is not None:
        question = view.pending_question
        answers: dict[str, str] = {}
        for q in question.questions:
            text = q.get("question", "?")
            options = [o.get("label", "") for o in q.get("options", []) if isinstance(o, dict)]
            if options:
                console.print("  " + "  ".join(f"[bold]{escape(o)}[/bold]" for o in options))
            answer = await _ask(text)
            if not answer:
                pipeline.skip_question(session_id)
                return
            answers[text] = answer
        pipeline.answer_question(session_id, question.tool_call_id, answers)
    elif kind == ApprovalKind.PERMISSION:
        for denial in view.pending_denials:
            choice = await _ask(
                denial.title, [c.value for c in PermissionChoice], PermissionChoice.ALLOW.value
            )
            if choice == PermissionChoice.DENY:
                pipeline.deny_permission(session_id, denial.tool_call_id)
            else:
                pipeline.approve_permission(
                    session_id,
                    denial.tool_call_id,
                    remember=choice == PermissionChoice.ALLOW_RUN,
                )


async def _drive(pipeline, session_id: str) -> None:
    """Wait for runs to finish, printing output and prompting until idle."""
    printed: set[str] = set()
    while True:
        with console.status("Working..."):
            await pipeline.wait_idle(session_id)
        session = pipeline.registry.get(session_id)
        for message in session.messages:
            if message.role == "assistant" and message.id not in printed:
                printed.add(message.id)
                render_message(message, Path.cwd())
        if session.last_error:
            console.print(f"[red]Error: {escape(session.last_error)}[/red]")
        if pipeline.gate.has_pending(session_id):
            await _resolve_approvals(pipeline, session_id)
        if not pipeline.registry.is_sending(session_id):
            return


async def _repl(args: argparse.Namespace) -> None:
    from sessiondeck.engine import ClaudeEngine
    from sessiondeck.pipeline import SendPipeline
    from sessiondeck.store import JsonSessionStore

    engine = ClaudeEngine(Path.cwd())
    store = JsonSessionStore()
    pipeline = SendPipeline(engine, store)
    session_id = args.session or new_id()
    worktree_id = _worktree_id(Path.cwd())

    if NEW_INSTALL:
        console.print("Welcome to sessiondeck. Type /help for commands.", style="bold")
        save_config()

    await store.refresh(worktree_id)
    await store.add_session(worktree_id, session_id)
    draft, attachments = await store.load_draft(session_id)
    pipeline.drafts.restore(session_id, draft, attachments)

    preferences = {}
    if args.model:
        preferences["model"] = args.model
    if args.yolo:
        preferences["execution_mode"] = ExecutionMode.YOLO
    elif args.mode:
        preferences["execution_mode"] = ExecutionMode(args.mode)
    if preferences:
        pipeline.set_preferences(session_id, **preferences)

    set_notify_callback(
        lambda msg, severity: console.print(f"{severity}: {msg}", style="yellow", markup=False)
    )

    if args.remote_port:
        from sessiondeck.remote import start_server

        await start_server(pipeline, args.remote_port)

    if draft and not args.prompt:
        console.print(f"Restored draft: {draft}", style="dim", markup=False)

    prompt = " ".join(args.prompt) if args.prompt else None
    try:
        while True:
            if prompt is None:
                prompt = await _ask(f"[bold]{pipeline.registry.get(session_id).execution_mode}[/bold] >")
            text, prompt = prompt, None
            if text.strip() in ("/exit", "/quit"):
                return
            if text.strip() == "/help":
                for name, desc in commands.get_help_commands():
                    console.print(f"  [bold]{name}[/bold]  {desc}")
                continue
            try:
                command = commands.parse_slash(session_id, text) or commands.Submit(
                    session_id,
                    text,
                    pipeline.drafts.attachments(session_id),
                    worktree_id=worktree_id,
                )
                await commands.execute(pipeline, command)
            except ValidationError as e:
                console.print(str(e), style="yellow", markup=False)
                continue
            await _drive(pipeline, session_id)
    finally:
        if args.remote_port:
            from sessiondeck.remote import stop_server

            await stop_server()
        await pipeline.close()
        await store.flush()
        await engine.close()


def main():
    parser = argparse.ArgumentParser(description="Session Deck")
    parser.add_argument(
        "--version",
        "-V",
        action="version",
        version=f"sessiondeck {_version()}",
    )
    parser.add_argument("--session", "-s", type=str, help="Session id to use")
    parser.add_argument("--model", "-m", type=str, help="Model for new messages")
    parser.add_argument(
        "--mode", choices=[m.value for m in ExecutionMode], help="Execution mode"
    )
    parser.add_argument(
        "--remote-port",
        type=int,
        default=int(os.environ.get("SESSIONDECK_REMOTE_PORT", "0")),
        help="Start HTTP server for remote control on this port",
    )
    parser.add_argument(
        "--dangerously-skip-permissions",
        "--yolo",
        dest="yolo",
        action="store_true",
        help="Auto-approve all tool uses without prompting (use in sandboxed environments)",
    )
    parser.add_argument("prompt", nargs="*", help="Initial prompt to send")
    args = parser.parse_args()

    setup_logging()

    try:
        asyncio.run(_repl(args))
    except (KeyboardInterrupt, EOFError):
        pass
    except Exception as e:
        log_exception(e, "Fatal error")
        import tempfile
        import traceback

        crash_log = Path(tempfile.gettempdir()) / "sessiondeck-crash.log"
        with open(crash_log, "w", encoding="utf-8") as f:
            traceback.print_exc(file=f)
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
