"""Tool headers and the text of synthesized follow-up prompts."""

from __future__ import annotations

import difflib
from pathlib import Path
from typing import Any

from sessiondeck.enums import ToolName
from sessiondeck.models import Attachments

MAX_HEADER_WIDTH = 70  # Max width for tool headers

PLAN_APPROVED = "Approved"
PLAN_APPROVED_YOLO = "Approved - yolo"


def make_relative(path: str, cwd: Path | None) -> str:
    """Make path relative to cwd if possible, otherwise return as-is."""
    if not cwd or not path:
        return path
    try:
        p = Path(path)
        if p.is_absolute() and p.is_relative_to(cwd):
            return str(p.relative_to(cwd))
    except (ValueError, OSError):
        pass
    return path


def truncate_path(path: str, max_len: int) -> str:
    """Truncate path from the front, preserving the end which is more informative.

    Truncates just before a path separator when possible.
    """
    if len(path) <= max_len:
        return path
    # Leave room for "..."
    available = max_len - 3
    if available <= 0:
        return "..." + path[-max_len:] if max_len > 0 else ""
    suffix = path[-available:]
    sep_idx = suffix.find("/")
    if sep_idx > 0 and sep_idx < len(suffix) - 1:
        suffix = suffix[sep_idx:]
    return "..." + suffix


def count_diff_changes(old: str, new: str) -> tuple[int, int]:
    """Count additions and deletions in a diff.

    Returns (additions, deletions) as line counts.
    """
    old_lines = old.splitlines() if old else []
    new_lines = new.splitlines() if new else []
    sm = difflib.SequenceMatcher(None, old_lines, new_lines)

    additions = 0
    deletions = 0
    for tag, i1, i2, j1, j2 in sm.get_opcodes():
        if tag == "delete":
            deletions += i2 - i1
        elif tag == "insert":
            additions += j2 - j1
        elif tag == "replace":
            deletions += i2 - i1
            additions += j2 - j1
    return additions, deletions


def format_tool_header(name: str, input: dict, cwd: Path | None = None) -> str:
    """Format a one-line header for a tool use."""
    if name == ToolName.EDIT:
        additions, deletions = count_diff_changes(
            input.get("old_string", ""), input.get("new_string", "")
        )
        stats = f" (+{additions}, -{deletions})"
        path = make_relative(input.get("file_path", "?"), cwd)
        path = truncate_path(path, MAX_HEADER_WIDTH - 6 - len(stats))
        return f"Edit: {path}{stats}"
    elif name in (ToolName.WRITE, ToolName.READ):
        path = make_relative(input.get("file_path", "?"), cwd)
        path = truncate_path(path, MAX_HEADER_WIDTH - len(name) - 2)
        return f"{name}: {path}"
    elif name == ToolName.BASH:
        cmd = input.get("command", "?")
        desc = input.get("description", "")
        if desc:
            return f"Bash: {desc}"
        return f"Bash: {cmd[:50]}{'...' if len(cmd) > 50 else ''}"
    elif name in (ToolName.GLOB, ToolName.GREP):
        return f"{name}: {input.get('pattern', '?')}"
    elif name == ToolName.WEB_SEARCH:
        return f"WebSearch: {input.get('query', '?')}"
    elif name == ToolName.WEB_FETCH:
        return f"WebFetch: {input.get('url', '?')[:50]}"
    elif name == ToolName.ASK_USER_QUESTION:
        questions = input.get("questions", [])
        if questions and questions[0].get("question"):
            return f"AskUserQuestion: {questions[0]['question'][:40]}..."
        return "AskUserQuestion"
    elif name == ToolName.SKILL:
        return f"Skill: {input.get('skill', '?')}"
    return f"{name}"


def build_message_with_refs(text: str, attachments: Attachments) -> str:
    """Append attachment references so the engine knows what to read.

    Attachments are files on disk; the engine reads them with its own
    tools, so the prompt only carries pointers.
    """
    sections: list[str] = []
    if attachments.files:
        sections.append(
            "\n".join(
                f"[Directory: {f.relative_path} - Use Glob and Read tools to explore this directory]"
                if f.is_directory
                else f"[File: {f.relative_path} - Use the Read tool to view this file]"
                for f in attachments.files
            )
        )
    if attachments.skills:
        sections.append(
            "\n".join(
                f"[Skill: {s.path} - Read and use this skill to guide your response]"
                for s in attachments.skills
            )
        )
    if attachments.images:
        sections.append(
            "\n".join(
                f"[Image attached: {img.path} - Use the Read tool to view this image]"
                for img in attachments.images
            )
        )
    if attachments.text_files:
        sections.append(
            "\n".join(
                f"[Text file attached: {tf.path} - Use the Read tool to view this file]"
                for tf in attachments.text_files
            )
        )

    message = text
    for section in sections:
        message = f"{message}\n\n{section}" if message else section
    return message


def format_plan_approval(
    base: str, updated_plan: str | None = None, original_plan: str | None = None
) -> str:
    """Approval prompt, carrying the edited plan when the user changed it."""
    if not updated_plan or updated_plan == original_plan:
        return base
    return (
        "I've updated the plan. Please review and execute:\n\n"
        f"<updated-plan>\n{updated_plan}\n</updated-plan>"
    )


def format_question_answers(
    questions: tuple[dict[str, Any], ...], answers: dict[str, Any]
) -> str:
    """Render AskUserQuestion answers as the follow-up prompt."""
    lines = ["Here are my answers:", ""]
    for i, q in enumerate(questions):
        question = q.get("question") or q.get("header") or f"Question {i + 1}"
        answer = answers.get(question, answers.get(str(i), ""))
        if isinstance(answer, (list, tuple)):
            answer = ", ".join(str(a) for a in answer)
        lines.append(f"Q: {question}")
        lines.append(f"A: {answer or '(no answer)'}")
        lines.append("")
    # Answers keyed by something other than the question text
    known = {q.get("question") for q in questions} | {str(i) for i in range(len(questions))}
    for key, answer in answers.items():
        if key not in known:
            lines.append(f"{key}: {answer}")
    return "\n".join(lines).rstrip()


def format_permission_continuation(tool_names: list[str]) -> str:
    """Prompt that resumes a run after blocked tools were approved."""
    tools = ", ".join(dict.fromkeys(tool_names))
    return f"I approved the previously denied tool(s): {tools}. Please continue."
