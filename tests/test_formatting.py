"""Tests for tool headers and follow-up prompt text."""

from __future__ import annotations

from pathlib import Path

from sessiondeck.formatting import (
    build_message_with_refs,
    count_diff_changes,
    format_permission_continuation,
    format_plan_approval,
    format_question_answers,
    format_tool_header,
    make_relative,
    truncate_path,
)
from sessiondeck.models import Attachments, FileMention, ImageAttachment, SkillRef


class TestToolHeaders:
    def test_edit_counts_changes(self):
        header = format_tool_header(
            "Edit",
            {"file_path": "/repo/src/a.py", "old_string": "a\nb", "new_string": "a\nc\nd"},
            Path("/repo"),
        )
        assert header == "Edit: src/a.py (+2, -1)"

    def test_bash_prefers_description(self):
        assert format_tool_header("Bash", {"command": "ls", "description": "List"}) == "Bash: List"
        long = "x" * 60
        assert format_tool_header("Bash", {"command": long}) == f"Bash: {'x' * 50}..."

    def test_unknown_tool(self):
        assert format_tool_header("mcp__thing", {}) == "mcp__thing"
        assert format_tool_header("TodoWrite", {"todos": []}) == "TodoWrite"

    def test_truncate_path_keeps_tail(self):
        path = "/very/long/path/to/some/deeply/nested/file.py"
        result = truncate_path(path, 20)
        assert result.startswith("...")
        assert result.endswith("file.py")
        assert len(result) <= 20

    def test_make_relative_outside_cwd(self):
        assert make_relative("/etc/hosts", Path("/repo")) == "/etc/hosts"

    def test_count_diff_changes_empty(self):
        assert count_diff_changes("", "one\ntwo") == (2, 0)


class TestFollowUpText:
    def test_refs_appended(self):
        attachments = Attachments(
            files=(FileMention("src", is_directory=True), FileMention("README.md")),
            images=(ImageAttachment("/tmp/shot.png"),),
            skills=(SkillRef("review", "/skills/review.md"),),
        )
        message = build_message_with_refs("look", attachments)
        assert message.startswith("look\n\n[Directory: src - ")
        assert "[File: README.md - Use the Read tool to view this file]" in message
        assert "[Skill: /skills/review.md - " in message
        assert message.endswith("[Image attached: /tmp/shot.png - Use the Read tool to view this image]")

    def test_no_attachments_is_identity(self):
        assert build_message_with_refs("plain", Attachments()) == "plain"

    def test_plan_approval_unchanged_plan(self):
        assert format_plan_approval("Approved", "plan", "plan") == "Approved"
        assert format_plan_approval("Approved") == "Approved"

    def test_plan_approval_with_edits(self):
        text = format_plan_approval("Approved", "new plan", "old plan")
        assert "<updated-plan>\nnew plan\n</updated-plan>" in text

    def test_question_answers(self):
        text = format_question_answers(
            ({"question": "Which DB?"}, {"question": "Tests?"}),
            {"Which DB?": "pg", "Tests?": ["unit", "e2e"]},
        )
        assert text == "Here are my answers:\n\nQ: Which DB?\nA: pg\n\nQ: Tests?\nA: unit, e2e"

    def test_question_missing_answer(self):
        text = format_question_answers(({"question": "Why?"},), {})
        assert "A: (no answer)" in text

    def test_permission_continuation_dedupes(self):
        assert (
            format_permission_continuation(["Bash", "Write", "Bash"])
            == "I approved the previously denied tool(s): Bash, Write. Please continue."
        )
