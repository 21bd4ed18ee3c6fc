"""Tests for command parsing, decoding and execution."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from sessiondeck import commands
from sessiondeck.commands import (
    ApprovePermission,
    ApprovePlan,
    Cancel,
    DenyPermission,
    ForceSendQueued,
    RemoveQueuedMessage,
    SetPreferences,
    SkipQuestion,
    Submit,
)
from sessiondeck.enums import ExecutionMode, SubmitOutcome
from sessiondeck.errors import EmptySubmission, ValidationError
from sessiondeck.models import Attachments, FileMention, ImageAttachment
from sessiondeck.store import attachments_to_dict


@pytest.fixture
def mock_pipeline():
    pipeline = MagicMock()
    pipeline.cancel = AsyncMock(return_value=True)
    pipeline.submit.return_value = SubmitOutcome.DISPATCHED
    return pipeline


# =============================================================================
# Slash parsing
# =============================================================================


class TestParseSlash:
    def test_plain_text_is_not_a_command(self):
        assert commands.parse_slash("s1", "hello /there") is None

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("/cancel", Cancel("s1")),
            ("/approve", ApprovePlan("s1")),
            ("/approve 1. new plan", ApprovePlan("s1", updated_plan="1. new plan")),
            ("/yolo", ApprovePlan("s1", yolo=True)),
            ("/skip", SkipQuestion("s1")),
            ("/allow t1", ApprovePermission("s1", "t1")),
            ("/always t1", ApprovePermission("s1", "t1", remember=True)),
            ("/deny t1", DenyPermission("s1", "t1")),
            ("/remove m1", RemoveQueuedMessage("s1", "m1")),
            ("/send m1", ForceSendQueued("s1", "m1")),
            ("/mode YOLO", SetPreferences("s1", {"execution_mode": ExecutionMode.YOLO})),
            ("/model Haiku", SetPreferences("s1", {"model": "haiku"})),
        ],
    )
    def test_commands(self, text, expected):
        assert commands.parse_slash("s1", text) == expected

    def test_unknown_slash_falls_through(self):
        assert commands.parse_slash("s1", "/etc/hosts is broken") is None

    @pytest.mark.parametrize("text", ["/mode turbo", "/allow", "/send  ", "/model"])
    def test_invalid(self, text):
        with pytest.raises(ValidationError):
            commands.parse_slash("s1", text)

    def test_help_lists_every_command(self):
        names = [name.split()[0] for name, _ in commands.get_help_commands()]
        assert "/cancel" in names
        assert "/mode" in names
        assert len(names) == len(commands.COMMANDS)


# =============================================================================
# Wire format
# =============================================================================


class TestFromDict:
    def test_approve_plan(self):
        command = commands.from_dict(
            {"type": "approve_plan", "session_id": "s1", "yolo": True, "extra": 1}
        )
        assert command == ApprovePlan("s1", yolo=True)

    def test_submit_with_attachments(self):
        command = commands.from_dict(
            {
                "type": "submit",
                "session_id": "s1",
                "text": "look",
                "attachments": {"files": [{"relative_path": "a.py"}]},
            }
        )
        assert command.attachments == Attachments(files=(FileMention("a.py"),))

    def test_submit_reads_stored_attachment_format(self):
        attachments = Attachments(
            images=(ImageAttachment("/tmp/shot.png"),), files=(FileMention("src", True),)
        )
        command = commands.from_dict(
            {
                "type": "submit",
                "session_id": "s1",
                "text": "look",
                "attachments": attachments_to_dict(attachments),
            }
        )
        assert command.attachments == attachments

    def test_to_dict_round_trip(self):
        command = ApprovePermission("s1", "t1", remember=True)
        assert commands.from_dict(commands.to_dict(command)) == command

    @pytest.mark.parametrize(
        "payload",
        [
            {"type": "reboot", "session_id": "s1"},
            {"session_id": "s1"},
            {"type": "deny_permission", "session_id": "s1"},
            {"type": "submit", "session_id": "s1", "text": "x", "attachments": {"files": [{"bad": 1}]}},
        ],
    )
    def test_invalid(self, payload):
        with pytest.raises(ValidationError):
            commands.from_dict(payload)


# =============================================================================
# Execution
# =============================================================================


class TestExecute:
    @pytest.mark.asyncio
    async def test_submit(self, mock_pipeline):
        result = await commands.execute(mock_pipeline, Submit("s1", "hi", worktree_id="wt"))
        assert result == SubmitOutcome.DISPATCHED
        mock_pipeline.submit.assert_called_once_with(
            "s1", "hi", Attachments(), worktree_id="wt"
        )

    @pytest.mark.asyncio
    async def test_empty_submit_raises(self, mock_pipeline):
        mock_pipeline.submit.return_value = SubmitOutcome.IGNORED
        with pytest.raises(EmptySubmission) as exc:
            await commands.execute(mock_pipeline, Submit("s1", "  "))
        assert exc.value.session_id == "s1"

    @pytest.mark.asyncio
    async def test_cancel_awaits_pipeline(self, mock_pipeline):
        assert await commands.execute(mock_pipeline, Cancel("s1")) is True
        mock_pipeline.cancel.assert_awaited_once_with("s1")

    @pytest.mark.asyncio
    async def test_plan_approval_variants(self, mock_pipeline):
        await commands.execute(mock_pipeline, ApprovePlan("s1", "edited"))
        await commands.execute(mock_pipeline, ApprovePlan("s1", yolo=True))
        mock_pipeline.approve_plan.assert_called_once_with("s1", "edited")
        mock_pipeline.approve_plan_yolo.assert_called_once_with("s1", None)

    @pytest.mark.asyncio
    async def test_permission_commands(self, mock_pipeline):
        await commands.execute(mock_pipeline, ApprovePermission("s1", "t1", remember=True))
        await commands.execute(mock_pipeline, DenyPermission("s1", "t2"))
        mock_pipeline.approve_permission.assert_called_once_with("s1", "t1", remember=True)
        mock_pipeline.deny_permission.assert_called_once_with("s1", "t2")

    @pytest.mark.asyncio
    async def test_set_preferences(self, mock_pipeline):
        result = await commands.execute(
            mock_pipeline, SetPreferences("s1", {"model": "haiku"})
        )
        assert result is None
        mock_pipeline.set_preferences.assert_called_once_with("s1", model="haiku")

    @pytest.mark.asyncio
    async def test_against_real_pipeline(self, pipeline, engine):
        pipeline.set_preferences("s1", execution_mode=ExecutionMode.BUILD)
        command = commands.parse_slash("s1", "hello") or Submit("s1", "hello")
        assert await commands.execute(pipeline, command) == SubmitOutcome.DISPATCHED
