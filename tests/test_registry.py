"""Tests for SessionRegistry run-state bookkeeping."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from sessiondeck.enums import ExecutionMode, RunStatus
from sessiondeck.models import Message
from sessiondeck.registry import SessionRegistry


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


class TestLazyCreation:
    def test_get_creates_idle_session(self, registry):
        session = registry.get("s1")
        assert session.id == "s1"
        assert not session.is_sending
        assert session.last_run_status == RunStatus.IDLE
        assert "s1" in registry
        assert len(registry) == 1

    def test_is_sending_unknown_session_is_false(self, registry):
        assert registry.is_sending("nope") is False
        assert "nope" not in registry

    def test_peek_does_not_register(self, registry):
        session = registry.peek("ghost")
        assert session.id == "ghost"
        assert session.last_run_status == RunStatus.IDLE
        assert "ghost" not in registry

        registry.set_preferences("s1", model="haiku")
        assert registry.peek("s1") is registry.get("s1")

    def test_worktree_recorded_and_updated(self, registry):
        assert registry.get("s1", "wt-a").worktree_id == "wt-a"
        assert registry.get("s1").worktree_id == "wt-a"
        assert registry.get("s1", "wt-b").worktree_id == "wt-b"


class TestBeginSend:
    def test_marks_sending_and_records_mode(self, registry):
        assert registry.begin_send("s1", ExecutionMode.BUILD, run_id="r1")
        session = registry.get("s1")
        assert session.is_sending
        assert session.run_id == "r1"
        assert session.executing_mode == ExecutionMode.BUILD
        assert session.last_run_status == RunStatus.RUNNING

    def test_second_begin_send_is_a_noop(self, registry):
        registry.begin_send("s1", ExecutionMode.BUILD, run_id="r1")
        assert registry.begin_send("s1", ExecutionMode.YOLO, run_id="r2") is False
        session = registry.get("s1")
        assert session.run_id == "r1"
        assert session.executing_mode == ExecutionMode.BUILD

    def test_clears_previous_error(self, registry):
        registry.record_error("s1", "boom")
        registry.begin_send("s1", ExecutionMode.PLAN, run_id="r1")
        assert registry.get("s1").last_error is None


class TestCompleteSend:
    def test_idempotent(self, registry):
        on_idle = MagicMock()
        registry.on_idle = on_idle
        registry.begin_send("s1", ExecutionMode.BUILD, run_id="r1")

        assert registry.complete_send("s1") is True
        once = registry.get("s1")
        assert registry.complete_send("s1") is False
        assert registry.get("s1") == once
        on_idle.assert_called_once_with("s1")

    def test_running_becomes_completed(self, registry):
        registry.begin_send("s1", ExecutionMode.BUILD, run_id="r1")
        registry.complete_send("s1")
        assert registry.get("s1").last_run_status == RunStatus.COMPLETED

    def test_keeps_explicit_status(self, registry):
        registry.begin_send("s1", ExecutionMode.BUILD, run_id="r1")
        registry.update("s1", last_run_status=RunStatus.CANCELLED)
        registry.complete_send("s1")
        assert registry.get("s1").last_run_status == RunStatus.CANCELLED

    def test_stale_run_id_ignored(self, registry):
        registry.begin_send("s1", ExecutionMode.BUILD, run_id="new")
        assert registry.complete_send("s1", run_id="old") is False
        assert registry.is_sending("s1")
        assert registry.complete_send("s1", run_id="new") is True

    def test_force_clear(self, registry):
        registry.begin_send("s1", ExecutionMode.BUILD, run_id="r1")
        assert registry.force_clear("s1") is True
        assert not registry.is_sending("s1")


class TestErrors:
    def test_record_error_does_not_clear_sending(self, registry):
        registry.begin_send("s1", ExecutionMode.BUILD, run_id="r1")
        registry.record_error("s1", "engine exploded")
        session = registry.get("s1")
        assert session.is_sending
        assert session.last_error == "engine exploded"

    def test_clear_error(self, registry):
        registry.record_error("s1", "x")
        registry.clear_error("s1")
        assert registry.get("s1").last_error is None


class TestPreferences:
    def test_set_preferences(self, registry):
        registry.set_preferences("s1", model="haiku", execution_mode=ExecutionMode.YOLO)
        session = registry.get("s1")
        assert session.model == "haiku"
        assert session.execution_mode == ExecutionMode.YOLO

    def test_unknown_preference_rejected(self, registry):
        with pytest.raises(ValueError, match="is_sending"):
            registry.set_preferences("s1", is_sending=True)

    def test_snapshot_unaffected_by_later_edits(self, registry):
        registry.set_preferences("s1", model="opus")
        snapshot = registry.get("s1").snapshot_config()
        registry.set_preferences("s1", model="haiku", execution_mode=ExecutionMode.YOLO)
        assert snapshot.model == "opus"
        assert snapshot.execution_mode != ExecutionMode.YOLO
        fresh = registry.get("s1").snapshot_config()
        assert fresh.model == "haiku"
        assert fresh.execution_mode == ExecutionMode.YOLO


class TestMessages:
    def test_upsert_replaces_same_run(self, registry):
        registry.append_message("s1", Message(role="user", text="hi", run_id="r1"))
        registry.upsert_assistant_message("s1", Message(role="assistant", text="par", run_id="r1"))
        registry.upsert_assistant_message(
            "s1", Message(role="assistant", text="partial", run_id="r1")
        )
        messages = registry.get("s1").messages
        assert [m.text for m in messages] == ["hi", "partial"]

    def test_upsert_appends_for_new_run(self, registry):
        registry.upsert_assistant_message("s1", Message(role="assistant", text="a", run_id="r1"))
        registry.upsert_assistant_message("s1", Message(role="assistant", text="b", run_id="r2"))
        assert [m.text for m in registry.get("s1").messages] == ["a", "b"]


class TestSubscribers:
    def test_notified_on_change_only(self, registry):
        seen: list[str] = []
        registry.subscribe(seen.append)
        registry.update("s1", reviewing=True)
        registry.update("s1", reviewing=True)
        assert seen == ["s1"]

    def test_unsubscribe(self, registry):
        seen: list[str] = []
        unsubscribe = registry.subscribe(seen.append)
        unsubscribe()
        registry.update("s1", reviewing=True)
        assert seen == []

    def test_failing_subscriber_does_not_block_others(self, registry):
        seen: list[str] = []

        def broken(_session_id: str) -> None:
            raise RuntimeError("bad widget")

        registry.subscribe(broken)
        registry.subscribe(seen.append)
        registry.update("s1", reviewing=True)
        assert seen == ["s1"]

    def test_old_reference_never_mutated(self, registry):
        before = registry.get("s1")
        registry.begin_send("s1", ExecutionMode.BUILD, run_id="r1")
        assert before.is_sending is False
        assert registry.get("s1") is not before

    def test_forget(self, registry):
        registry.get("s1")
        registry.forget("s1")
        assert "s1" not in registry
