"""Tests for ApprovalGate."""

from __future__ import annotations

import pytest

from sessiondeck.approvals import ApprovalGate
from sessiondeck.enums import ApprovalKind
from sessiondeck.models import PermissionDenial


@pytest.fixture
def gate():
    return ApprovalGate()


def denial(tool_id: str, name: str = "Bash") -> PermissionDenial:
    return PermissionDenial(tool_id, name, {"command": "make"})


class TestPlan:
    def test_request_and_approve(self, gate):
        gate.request_plan("s1", "p1", "1. do it")
        assert gate.pending_kind("s1") == ApprovalKind.PLAN

        plan = gate.approve_plan("s1")
        assert plan.plan == "1. do it"
        assert not gate.has_pending("s1")
        assert gate.is_answered("s1", "p1")

    def test_approve_without_plan(self, gate):
        assert gate.approve_plan("s1") is None

    def test_answered_plan_not_requested_again(self, gate):
        gate.request_plan("s1", "p1")
        gate.approve_plan("s1")
        gate.request_plan("s1", "p1")
        assert not gate.has_pending("s1")

    def test_approval_drops_stale_denials(self, gate):
        gate.request_plan("s1", "p1")
        gate.add_denials("s1", (denial("t1"),))
        gate.approve_plan("s1")
        assert gate.state("s1").denials == ()


class TestDenials:
    def test_resolving_one_keeps_the_other(self, gate):
        gate.add_denials("s1", (denial("t1"), denial("t2", "Write")))
        gate.resolve_denial("s1", "t1", approved=False)

        assert [d.tool_call_id for d in gate.state("s1").denials] == ["t2"]
        assert gate.pending_kind("s1") == ApprovalKind.PERMISSION

    def test_approved_denials_collected(self, gate):
        gate.add_denials("s1", (denial("t1"), denial("t2", "Write")))
        gate.resolve_denial("s1", "t1", approved=True)
        gate.resolve_denial("s1", "t2", approved=False)

        approved = gate.take_approved_denials("s1")
        assert [d.tool_call_id for d in approved] == ["t1"]
        assert gate.take_approved_denials("s1") == ()
        assert not gate.has_pending("s1")

    def test_duplicates_ignored(self, gate):
        gate.add_denials("s1", (denial("t1"),))
        gate.add_denials("s1", (denial("t1"),))
        assert len(gate.state("s1").denials) == 1

    def test_unknown_denial(self, gate):
        assert gate.resolve_denial("s1", "nope", approved=True) is None

    def test_discard(self, gate):
        gate.add_denials("s1", (denial("t1"),))
        gate.discard_denial("s1", "t1")
        assert not gate.has_pending("s1")


class TestQuestions:
    QUESTIONS = ({"question": "Which DB?", "options": [{"label": "pg"}]},)

    def test_answer(self, gate):
        assert gate.request_question("s1", "q1", self.QUESTIONS)
        assert gate.pending_kind("s1") == ApprovalKind.QUESTION

        question = gate.answer_question("s1", "q1", {"Which DB?": "pg"})
        assert question.questions == self.QUESTIONS
        assert gate.state("s1").answered["q1"].answers == {"Which DB?": "pg"}
        assert not gate.has_pending("s1")

    def test_answer_wrong_id(self, gate):
        gate.request_question("s1", "q1", self.QUESTIONS)
        assert gate.answer_question("s1", "q2", {}) is None
        assert gate.has_pending("s1")

    def test_skip_auto_skips_later_questions(self, gate):
        gate.request_question("s1", "q1", self.QUESTIONS)
        gate.skip_question("s1")

        assert gate.request_question("s1", "q2", self.QUESTIONS) is False
        assert not gate.has_pending("s1")
        assert gate.state("s1").answered["q2"].skipped

    def test_begin_run_resets_skip(self, gate):
        gate.skip_question("s1")
        gate.begin_run("s1")
        assert gate.request_question("s1", "q3", self.QUESTIONS)

    def test_question_takes_precedence(self, gate):
        gate.add_denials("s1", (denial("t1"),))
        gate.request_plan("s1", "p1")
        gate.request_question("s1", "q1", self.QUESTIONS)
        assert gate.pending_kind("s1") == ApprovalKind.QUESTION


class TestLifecycle:
    def test_clear_drops_everything(self, gate):
        gate.add_denials("s1", (denial("t1"),))
        gate.request_plan("s1", "p1")
        gate.clear("s1")
        assert not gate.has_pending("s1")

    def test_notifications(self, gate):
        seen: list[str] = []
        gate.subscribe(seen.append)
        gate.request_plan("s1", "p1")
        gate.approve_plan("s1")
        gate.clear("s1")
        assert seen == ["s1", "s1"]

    def test_sessions_isolated(self, gate):
        gate.request_plan("s1", "p1")
        assert not gate.has_pending("s2")
