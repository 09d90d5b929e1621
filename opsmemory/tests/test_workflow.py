"""Tests for the phase state machine and clarifications."""

import pytest

from opsmemory.common.errors import ClarificationNotFoundError, SessionNotFoundError, WorkflowError
from opsmemory.common.schemas import (
    ClarificationCategory,
    ClarificationStatus,
    DocumentKind,
    DocumentStatus,
    Phase,
    SessionStatus,
)
from opsmemory.observer.workflow import ClarificationDesk, PhaseWorkflow, next_phase


@pytest.fixture
def workflow(store):
    wf = PhaseWorkflow(store)
    wf.start("m1", "Lead intake")
    return wf


class TestPhases:
    def test_next_phase(self):
        assert next_phase(Phase.OBSERVE) == Phase.STRUCTURE
        assert next_phase(Phase.STRUCTURE) == Phase.INSTRUCT
        assert next_phase(Phase.INSTRUCT) == Phase.INSTRUCT

    def test_advance_moves_forward_only(self, workflow):
        session, entered = workflow.advance("m1")
        assert session.phase == Phase.STRUCTURE
        assert not entered

        session, entered = workflow.advance("m1")
        assert session.phase == Phase.INSTRUCT
        assert entered

        session, entered = workflow.advance("m1")
        assert session.phase == Phase.INSTRUCT
        assert not entered

    def test_advance_without_session(self, store):
        with pytest.raises(SessionNotFoundError):
            PhaseWorkflow(store).advance("unknown")


class TestStatus:
    def test_pause_resume_toggle(self, workflow):
        assert workflow.pause("m1").status == SessionStatus.PAUSED
        assert workflow.resume("m1").status == SessionStatus.ACTIVE
        assert workflow.toggle("m1").status == SessionStatus.PAUSED
        assert workflow.toggle("m1").status == SessionStatus.ACTIVE

    def test_status_independent_of_phase(self, workflow):
        workflow.advance("m1")
        workflow.pause("m1")
        session, _ = workflow.advance("m1")
        assert session.phase == Phase.INSTRUCT
        assert session.status == SessionStatus.PAUSED

    def test_complete_requires_procedure_document(self, workflow):
        with pytest.raises(WorkflowError):
            workflow.complete("m1")

    def test_complete_approves_document(self, workflow, store):
        doc = store.create_document("m1", DocumentKind.PROCEDURE, "Procedure: Lead intake")
        store.append_version(doc.id, "content", "created")

        session = workflow.complete("m1")

        assert session.status == SessionStatus.COMPLETED
        assert store.require_document("m1", DocumentKind.PROCEDURE).status == DocumentStatus.APPROVED

    def test_completed_is_terminal(self, workflow, store):
        doc = store.create_document("m1", DocumentKind.PROCEDURE, "P")
        store.append_version(doc.id, "content", "created")
        workflow.complete("m1")

        with pytest.raises(WorkflowError):
            workflow.advance("m1")
        with pytest.raises(WorkflowError):
            workflow.resume("m1")
        assert workflow.complete("m1").status == SessionStatus.COMPLETED


class TestClarifications:
    def test_answer_feeds_context(self, store):
        desk = ClarificationDesk(store)
        clarification = desk.add("m1", " Who approves refunds? ", ClarificationCategory.APPROVAL)
        assert clarification.question == "Who approves refunds?"

        answered = desk.answer(clarification.id, "The finance lead")

        assert answered.status == ClarificationStatus.ANSWERED
        assert answered.answered_at is not None
        assert desk.answered_context("m1") == ["Who approves refunds? -> The finance lead"]

    def test_skip(self, store):
        desk = ClarificationDesk(store)
        clarification = desk.add("m1", "Is the CSV export optional?")
        assert desk.skip(clarification.id).status == ClarificationStatus.SKIPPED
        assert desk.answered_context("m1") == []
        assert desk.list("m1", ClarificationStatus.PENDING) == []

    def test_cannot_answer_twice(self, store):
        desk = ClarificationDesk(store)
        clarification = desk.add("m1", "Which tool?")
        desk.answer(clarification.id, "Zendesk")
        with pytest.raises(WorkflowError):
            desk.answer(clarification.id, "Jira")

    def test_unknown_clarification(self, store):
        with pytest.raises(ClarificationNotFoundError):
            ClarificationDesk(store).skip("clr_missing")
