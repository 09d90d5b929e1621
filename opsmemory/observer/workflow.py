"""
Phase & Clarification Workflow

Phase moves forward only: observe -> structure -> instruct. Status is an
orthogonal axis: active <-> paused, and active|paused -> completed (terminal).

Clarifications are advisory questions for a human operator. They never block
synthesis; answered ones are fed to the next synthesis pass as context.
"""

import logging
from typing import List, Optional, Tuple

from ..common.errors import (
    ClarificationNotFoundError,
    SessionNotFoundError,
    WorkflowError,
)
from ..common.schemas import (
    PHASE_ORDER,
    Clarification,
    ClarificationCategory,
    ClarificationStatus,
    DocumentKind,
    DocumentStatus,
    ObservationSession,
    Phase,
    SessionStatus,
    utcnow,
)
from .document_store import DocumentStore

logger = logging.getLogger("opsmemory.observer.workflow")


def next_phase(phase: Phase) -> Phase:
    """The phase after ``phase``; instruct is the last one."""
    index = PHASE_ORDER.index(phase)
    return PHASE_ORDER[min(index + 1, len(PHASE_ORDER) - 1)]


class PhaseWorkflow:
    """Store-backed observation session state machine"""

    def __init__(self, store: DocumentStore):
        self._store = store

    def start(self, meeting_id: str, title: str = "Meeting") -> ObservationSession:
        return self._store.create_observation_session(meeting_id, title)

    def get(self, meeting_id: str) -> Optional[ObservationSession]:
        return self._store.get_observation_session(meeting_id)

    def require(self, meeting_id: str) -> ObservationSession:
        session = self._store.get_observation_session(meeting_id)
        if session is None:
            raise SessionNotFoundError(meeting_id)
        return session

    def advance(self, meeting_id: str) -> Tuple[ObservationSession, bool]:
        """
        Move one phase forward.

        Returns:
            (session, entered_instruct). Advancing from instruct is a no-op.
        """
        session = self.require(meeting_id)
        if session.status == SessionStatus.COMPLETED:
            raise WorkflowError(f"Observation session {session.id} is completed")
        if session.phase == Phase.INSTRUCT:
            return session, False

        target = next_phase(session.phase)
        updated = self._store.save_observation_session(session.model_copy(update={"phase": target}))
        logger.info("Meeting %s advanced %s -> %s", meeting_id, session.phase.value, target.value)
        return updated, target == Phase.INSTRUCT

    def pause(self, meeting_id: str) -> ObservationSession:
        return self._set_status(meeting_id, SessionStatus.PAUSED)

    def resume(self, meeting_id: str) -> ObservationSession:
        return self._set_status(meeting_id, SessionStatus.ACTIVE)

    def toggle(self, meeting_id: str) -> ObservationSession:
        session = self.require(meeting_id)
        target = SessionStatus.ACTIVE if session.status == SessionStatus.PAUSED else SessionStatus.PAUSED
        return self._set_status(meeting_id, target)

    def complete(self, meeting_id: str) -> ObservationSession:
        """
        Close the session. A procedure document must have been produced; it is
        marked approved as part of completion.
        """
        session = self.require(meeting_id)
        if session.status == SessionStatus.COMPLETED:
            return session

        doc = self._store.get_document(meeting_id, DocumentKind.PROCEDURE)
        if doc is None or doc.latest_version < 1:
            raise WorkflowError(f"Meeting {meeting_id} has no procedure document to accept")

        self._store.set_status(doc.id, DocumentStatus.APPROVED)
        updated = self._store.save_observation_session(
            session.model_copy(update={"status": SessionStatus.COMPLETED})
        )
        logger.info("Meeting %s observation session completed", meeting_id)
        return updated

    def _set_status(self, meeting_id: str, status: SessionStatus) -> ObservationSession:
        session = self.require(meeting_id)
        if session.status == SessionStatus.COMPLETED:
            raise WorkflowError(f"Observation session {session.id} is completed")
        if session.status == status:
            return session
        return self._store.save_observation_session(session.model_copy(update={"status": status}))


class ClarificationDesk:
    """Creates and resolves clarifications for a meeting"""

    def __init__(self, store: DocumentStore):
        self._store = store

    def add(
        self,
        meeting_id: str,
        question: str,
        category: ClarificationCategory = ClarificationCategory.CONDITION,
    ) -> Clarification:
        clarification = Clarification(meeting_id=meeting_id, question=question.strip(), category=category)
        return self._store.add_clarification(clarification)

    def list(self, meeting_id: str, status: Optional[ClarificationStatus] = None) -> List[Clarification]:
        return self._store.list_clarifications(meeting_id, status)

    def answer(self, clarification_id: str, answer: str) -> Clarification:
        clarification = self._require_pending(clarification_id)
        return self._store.save_clarification(clarification.model_copy(update={
            "status": ClarificationStatus.ANSWERED,
            "answer": answer.strip(),
            "answered_at": utcnow(),
        }))

    def skip(self, clarification_id: str) -> Clarification:
        clarification = self._require_pending(clarification_id)
        return self._store.save_clarification(
            clarification.model_copy(update={"status": ClarificationStatus.SKIPPED})
        )

    def answered_context(self, meeting_id: str) -> List[str]:
        """Answered clarifications as ``Q -> A`` lines for the next synthesis pass"""
        return [
            f"{c.question} -> {c.answer}"
            for c in self._store.list_clarifications(meeting_id, ClarificationStatus.ANSWERED)
            if c.answer
        ]

    def _require_pending(self, clarification_id: str) -> Clarification:
        clarification = self._store.get_clarification(clarification_id)
        if clarification is None:
            raise ClarificationNotFoundError(clarification_id)
        if clarification.status != ClarificationStatus.PENDING:
            raise WorkflowError(
                f"Clarification {clarification_id} is already {clarification.status.value}"
            )
        return clarification
