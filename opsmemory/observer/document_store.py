"""
Versioned Document Store

Durable store for documents (with append-only version history), observation
sessions, observations and clarifications, all keyed by meeting.

Persisted to a JSON file (default: ~/.opsmemory/store.json); when no path is
given the store lives in memory only. A failed write raises StorageError and
leaves the in-memory state as it was before the call.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from ..common.errors import (
    DocumentNotFoundError,
    StorageError,
    VersionNotFoundError,
)
from ..common.schemas import (
    Clarification,
    ClarificationStatus,
    Document,
    DocumentFields,
    DocumentKind,
    DocumentStatus,
    DocumentVersion,
    Observation,
    ObservationSession,
    SessionStatus,
    utcnow,
)

logger = logging.getLogger("opsmemory.observer.document_store")


class DocumentStore:
    """
    Append-only versioned documents plus the workflow records around them.

    Version numbers per document are gapless and start at 1. Rollback moves
    the current pointer without deleting later versions.
    """

    def __init__(self, path: Optional[Path] = None):
        """
        Initialize the store.

        Args:
            path: JSON file to persist to (None: in-memory only)
        """
        self._path = Path(path) if path else None
        self._lock = threading.RLock()
        self._documents: Dict[str, Document] = {}
        self._versions: Dict[str, List[DocumentVersion]] = {}
        self._sessions: Dict[str, ObservationSession] = {}
        self._observations: Dict[str, List[Observation]] = {}
        self._clarifications: Dict[str, Clarification] = {}
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        """Load store from disk"""
        if self._path is None or not self._path.exists():
            return

        try:
            with open(self._path) as f:
                data = json.load(f)

            self._documents = {d["id"]: Document.model_validate(d) for d in data.get("documents", [])}
            self._versions = {
                doc_id: [DocumentVersion.model_validate(v) for v in versions]
                for doc_id, versions in data.get("versions", {}).items()
            }
            self._sessions = {s["id"]: ObservationSession.model_validate(s) for s in data.get("sessions", [])}
            self._observations = {
                meeting_id: [Observation.model_validate(o) for o in items]
                for meeting_id, items in data.get("observations", {}).items()
            }
            self._clarifications = {
                c["id"]: Clarification.model_validate(c) for c in data.get("clarifications", [])
            }
        except (json.JSONDecodeError, IOError, KeyError, ValidationError) as e:
            raise StorageError(f"Failed to load store {self._path}: {e}") from e

    def _persist(self) -> None:
        """Write the whole store atomically (temp file + rename)"""
        if self._path is None:
            return

        data = {
            "documents": [d.model_dump(mode="json") for d in self._documents.values()],
            "versions": {
                doc_id: [v.model_dump(mode="json") for v in versions]
                for doc_id, versions in self._versions.items()
            },
            "sessions": [s.model_dump(mode="json") for s in self._sessions.values()],
            "observations": {
                meeting_id: [o.model_dump(mode="json") for o in items]
                for meeting_id, items in self._observations.items()
            },
            "clarifications": [c.model_dump(mode="json") for c in self._clarifications.values()],
        }

        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise StorageError(f"Failed to write store {self._path}: {e}") from e

    def _commit(self, undo: Callable[[], None]) -> None:
        """Persist, reverting the in-memory change if the write fails"""
        try:
            self._persist()
        except StorageError:
            undo()
            raise

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def get_document(self, meeting_id: str, kind: DocumentKind) -> Optional[Document]:
        with self._lock:
            for doc in self._documents.values():
                if doc.meeting_id == meeting_id and doc.kind == kind:
                    return doc
            return None

    def require_document(self, meeting_id: str, kind: DocumentKind) -> Document:
        doc = self.get_document(meeting_id, kind)
        if doc is None:
            raise DocumentNotFoundError(meeting_id, kind.value)
        return doc

    def create_document(self, meeting_id: str, kind: DocumentKind, title: str) -> Document:
        with self._lock:
            existing = self.get_document(meeting_id, kind)
            if existing is not None:
                return existing

            doc = Document(meeting_id=meeting_id, kind=kind, title=title)
            self._documents[doc.id] = doc
            self._versions[doc.id] = []

            def undo():
                self._documents.pop(doc.id, None)
                self._versions.pop(doc.id, None)

            self._commit(undo)
            logger.info("Created %s document %s for meeting %s", kind.value, doc.id, meeting_id)
            return doc

    def latest_version(self, meeting_id: str, kind: DocumentKind) -> int:
        doc = self.get_document(meeting_id, kind)
        return doc.latest_version if doc else 0

    def append_version(
        self,
        document_id: str,
        content: str,
        change_summary: str,
        sections: Optional[DocumentFields] = None,
        flowchart: Optional[str] = None,
        created_by: str = "OpsMemory",
    ) -> DocumentVersion:
        """
        Append a new snapshot and point the document at it.

        Returns:
            The new DocumentVersion (number = highest existing + 1)
        """
        with self._lock:
            doc = self._documents.get(document_id)
            if doc is None:
                raise StorageError(f"Unknown document {document_id}")

            versions = self._versions.setdefault(document_id, [])
            version = DocumentVersion(
                document_id=document_id,
                version=doc.latest_version + 1,
                content=content,
                sections=sections,
                flowchart=flowchart,
                change_summary=change_summary,
                created_by=created_by,
            )
            previous = doc.model_copy()

            versions.append(version)
            self._documents[document_id] = doc.model_copy(update={
                "version": version.version,
                "latest_version": version.version,
                "content": content,
                "sections": sections,
                "flowchart": flowchart,
                "updated_at": utcnow(),
            })

            def undo():
                versions.pop()
                self._documents[document_id] = previous

            self._commit(undo)
            return version

    def list_versions(self, document_id: str) -> List[DocumentVersion]:
        """All versions, newest first"""
        with self._lock:
            return list(reversed(self._versions.get(document_id, [])))

    def get_version(self, document_id: str, version: int) -> DocumentVersion:
        with self._lock:
            for v in self._versions.get(document_id, []):
                if v.version == version:
                    return v
            raise VersionNotFoundError(document_id, version)

    def rollback(self, document_id: str, version: int) -> Document:
        """Point the document at an earlier snapshot. Later versions are kept."""
        with self._lock:
            doc = self._documents.get(document_id)
            if doc is None:
                raise StorageError(f"Unknown document {document_id}")
            target = self.get_version(document_id, version)

            self._documents[document_id] = doc.model_copy(update={
                "version": target.version,
                "content": target.content,
                "sections": target.sections,
                "flowchart": target.flowchart,
                "updated_at": utcnow(),
            })

            def undo():
                self._documents[document_id] = doc

            self._commit(undo)
            logger.info("Rolled back document %s to version %d", document_id, version)
            return self._documents[document_id]

    def set_status(self, document_id: str, status: DocumentStatus) -> Document:
        with self._lock:
            doc = self._documents.get(document_id)
            if doc is None:
                raise StorageError(f"Unknown document {document_id}")
            self._documents[document_id] = doc.model_copy(update={"status": status, "updated_at": utcnow()})

            def undo():
                self._documents[document_id] = doc

            self._commit(undo)
            return self._documents[document_id]

    # ------------------------------------------------------------------
    # Observation sessions
    # ------------------------------------------------------------------

    def get_observation_session(self, meeting_id: str) -> Optional[ObservationSession]:
        """Most recent observation session of a meeting"""
        with self._lock:
            candidates = [s for s in self._sessions.values() if s.meeting_id == meeting_id]
            if not candidates:
                return None
            return max(candidates, key=lambda s: s.created_at)

    def create_observation_session(self, meeting_id: str, title: str = "Meeting") -> ObservationSession:
        """Return the meeting's open session, creating one if none is open."""
        with self._lock:
            current = self.get_observation_session(meeting_id)
            if current is not None and current.status != SessionStatus.COMPLETED:
                return current

            session = ObservationSession(meeting_id=meeting_id, title=title)
            self._sessions[session.id] = session

            def undo():
                self._sessions.pop(session.id, None)

            self._commit(undo)
            return session

    def save_observation_session(self, session: ObservationSession) -> ObservationSession:
        with self._lock:
            previous = self._sessions.get(session.id)
            updated = session.model_copy(update={"updated_at": utcnow()})
            self._sessions[session.id] = updated

            def undo():
                if previous is None:
                    self._sessions.pop(session.id, None)
                else:
                    self._sessions[session.id] = previous

            self._commit(undo)
            return updated

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def add_observation(self, observation: Observation) -> None:
        with self._lock:
            items = self._observations.setdefault(observation.meeting_id, [])
            items.append(observation)
            self._commit(items.pop)

    def add_observations(self, meeting_id: str, observations: List[Observation]) -> None:
        """Append a batch for one meeting; either all of it is stored or none"""
        if not observations:
            return
        with self._lock:
            items = self._observations.setdefault(meeting_id, [])
            size = len(items)
            items.extend(observations)

            def undo():
                del items[size:]

            self._commit(undo)

    def list_observations(self, meeting_id: str) -> List[Observation]:
        with self._lock:
            return list(self._observations.get(meeting_id, []))

    # ------------------------------------------------------------------
    # Clarifications
    # ------------------------------------------------------------------

    def add_clarification(self, clarification: Clarification) -> Clarification:
        with self._lock:
            self._clarifications[clarification.id] = clarification

            def undo():
                self._clarifications.pop(clarification.id, None)

            self._commit(undo)
            return clarification

    def get_clarification(self, clarification_id: str) -> Optional[Clarification]:
        with self._lock:
            return self._clarifications.get(clarification_id)

    def save_clarification(self, clarification: Clarification) -> Clarification:
        with self._lock:
            previous = self._clarifications.get(clarification.id)
            self._clarifications[clarification.id] = clarification

            def undo():
                if previous is None:
                    self._clarifications.pop(clarification.id, None)
                else:
                    self._clarifications[clarification.id] = previous

            self._commit(undo)
            return clarification

    def list_clarifications(
        self,
        meeting_id: str,
        status: Optional[ClarificationStatus] = None,
    ) -> List[Clarification]:
        with self._lock:
            items = [c for c in self._clarifications.values() if c.meeting_id == meeting_id]
            if status is not None:
                items = [c for c in items if c.status == status]
            return sorted(items, key=lambda c: c.created_at)

    # ------------------------------------------------------------------
    # Cascade delete
    # ------------------------------------------------------------------

    def delete_meeting(self, meeting_id: str) -> Dict[str, int]:
        """Remove everything keyed by a meeting. Returns removed counts."""
        with self._lock:
            doc_ids = [d.id for d in self._documents.values() if d.meeting_id == meeting_id]
            session_ids = [s.id for s in self._sessions.values() if s.meeting_id == meeting_id]
            clar_ids = [c.id for c in self._clarifications.values() if c.meeting_id == meeting_id]

            removed_docs = {i: self._documents.pop(i) for i in doc_ids}
            removed_versions = {i: self._versions.pop(i, []) for i in doc_ids}
            removed_sessions = {i: self._sessions.pop(i) for i in session_ids}
            removed_clars = {i: self._clarifications.pop(i) for i in clar_ids}
            removed_obs = self._observations.pop(meeting_id, [])

            def undo():
                self._documents.update(removed_docs)
                self._versions.update(removed_versions)
                self._sessions.update(removed_sessions)
                self._clarifications.update(removed_clars)
                if removed_obs:
                    self._observations[meeting_id] = removed_obs

            self._commit(undo)

            return {
                "documents": len(removed_docs),
                "versions": sum(len(v) for v in removed_versions.values()),
                "sessions": len(removed_sessions),
                "observations": len(removed_obs),
                "clarifications": len(removed_clars),
            }

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "documents": len(self._documents),
                "versions": sum(len(v) for v in self._versions.values()),
                "sessions": len(self._sessions),
                "observations": sum(len(v) for v in self._observations.values()),
                "clarifications": len(self._clarifications),
                "pending_clarifications": sum(
                    1 for c in self._clarifications.values() if c.status == ClarificationStatus.PENDING
                ),
            }
