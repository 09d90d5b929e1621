"""
OpsMemory error types.

Every failure is scoped to one meeting's document thread; none of these
should ever take the process down.
"""

from typing import Optional


class OpsMemoryError(Exception):
    """Base class for all OpsMemory errors"""


class ConfigurationError(OpsMemoryError):
    """The synthesis collaborator has no credential / is not configured."""


class SynthesisError(OpsMemoryError):
    """Transient collaborator failure (network, timeout, non-2xx)."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class StorageError(OpsMemoryError):
    """The durable store failed to persist a change."""


class NotFoundError(OpsMemoryError):
    """A requested entity does not exist."""


class DocumentNotFoundError(NotFoundError):
    def __init__(self, meeting_id: str, kind: str):
        self.meeting_id = meeting_id
        self.kind = kind
        super().__init__(f"No {kind} document for meeting {meeting_id}")


class VersionNotFoundError(NotFoundError):
    def __init__(self, document_id: str, version: int):
        self.document_id = document_id
        self.version = version
        super().__init__(f"Document {document_id} has no version {version}")


class WorkflowError(OpsMemoryError):
    """Illegal workflow operation for the current state."""


class SessionNotFoundError(NotFoundError):
    def __init__(self, meeting_id: str):
        self.meeting_id = meeting_id
        super().__init__(f"No observation session for meeting {meeting_id}")


class ClarificationNotFoundError(NotFoundError):
    def __init__(self, clarification_id: str):
        self.clarification_id = clarification_id
        super().__init__(f"Clarification {clarification_id} not found")


class StateConflictError(WorkflowError):
    """In-memory thread state disagrees with a write (stale or removed session)."""
