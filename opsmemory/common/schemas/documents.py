"""
OpsMemory Document Schemas

Core principle: a document is never edited in place. Every change appends a
DocumentVersion snapshot; the Document row only points at the current one.
Observations are immutable once recorded.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a short unique ID such as ``doc_3f9a1c0b7e2d``"""
    return f"{prefix}_{uuid4().hex[:12]}"


# ============================================================================
# Enums
# ============================================================================

class DocumentKind(str, Enum):
    """The two independent document threads of a meeting"""
    PROCEDURE = "procedure"
    ROLE = "role"


class DocumentStatus(str, Enum):
    DRAFT = "draft"
    REVIEWED = "reviewed"
    APPROVED = "approved"


class Phase(str, Enum):
    """Forward-only workflow stage"""
    OBSERVE = "observe"
    STRUCTURE = "structure"
    INSTRUCT = "instruct"


PHASE_ORDER = [Phase.OBSERVE, Phase.STRUCTURE, Phase.INSTRUCT]


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class ClarificationStatus(str, Enum):
    PENDING = "pending"
    ANSWERED = "answered"
    SKIPPED = "skipped"


class ClarificationCategory(str, Enum):
    MANDATORY_OPTIONAL = "mandatory_optional"
    CONDITION = "condition"
    APPROVAL = "approval"
    EXCEPTION = "exception"
    TOOL = "tool"


class ObservationCategory(str, Enum):
    CODE = "code"
    DOCUMENT = "document"
    DIAGRAM = "diagram"
    PRESENTATION = "presentation"
    UI = "ui"
    OTHER = "other"


class ObservationSource(str, Enum):
    SCREEN = "screen"
    TRANSCRIPT = "transcript"


# ============================================================================
# Observations & transcript
# ============================================================================

class Observation(BaseModel):
    """A validated, classified record of one captured action or spoken step"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("obs"))
    meeting_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    content: str
    category: ObservationCategory = ObservationCategory.OTHER
    source: ObservationSource = ObservationSource.SCREEN
    confidence: float = Field(ge=0.0, le=1.0, default=1.0)

    # Optional structured fields parsed from the analysis line
    app: Optional[str] = None
    page: Optional[str] = None
    action: Optional[str] = None
    from_value: Optional[str] = None
    to_value: Optional[str] = None
    is_repeated: bool = False

    def render_line(self) -> str:
        """One-line form used inside synthesis prompts"""
        extras = []
        if self.app:
            extras.append(f"app={self.app}")
        if self.page:
            extras.append(f"page={self.page}")
        if self.from_value or self.to_value:
            extras.append(f"{self.from_value or '?'} -> {self.to_value or '?'}")
        if self.is_repeated:
            extras.append("repeated")
        suffix = f" ({', '.join(extras)})" if extras else ""
        return f"[{self.source.value}/{self.category.value}] {self.content}{suffix}"


class TranscriptEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    speaker: str
    text: str
    timestamp: float
    seq: int = 0

    def render_line(self) -> str:
        return f"{self.speaker}: {self.text}"


# ============================================================================
# Workflow
# ============================================================================

class Clarification(BaseModel):
    """Advisory question that needs a human answer"""
    id: str = Field(default_factory=lambda: new_id("clr"))
    meeting_id: str
    question: str
    category: ClarificationCategory = ClarificationCategory.CONDITION
    status: ClarificationStatus = ClarificationStatus.PENDING
    answer: Optional[str] = None
    answered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class ObservationSession(BaseModel):
    """Human-visible observe -> structure -> instruct wrapper for a meeting"""
    id: str = Field(default_factory=lambda: new_id("ses"))
    meeting_id: str
    title: str = "Meeting"
    phase: Phase = Phase.OBSERVE
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Documents
# ============================================================================

class FlowStep(BaseModel):
    order: int
    action: str
    detail: str = ""
    role: Optional[str] = None


class DecisionPoint(BaseModel):
    condition: str
    then: str
    otherwise: str = ""


class ExceptionCase(BaseModel):
    case: str
    handling: str = ""


class DocumentFields(BaseModel):
    """Decision-based structure of a procedure document"""
    goal: str = ""
    when_to_use: str = ""
    who_performs: str = ""
    tools_required: List[str] = Field(default_factory=list)
    main_flow: List[FlowStep] = Field(default_factory=list)
    decision_points: List[DecisionPoint] = Field(default_factory=list)
    exceptions: List[ExceptionCase] = Field(default_factory=list)
    quality_check: str = ""
    low_confidence_sections: List[str] = Field(default_factory=list)
    assumptions: List[str] = Field(default_factory=list)


class Document(BaseModel):
    id: str = Field(default_factory=lambda: new_id("doc"))
    meeting_id: str
    kind: DocumentKind
    title: str
    status: DocumentStatus = DocumentStatus.DRAFT
    version: int = 0  # version currently pointed at (changes on rollback)
    latest_version: int = 0  # highest version ever written
    content: str = ""
    sections: Optional[DocumentFields] = None
    flowchart: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DocumentVersion(BaseModel):
    """Full snapshot of a document at one version"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("ver"))
    document_id: str
    version: int = Field(ge=1)
    content: str
    sections: Optional[DocumentFields] = None
    flowchart: Optional[str] = None
    change_summary: str = ""
    created_by: str = "OpsMemory"
    created_at: datetime = Field(default_factory=utcnow)
