"""
OpsMemory Schemas

Documents, versions, observations, clarifications and wire envelopes.
"""

from .documents import (
    Document,
    DocumentVersion,
    DocumentFields,
    DocumentKind,
    DocumentStatus,
    FlowStep,
    DecisionPoint,
    ExceptionCase,
    Observation,
    ObservationCategory,
    ObservationSource,
    TranscriptEntry,
    Clarification,
    ClarificationCategory,
    ClarificationStatus,
    ObservationSession,
    Phase,
    PHASE_ORDER,
    SessionStatus,
    new_id,
    utcnow,
)
from .events import (
    InboundEvent,
    OutboundEvent,
    EventKind,
    ControlCommand,
    OutboundKind,
)
from .templates import render_document_markdown, DOCUMENT_TEMPLATE

__all__ = [
    "Document",
    "DocumentVersion",
    "DocumentFields",
    "DocumentKind",
    "DocumentStatus",
    "FlowStep",
    "DecisionPoint",
    "ExceptionCase",
    "Observation",
    "ObservationCategory",
    "ObservationSource",
    "TranscriptEntry",
    "Clarification",
    "ClarificationCategory",
    "ClarificationStatus",
    "ObservationSession",
    "Phase",
    "PHASE_ORDER",
    "SessionStatus",
    "new_id",
    "utcnow",
    "InboundEvent",
    "OutboundEvent",
    "EventKind",
    "ControlCommand",
    "OutboundKind",
    "render_document_markdown",
    "DOCUMENT_TEMPLATE",
]
