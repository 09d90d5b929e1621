"""
Observer - Live Meeting Observation

Turns a stream of screen captures, transcript lines and control commands into
incrementally synthesized procedure and role documents.

Key Components:
- RateGate / compute_fingerprint: decide which captures are worth analyzing
- ScreenAnalyzer: "describe this capture" collaborator step
- ObservationClassifier: validate and categorize actionable steps
- DocumentSynthesizer: turn new observations into the next document version
- DocumentStore: append-only versioned documents and workflow records
- PhaseWorkflow / ClarificationDesk: observe -> structure -> instruct, questions
- ObservationEngine: per-meeting orchestration

Rules:
1. Never analyze the same unchanged screen more often than the gate allows
2. Text without an explicit action marker is never an observation
3. Near-duplicate analyses are not re-announced
4. Versions are gapless; rollback never deletes history
5. The cursor only moves after a successful write
"""

from .fingerprint import compute_fingerprint
from .rate_gate import RateGate, DebounceTimer
from .classifier import ObservationClassifier
from .similarity import is_similar
from .session_state import SessionRegistry, MeetingSession, DocumentThread
from .screen_analyzer import ScreenAnalyzer
from .synthesizer import DocumentSynthesizer, StructuredResult, FreeformResult, TemplateLoader
from .document_store import DocumentStore
from .workflow import PhaseWorkflow, ClarificationDesk
from .broadcaster import ConnectionRegistry
from .engine import ObservationEngine

__all__ = [
    "compute_fingerprint",
    "RateGate",
    "DebounceTimer",
    "ObservationClassifier",
    "is_similar",
    "SessionRegistry",
    "MeetingSession",
    "DocumentThread",
    "ScreenAnalyzer",
    "DocumentSynthesizer",
    "StructuredResult",
    "FreeformResult",
    "TemplateLoader",
    "DocumentStore",
    "PhaseWorkflow",
    "ClarificationDesk",
    "ConnectionRegistry",
    "ObservationEngine",
]
