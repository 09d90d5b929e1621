"""
OpsMemory

Watches live meetings (screen captures and transcript) and turns what people
demonstrate into versioned operating documents.

Philosophy:
- Documents are never edited in place: every change is a new version
- Only validated, actionable observations count toward synthesis
- A malformed collaborator response degrades, it never fails the pass
- Every failure is scoped to one meeting's one document thread

Usage:
    from opsmemory.common import load_config, LLMClient
    from opsmemory.common.schemas import Document, Observation, InboundEvent
    from opsmemory.observer import ObservationEngine, DocumentStore
"""

__version__ = "0.1.0"
