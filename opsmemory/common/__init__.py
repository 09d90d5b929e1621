"""
OpsMemory Common Module

Shared infrastructure for the observer engine and its server.
"""

from .config import OpsMemoryConfig, load_config
from .errors import (
    OpsMemoryError,
    ConfigurationError,
    SynthesisError,
    StorageError,
    NotFoundError,
    DocumentNotFoundError,
    VersionNotFoundError,
    SessionNotFoundError,
    ClarificationNotFoundError,
    WorkflowError,
    StateConflictError,
)
from .llm_client import LLMClient

__all__ = [
    "OpsMemoryConfig",
    "load_config",
    "OpsMemoryError",
    "ConfigurationError",
    "SynthesisError",
    "StorageError",
    "NotFoundError",
    "DocumentNotFoundError",
    "VersionNotFoundError",
    "SessionNotFoundError",
    "ClarificationNotFoundError",
    "WorkflowError",
    "StateConflictError",
    "LLMClient",
]
