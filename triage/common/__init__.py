"""
Triage Common Module

Shared infrastructure for the ingestion pipeline: configuration, errors,
the datastore, and the completion-provider client.
"""

from .config import TriageConfig, load_config
from .errors import (
    AuthError,
    FatalError,
    JobConflict,
    MappingError,
    NotFound,
    RoutingError,
    TransientError,
    TriageError,
    Unauthorized,
    ValidationError,
)
from .llm_client import LLMClient
from .store import Datastore

__all__ = [
    "TriageConfig",
    "load_config",
    "AuthError",
    "FatalError",
    "JobConflict",
    "MappingError",
    "NotFound",
    "RoutingError",
    "TransientError",
    "TriageError",
    "Unauthorized",
    "ValidationError",
    "LLMClient",
    "Datastore",
]
