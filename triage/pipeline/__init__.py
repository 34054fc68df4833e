"""
Triage Pipeline

Ingestion, classification, mapping and task creation.

Components:
- AccountRegistry: team credentials and their health
- DiscussionStore: deduplicated ingested discussions
- TaskClassifier: completion-backed task detection
- SourceConnector: thread reads and result replies to the source
- FlowConfiguration: team inputs, outputs and domain routing
- UserIdentityMapper: source user -> destination user links
- JobOrchestrator: bounded-retry classify -> map -> create runs
"""

from .accounts import AccountRegistry, VerifyResult
from .classifier import ClassificationResult, PromptOverrides, TaskClassifier
from .connector import SourceConnector, confirmation_message
from .context import TeamContext
from .destinations import CreatedRecord, DestinationAdapter, NotionDestination
from .discussions import DiscussionStore, IngestResult
from .flows import FlowConfiguration, route_task, validate_outputs
from .metrics import OperationMetrics
from .orchestrator import BackoffPolicy, IngestOutcome, JobOrchestrator
from .user_mapping import UserIdentityMapper

__all__ = [
    "AccountRegistry",
    "VerifyResult",
    "ClassificationResult",
    "PromptOverrides",
    "TaskClassifier",
    "SourceConnector",
    "confirmation_message",
    "TeamContext",
    "CreatedRecord",
    "DestinationAdapter",
    "NotionDestination",
    "DiscussionStore",
    "IngestResult",
    "FlowConfiguration",
    "route_task",
    "validate_outputs",
    "OperationMetrics",
    "BackoffPolicy",
    "IngestOutcome",
    "JobOrchestrator",
    "UserIdentityMapper",
]
