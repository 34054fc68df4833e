"""
Triage Record Schemas

Pydantic models for accounts, flows, discussions, jobs, tasks and user mappings.
"""

from .records import (
    AccountStatus,
    Analysis,
    ConnectedAccount,
    ConnectedAccountView,
    DetectedTask,
    Discussion,
    DiscussionStatus,
    DiscussionThread,
    Flow,
    FlowInput,
    FlowOutput,
    Job,
    JobStage,
    JobStatus,
    MappingType,
    NormalizedDiscussion,
    Provider,
    SourceType,
    SyncStatus,
    Task,
    ThreadMessage,
    UserMapping,
    generate_id,
    token_hint,
    utc_now,
)

__all__ = [
    "AccountStatus",
    "Analysis",
    "ConnectedAccount",
    "ConnectedAccountView",
    "DetectedTask",
    "Discussion",
    "DiscussionStatus",
    "DiscussionThread",
    "Flow",
    "FlowInput",
    "FlowOutput",
    "Job",
    "JobStage",
    "JobStatus",
    "MappingType",
    "NormalizedDiscussion",
    "Provider",
    "SourceType",
    "SyncStatus",
    "Task",
    "ThreadMessage",
    "UserMapping",
    "generate_id",
    "token_hint",
    "utc_now",
]
