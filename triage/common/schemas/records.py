"""
Triage Record Schemas

Every persisted entity is a pydantic model stored in the datastore as
``model_dump(mode="json")``. All records except Task and Job history rows are
scoped by ``team_id``; the datastore never returns a record across teams.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ============================================================================
# Enums
# ============================================================================

class SourceType(str, Enum):
    """Inbound collaboration surfaces"""
    SLACK = "slack"
    FIGMA = "figma"
    EMAIL = "email"


class Provider(str, Enum):
    """Third-party providers a team can connect an account for"""
    SLACK = "slack"
    FIGMA = "figma"
    EMAIL = "email"
    NOTION = "notion"


class AccountStatus(str, Enum):
    """Health of a stored credential"""
    CONNECTED = "connected"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ERROR = "error"


class DiscussionStatus(str, Enum):
    """Processing state of an ingested discussion"""
    PENDING = "pending"
    PROCESSING = "processing"
    ANALYZED = "analyzed"
    COMPLETED = "completed"
    FAILED = "failed"
    BOOTSTRAP = "bootstrap"  # user-sync comment, never becomes tasks


class JobStage(str, Enum):
    """Pipeline stage a Job is in"""
    INGEST = "ingest"
    CLASSIFY = "classify"
    MAP = "map"
    CREATE = "create"


class JobStatus(str, Enum):
    """Job state machine states"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class MappingType(str, Enum):
    """How a user mapping was established"""
    MANUAL = "manual"
    AUTO = "auto"
    DISCOVERED = "discovered"


class SyncStatus(str, Enum):
    """Destination sync state of a Task"""
    SYNCED = "synced"
    FAILED = "failed"


# ============================================================================
# Helpers
# ============================================================================

def generate_id(prefix: str) -> str:
    """Generate a record id such as ``job_3f2a...``"""
    return f"{prefix}_{uuid.uuid4().hex}"


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string"""
    return datetime.now(timezone.utc).isoformat()


def token_hint(token: str) -> str:
    """Display-safe prefix of a secret token"""
    if not token or len(token) <= 8:
        return "***"
    return f"{token[:8]}..."


# ============================================================================
# Accounts
# ============================================================================

class ConnectedAccountView(BaseModel):
    """Redacted account, safe to return from list/read operations"""
    id: str
    team_id: str
    provider: Provider
    label: str
    provider_account_id: str = ""
    access_token_hint: str = "***"
    token_expires_at: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    provider_metadata: Dict[str, Any] = Field(default_factory=dict)
    status: AccountStatus = AccountStatus.CONNECTED
    last_verified_at: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)


class ConnectedAccount(ConnectedAccountView):
    """Team-scoped credential. Never serialize this outside the pipeline."""
    access_token: str
    refresh_token: Optional[str] = None

    def redacted(self) -> ConnectedAccountView:
        return ConnectedAccountView.model_validate(
            self.model_dump(exclude={"access_token", "refresh_token"})
        )


# ============================================================================
# Flows
# ============================================================================

class Flow(BaseModel):
    """Team pipeline definition binding inputs to outputs"""
    id: str = Field(default_factory=lambda: generate_id("flow"))
    team_id: str
    name: str
    active: bool = True
    ai_enabled: bool = True
    available_domains: List[str] = Field(default_factory=list)
    ai_summary_prompt: Optional[str] = None
    ai_task_prompt: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)


class FlowInput(BaseModel):
    """A configured source attached to a flow"""
    id: str = Field(default_factory=lambda: generate_id("fin"))
    flow_id: str
    team_id: str
    source_type: SourceType
    workspace_id: str = Field(..., description="Slack team id, Figma team/file scope, or inbound address")
    connected_account_id: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    active: bool = True


class FlowOutput(BaseModel):
    """A configured destination attached to a flow"""
    id: str = Field(default_factory=lambda: generate_id("fout"))
    flow_id: str
    team_id: str
    destination_type: Provider = Provider.NOTION
    name: str = ""
    connected_account_id: Optional[str] = None
    domain_filter: List[str] = Field(default_factory=list)
    is_default: bool = False
    settings: Dict[str, Any] = Field(default_factory=dict, description="database_id, field_mapping")
    active: bool = True


# ============================================================================
# Discussions and tasks
# ============================================================================

class DetectedTask(BaseModel):
    """One actionable work item found by the classifier"""
    title: str
    description: Optional[str] = None
    action_items: Optional[List[str]] = None
    priority: Optional[str] = None
    type: Optional[str] = None
    assignee: Optional[str] = None
    due_date: Optional[str] = None
    tags: Optional[List[str]] = None
    domain: Optional[str] = None

    def field_values(self) -> Dict[str, Any]:
        """Mappable fields keyed by their canonical mapping names"""
        return {
            "priority": self.priority,
            "type": self.type,
            "assignee": self.assignee,
            "dueDate": self.due_date,
            "tags": self.tags,
            "domain": self.domain,
        }


class Analysis(BaseModel):
    """Classifier output recorded on a discussion"""
    detected_tasks: List[DetectedTask] = Field(default_factory=list)
    domain: Optional[str] = None
    is_multi_task: bool = False
    summary: Optional[str] = None
    analyzed_at: str = Field(default_factory=utc_now)


class ThreadMessage(BaseModel):
    """One message of a source conversation"""
    author: str = ""
    text: str = ""
    timestamp: Optional[str] = None


class DiscussionThread(BaseModel):
    """Full source conversation a discussion belongs to"""
    root: ThreadMessage
    replies: List[ThreadMessage] = Field(default_factory=list)
    participants: List[str] = Field(default_factory=list)
    fetched_at: str = Field(default_factory=utc_now)

    @property
    def message_count(self) -> int:
        return 1 + len(self.replies)

    def render(self) -> str:
        """Plain-text transcript, one message per paragraph"""
        messages = [self.root] + self.replies
        return "\n\n".join(
            f"{m.author}: {m.text}" if m.author else m.text for m in messages if m.text
        )


class NormalizedDiscussion(BaseModel):
    """Provider-neutral discussion produced by a source adapter"""
    source_type: SourceType
    source_dedup_key: str
    source_thread_id: str
    workspace_id: str
    title: str = ""
    content: str
    author_handle: str = ""
    participants: List[str] = Field(default_factory=list)
    source_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    raw_payload: Dict[str, Any] = Field(default_factory=dict)


class Discussion(NormalizedDiscussion):
    """Canonical, deduplicated ingested item"""
    id: str = Field(default_factory=lambda: generate_id("disc"))
    team_id: str
    analysis: Optional[Analysis] = None
    thread: Optional[DiscussionThread] = None
    processing_status: DiscussionStatus = DiscussionStatus.PENDING
    created_at: str = Field(default_factory=utc_now)


class Task(BaseModel):
    """A work item created in a destination"""
    id: str = Field(default_factory=lambda: generate_id("task"))
    team_id: str
    discussion_id: str
    job_id: str
    flow_output_id: str
    task_index: int
    external_id: str
    external_url: Optional[str] = None
    title: str
    field_values: Dict[str, Any] = Field(default_factory=dict)
    unmapped_fields: List[str] = Field(default_factory=list)
    sync_status: SyncStatus = SyncStatus.SYNCED
    created_at: str = Field(default_factory=utc_now)


# ============================================================================
# Jobs
# ============================================================================

class Job(BaseModel):
    """One tracked, retryable run of classify -> map -> create"""
    id: str = Field(default_factory=lambda: generate_id("job"))
    team_id: str
    discussion_id: str
    flow_id: Optional[str] = None
    stage: JobStage = JobStage.INGEST
    status: JobStatus = JobStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    error: Optional[str] = None
    task_ids: List[str] = Field(default_factory=list)
    unmapped_fields: List[str] = Field(default_factory=list)
    retry_of: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)


# ============================================================================
# User mappings
# ============================================================================

class UserMapping(BaseModel):
    """Cross-system identity link"""
    id: str = Field(default_factory=lambda: generate_id("umap"))
    team_id: str
    source_type: SourceType
    source_workspace_id: str = ""
    source_user_id: str
    source_user_email: Optional[str] = None
    source_user_name: Optional[str] = None
    destination_user_id: Optional[str] = None
    destination_user_name: Optional[str] = None
    mapping_type: MappingType = MappingType.MANUAL
    confidence: float = Field(ge=0.0, le=1.0, default=0.0)
    active: bool = False
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @property
    def is_resolved(self) -> bool:
        return self.active and bool(self.destination_user_id)
