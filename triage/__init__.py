"""
Triage

Turns team conversations into tracker tasks.

Pipeline:
- Source adapters verify and normalize chat, design-comment and email events
- Discussions are stored once per provider event (idempotent ingestion)
- An AI classifier detects actionable tasks and a routing domain
- Fields, values and users are fuzzy-mapped onto the destination schema
- Every run is a Job with bounded retries and an audit trail

Usage:
    from triage.common import load_config, Datastore
    from triage.common.schemas import Discussion, Job, JobStatus
    from triage.pipeline import JobOrchestrator, FlowConfiguration
    from triage.pipeline.sources import get_adapter
"""

__version__ = "0.1.0"
