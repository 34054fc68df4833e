"""
Discussion Store

Canonical, deduplicated record of ingested conversational items plus the
classifier's analysis of them.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..common.errors import NotFound
from ..common.schemas import (
    Analysis,
    DetectedTask,
    Discussion,
    DiscussionStatus,
    DiscussionThread,
    NormalizedDiscussion,
)
from ..common.store import Datastore
from .context import TeamContext

logger = logging.getLogger("triage.pipeline.discussions")

DISCUSSIONS = "discussions"
DEDUP_FIELDS = ("team_id", "source_type", "source_dedup_key")


@dataclass
class IngestResult:
    """Stored discussion and whether this delivery created it"""
    discussion: Discussion
    created: bool


class DiscussionStore:
    """Discussion persistence with idempotent ingestion"""

    def __init__(self, store: Datastore):
        self._store = store

    def ingest(self, ctx: TeamContext, normalized: NormalizedDiscussion) -> IngestResult:
        """
        Store a normalized discussion once per (team, source, dedup key).

        A re-delivered event returns the existing record with created=False.
        """
        discussion = Discussion(team_id=ctx.team_id, **normalized.model_dump())
        record, created = self._store.insert_unique(
            DISCUSSIONS,
            discussion.model_dump(mode="json"),
            unique_on=DEDUP_FIELDS,
        )
        stored = Discussion.model_validate(record)
        if created:
            logger.info(
                "Ingested %s discussion %s (%s)",
                stored.source_type.value, stored.id, stored.source_dedup_key,
            )
        else:
            logger.info(
                "Duplicate %s delivery %s, keeping discussion %s",
                stored.source_type.value, stored.source_dedup_key, stored.id,
            )
        return IngestResult(discussion=stored, created=created)

    def get(self, team_id: str, discussion_id: str) -> Optional[Discussion]:
        record = self._store.get(DISCUSSIONS, discussion_id, team_id=team_id)
        return Discussion.model_validate(record) if record else None

    def require(self, team_id: str, discussion_id: str) -> Discussion:
        discussion = self.get(team_id, discussion_id)
        if discussion is None:
            raise NotFound(f"discussion {discussion_id}")
        return discussion

    def list(self, team_id: str, status: Optional[DiscussionStatus] = None) -> List[Discussion]:
        filters = {"team_id": team_id}
        if status is not None:
            filters["processing_status"] = DiscussionStatus(status).value
        return [Discussion.model_validate(r) for r in self._store.find(DISCUSSIONS, **filters)]

    def record_analysis(
        self,
        team_id: str,
        discussion_id: str,
        detected_tasks: List[DetectedTask],
        domain: Optional[str],
        summary: Optional[str] = None,
    ) -> Discussion:
        """Store classifier output and mark the discussion analyzed"""
        analysis = Analysis(
            detected_tasks=detected_tasks,
            domain=domain,
            is_multi_task=len(detected_tasks) > 1,
            summary=summary,
        )
        record = self._store.update(
            DISCUSSIONS,
            discussion_id,
            {
                "analysis": analysis.model_dump(mode="json"),
                "processing_status": DiscussionStatus.ANALYZED.value,
            },
            team_id=team_id,
        )
        if record is None:
            raise NotFound(f"discussion {discussion_id}")
        logger.debug("Recorded %d detected tasks on %s", len(detected_tasks), discussion_id)
        return Discussion.model_validate(record)

    def record_thread(self, team_id: str, discussion_id: str, thread: DiscussionThread) -> Discussion:
        """Attach the fetched source conversation; participants gain its authors"""
        discussion = self.require(team_id, discussion_id)
        participants = list(discussion.participants)
        for participant in thread.participants:
            if participant not in participants:
                participants.append(participant)

        record = self._store.update(
            DISCUSSIONS,
            discussion_id,
            {"thread": thread.model_dump(mode="json"), "participants": participants},
            team_id=team_id,
        )
        if record is None:
            raise NotFound(f"discussion {discussion_id}")
        logger.debug("Recorded %d-message thread on %s", thread.message_count, discussion_id)
        return Discussion.model_validate(record)

    def set_status(self, team_id: str, discussion_id: str, status: DiscussionStatus) -> Discussion:
        record = self._store.update(
            DISCUSSIONS,
            discussion_id,
            {"processing_status": DiscussionStatus(status).value},
            team_id=team_id,
        )
        if record is None:
            raise NotFound(f"discussion {discussion_id}")
        return Discussion.model_validate(record)
