"""
User Identity Mapper

Links source-system users (Slack, Figma, email senders) to destination users.

Mappings come from three places:
- manual entry and confirmation by a team member
- auto-matching against a destination user list (email, then name)
- bootstrap discovery: a "User Sync:" comment lists users that are stored
  as inactive, unresolved mappings until someone picks a destination user
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from ..common.errors import NotFound
from ..common.schemas import MappingType, SourceType, UserMapping, utc_now
from ..common.store import Datastore
from .context import USER_MAPPINGS_WRITE, TeamContext
from .sources.base import DiscoveredUser

logger = logging.getLogger("triage.pipeline.user_mapping")

USER_MAPPINGS = "user_mappings"

NAME_MATCH_THRESHOLD = 0.5


@dataclass
class SourceUser:
    """A user as seen by a source system"""
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class DestinationUser:
    """A user as seen by the destination system"""
    user_id: str
    name: str = ""
    email: Optional[str] = None


@dataclass
class MatchSuggestion:
    """Proposed link between a source and a destination user"""
    source_user: SourceUser
    destination_user: DestinationUser
    confidence: float
    match_type: str  # "email" or "name"


def name_similarity(name1: str, name2: str) -> float:
    """
    Score two display names.

    Exact 1.0, containment 0.8, same first name 0.6, same last name 0.5.
    """
    n1 = (name1 or "").lower().strip()
    n2 = (name2 or "").lower().strip()
    if not n1 or not n2:
        return 0.0
    if n1 == n2:
        return 1.0
    if n1 in n2 or n2 in n1:
        return 0.8

    parts1, parts2 = n1.split(), n2.split()
    if parts1[0] == parts2[0]:
        return 0.6
    if len(parts1) > 1 and len(parts2) > 1 and parts1[-1] == parts2[-1]:
        return 0.5
    return 0.0


def suggest_matches(
    source_users: Iterable[SourceUser],
    destination_users: List[DestinationUser],
) -> Tuple[List[MatchSuggestion], List[SourceUser]]:
    """
    Match source users to destination users, email first, then name.

    Returns:
        (suggestions, unmatched source users)
    """
    by_email = {
        u.email.lower(): u for u in destination_users if u.email
    }
    suggestions, unmatched = [], []

    for source_user in source_users:
        if source_user.email and source_user.email.lower() in by_email:
            suggestions.append(MatchSuggestion(
                source_user, by_email[source_user.email.lower()], 1.0, "email"
            ))
            continue

        best, best_score = None, 0.0
        for dest in destination_users:
            score = name_similarity(source_user.name or source_user.user_id, dest.name)
            if score > best_score and score >= NAME_MATCH_THRESHOLD:
                best, best_score = dest, score

        if best is None:
            unmatched.append(source_user)
        else:
            suggestions.append(MatchSuggestion(source_user, best, best_score, "name"))

    return suggestions, unmatched


class UserIdentityMapper:
    """User mapping persistence and resolution"""

    def __init__(self, store: Datastore):
        self._store = store

    def _find(self, team_id: str, source_type: SourceType, **filters) -> List[UserMapping]:
        return [
            UserMapping.model_validate(r)
            for r in self._store.find(
                USER_MAPPINGS,
                team_id=team_id,
                source_type=SourceType(source_type).value,
                **filters,
            )
        ]

    def resolve(
        self,
        team_id: str,
        source_type: SourceType,
        source_workspace_id: str,
        source_user_id: str,
    ) -> Optional[UserMapping]:
        """
        Mapping for a source user, or None.

        A mapping in the same workspace beats a workspace-agnostic one, and a
        resolved mapping beats an unresolved one. The result may still be
        unresolved (discovered, awaiting confirmation); check ``is_resolved``.
        """
        candidates = [
            m for m in self._find(team_id, source_type, source_user_id=source_user_id)
            if m.source_workspace_id in (source_workspace_id, "")
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda m: (
            m.source_workspace_id != source_workspace_id,
            not m.is_resolved,
        ))
        return candidates[0]

    def resolve_by_email(self, team_id: str, source_type: SourceType, email: str) -> Optional[UserMapping]:
        """Resolved mapping whose source email matches, case-insensitively"""
        wanted = (email or "").lower()
        for mapping in self._find(team_id, source_type):
            if mapping.is_resolved and (mapping.source_user_email or "").lower() == wanted:
                return mapping
        return None

    def get(self, team_id: str, mapping_id: str) -> Optional[UserMapping]:
        record = self._store.get(USER_MAPPINGS, mapping_id, team_id=team_id)
        return UserMapping.model_validate(record) if record else None

    def list(self, team_id: str, unresolved_only: bool = False) -> List[UserMapping]:
        mappings = [
            UserMapping.model_validate(r)
            for r in self._store.find(USER_MAPPINGS, team_id=team_id)
        ]
        if unresolved_only:
            mappings = [m for m in mappings if not m.is_resolved]
        return mappings

    def confirm(
        self,
        ctx: TeamContext,
        mapping_id: str,
        destination_user_id: str,
        destination_user_name: Optional[str] = None,
    ) -> UserMapping:
        """Assign a destination user; the mapping becomes manual, certain and active"""
        ctx.require(USER_MAPPINGS_WRITE)
        changes = {
            "destination_user_id": destination_user_id,
            "mapping_type": MappingType.MANUAL.value,
            "confidence": 1.0,
            "active": True,
            "updated_at": utc_now(),
        }
        if destination_user_name is not None:
            changes["destination_user_name"] = destination_user_name

        record = self._store.update(USER_MAPPINGS, mapping_id, changes, team_id=ctx.team_id)
        if record is None:
            raise NotFound(f"user mapping {mapping_id}")
        logger.info("Confirmed user mapping %s -> %s", mapping_id, destination_user_id)
        return UserMapping.model_validate(record)

    def create_manual(
        self,
        ctx: TeamContext,
        source_type: SourceType,
        source_user_id: str,
        destination_user_id: str,
        *,
        source_workspace_id: str = "",
        source_user_name: Optional[str] = None,
        source_user_email: Optional[str] = None,
        destination_user_name: Optional[str] = None,
    ) -> UserMapping:
        """Create a mapping by hand, or confirm the existing one for that source user"""
        ctx.require(USER_MAPPINGS_WRITE)
        existing = self._find(
            ctx.team_id, source_type,
            source_user_id=source_user_id,
            source_workspace_id=source_workspace_id,
        )
        if existing:
            return self.confirm(ctx, existing[0].id, destination_user_id, destination_user_name)

        mapping = UserMapping(
            team_id=ctx.team_id,
            source_type=source_type,
            source_workspace_id=source_workspace_id,
            source_user_id=source_user_id,
            source_user_name=source_user_name,
            source_user_email=source_user_email,
            destination_user_id=destination_user_id,
            destination_user_name=destination_user_name,
            mapping_type=MappingType.MANUAL,
            confidence=1.0,
            active=True,
        )
        self._store.insert(USER_MAPPINGS, mapping.model_dump(mode="json"))
        return mapping

    def record_discovered(
        self,
        team_id: str,
        source_type: SourceType,
        source_workspace_id: str,
        users: Iterable[DiscoveredUser],
    ) -> List[UserMapping]:
        """
        Store bootstrap-discovered users as inactive, unresolved mappings.

        Users that already have a mapping in this workspace are skipped.

        Returns:
            The newly created mappings
        """
        created = []
        for user in users:
            mapping = UserMapping(
                team_id=team_id,
                source_type=source_type,
                source_workspace_id=source_workspace_id,
                source_user_id=user.user_id,
                source_user_name=user.name,
                destination_user_id=None,
                mapping_type=MappingType.DISCOVERED,
                confidence=0.0,
                active=False,
            )
            _, was_created = self._store.insert_unique(
                USER_MAPPINGS,
                mapping.model_dump(mode="json"),
                unique_on=("team_id", "source_type", "source_workspace_id", "source_user_id"),
            )
            if was_created:
                created.append(mapping)

        logger.info(
            "Bootstrap discovered %d new %s user(s) in %s",
            len(created), SourceType(source_type).value, source_workspace_id,
        )
        return created

    def apply_suggestions(
        self,
        ctx: TeamContext,
        source_type: SourceType,
        source_workspace_id: str,
        suggestions: Iterable[MatchSuggestion],
    ) -> List[UserMapping]:
        """
        Store auto-match suggestions.

        Manual mappings are never overwritten; discovered or earlier auto
        mappings for the same source user are updated in place.
        """
        ctx.require(USER_MAPPINGS_WRITE)
        stored = []
        for suggestion in suggestions:
            source, dest = suggestion.source_user, suggestion.destination_user
            fields = {
                "source_user_name": source.name,
                "source_user_email": source.email,
                "destination_user_id": dest.user_id,
                "destination_user_name": dest.name,
                "mapping_type": MappingType.AUTO.value,
                "confidence": suggestion.confidence,
                "active": True,
                "updated_at": utc_now(),
            }
            existing = self._find(
                ctx.team_id, source_type,
                source_user_id=source.user_id,
                source_workspace_id=source_workspace_id,
            )
            if existing:
                if existing[0].mapping_type == MappingType.MANUAL:
                    continue
                record = self._store.update(USER_MAPPINGS, existing[0].id, fields, team_id=ctx.team_id)
                stored.append(UserMapping.model_validate(record))
                continue

            mapping = UserMapping(
                team_id=ctx.team_id,
                source_type=source_type,
                source_workspace_id=source_workspace_id,
                source_user_id=source.user_id,
                **{k: v for k, v in fields.items() if k not in ("mapping_type", "updated_at")},
                mapping_type=MappingType.AUTO,
            )
            self._store.insert(USER_MAPPINGS, mapping.model_dump(mode="json"))
            stored.append(mapping)
        return stored
