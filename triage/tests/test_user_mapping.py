"""Tests for the User Identity Mapper."""

import pytest

from triage.common.errors import NotFound, Unauthorized
from triage.common.schemas import MappingType, SourceType
from triage.common.store import Datastore
from triage.pipeline.context import TeamContext
from triage.pipeline.sources.base import DiscoveredUser
from triage.pipeline.user_mapping import (
    DestinationUser,
    SourceUser,
    UserIdentityMapper,
    name_similarity,
    suggest_matches,
)


@pytest.fixture
def mapper():
    return UserIdentityMapper(Datastore())


@pytest.fixture
def ctx():
    return TeamContext(team_id="team1", role="member")


class TestNameSimilarity:
    @pytest.mark.parametrize("a,b,expected", [
        ("Alice Smith", "alice smith", 1.0),
        ("alice", "Alice Smith", 0.8),
        ("Alice Jones", "Alice Smith", 0.6),
        ("Bob Smith", "Alice Smith", 0.5),
        ("Bob", "Alice", 0.0),
        ("", "Alice", 0.0),
    ])
    def test_scores(self, a, b, expected):
        assert name_similarity(a, b) == expected


class TestSuggestMatches:
    def test_email_beats_name(self):
        dest = [
            DestinationUser("n1", "Alice Smith", "alice@example.com"),
            DestinationUser("n2", "Alicia", "other@example.com"),
        ]
        suggestions, unmatched = suggest_matches(
            [SourceUser("U1", "Someone Else", "ALICE@example.com")], dest
        )
        assert unmatched == []
        assert suggestions[0].destination_user.user_id == "n1"
        assert suggestions[0].match_type == "email"
        assert suggestions[0].confidence == 1.0

    def test_name_match_and_unmatched(self):
        dest = [DestinationUser("n1", "Alice Smith"), DestinationUser("n2", "Bob Jones")]
        suggestions, unmatched = suggest_matches(
            [SourceUser("U1", "alice"), SourceUser("U2", "Carol")], dest
        )
        assert [(s.source_user.user_id, s.destination_user.user_id, s.match_type) for s in suggestions] == [
            ("U1", "n1", "name"),
        ]
        assert [u.user_id for u in unmatched] == ["U2"]


class TestResolve:
    def test_unknown_user(self, mapper):
        assert mapper.resolve("team1", SourceType.SLACK, "T1", "U1") is None

    def test_workspace_specific_mapping_wins(self, mapper, ctx):
        mapper.create_manual(ctx, SourceType.SLACK, "U1", "n-global")
        mapper.create_manual(ctx, SourceType.SLACK, "U1", "n-local", source_workspace_id="T1")

        assert mapper.resolve("team1", SourceType.SLACK, "T1", "U1").destination_user_id == "n-local"
        assert mapper.resolve("team1", SourceType.SLACK, "T2", "U1").destination_user_id == "n-global"

    def test_discovered_mapping_is_unresolved(self, mapper):
        mapper.record_discovered("team1", SourceType.FIGMA, "F1", [DiscoveredUser("alice")])

        mapping = mapper.resolve("team1", SourceType.FIGMA, "F1", "alice")
        assert mapping is not None
        assert mapping.is_resolved is False
        assert mapping.mapping_type == MappingType.DISCOVERED

    def test_team_scoped(self, mapper, ctx):
        mapper.create_manual(ctx, SourceType.SLACK, "U1", "n1")
        assert mapper.resolve("team2", SourceType.SLACK, "", "U1") is None

    def test_resolve_by_email(self, mapper, ctx):
        mapper.create_manual(ctx, SourceType.EMAIL, "alice", "n1", source_user_email="Alice@Example.com")
        assert mapper.resolve_by_email("team1", SourceType.EMAIL, "alice@example.com").destination_user_id == "n1"
        assert mapper.resolve_by_email("team1", SourceType.EMAIL, "bob@example.com") is None


class TestDiscoveryAndConfirm:
    def test_record_discovered_is_unique(self, mapper):
        users = [DiscoveredUser("alice"), DiscoveredUser("bob")]
        first = mapper.record_discovered("team1", SourceType.FIGMA, "F1", users)
        again = mapper.record_discovered("team1", SourceType.FIGMA, "F1", users)

        assert len(first) == 2
        assert again == []
        assert len(mapper.list("team1")) == 2
        assert all(not m.active for m in mapper.list("team1"))

    def test_confirm_resolves(self, mapper, ctx):
        mapping = mapper.record_discovered("team1", SourceType.FIGMA, "F1", [DiscoveredUser("alice")])[0]

        confirmed = mapper.confirm(ctx, mapping.id, "n1", "Alice Smith")

        assert confirmed.is_resolved
        assert confirmed.mapping_type == MappingType.MANUAL
        assert confirmed.confidence == 1.0
        assert mapper.list("team1", unresolved_only=True) == []

    def test_confirm_unknown(self, mapper, ctx):
        with pytest.raises(NotFound):
            mapper.confirm(ctx, "umap_missing", "n1")

    def test_confirm_other_team(self, mapper, ctx):
        mapping = mapper.record_discovered("team2", SourceType.FIGMA, "F1", [DiscoveredUser("alice")])[0]
        with pytest.raises(NotFound):
            mapper.confirm(ctx, mapping.id, "n1")

    def test_unknown_role_cannot_confirm(self, mapper):
        with pytest.raises(Unauthorized):
            mapper.confirm(TeamContext(team_id="team1", role="guest"), "umap_x", "n1")

    def test_create_manual_confirms_existing(self, mapper, ctx):
        mapper.record_discovered("team1", SourceType.SLACK, "T1", [DiscoveredUser("U1")])
        mapping = mapper.create_manual(ctx, SourceType.SLACK, "U1", "n1", source_workspace_id="T1")

        assert mapping.is_resolved
        assert len(mapper.list("team1")) == 1


class TestApplySuggestions:
    def test_manual_mapping_is_never_overwritten(self, mapper, ctx):
        mapper.create_manual(ctx, SourceType.SLACK, "U1", "n-manual", source_workspace_id="T1")
        suggestions, _ = suggest_matches(
            [SourceUser("U1", "Alice Smith")], [DestinationUser("n-auto", "Alice Smith")]
        )

        stored = mapper.apply_suggestions(ctx, SourceType.SLACK, "T1", suggestions)

        assert stored == []
        assert mapper.resolve("team1", SourceType.SLACK, "T1", "U1").destination_user_id == "n-manual"

    def test_discovered_mapping_is_upgraded(self, mapper, ctx):
        mapper.record_discovered("team1", SourceType.SLACK, "T1", [DiscoveredUser("U1")])
        suggestions, _ = suggest_matches(
            [SourceUser("U1", "Alice Smith")], [DestinationUser("n1", "Alice Smith")]
        )

        stored = mapper.apply_suggestions(ctx, SourceType.SLACK, "T1", suggestions)

        assert len(stored) == 1
        assert stored[0].mapping_type == MappingType.AUTO
        assert stored[0].is_resolved
        assert len(mapper.list("team1")) == 1

    def test_new_suggestion_creates_mapping(self, mapper, ctx):
        suggestions, _ = suggest_matches(
            [SourceUser("U9", "Bob", "bob@example.com")], [DestinationUser("n9", "Robert", "bob@example.com")]
        )
        stored = mapper.apply_suggestions(ctx, SourceType.SLACK, "T1", suggestions)

        assert stored[0].destination_user_id == "n9"
        assert mapper.resolve("team1", SourceType.SLACK, "T1", "U9").is_resolved
