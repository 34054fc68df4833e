"""Tests for fuzzy field and value mapping."""

import pytest

from triage.pipeline.field_mapping import (
    FieldMapping,
    find_best_property,
    generate_default_mapping,
    generate_value_mapping,
    map_task_fields,
    similarity,
    transform_value,
)


@pytest.fixture
def schema():
    return {
        "Name": {"type": "title", "options": []},
        "Priority": {"type": "select", "options": [{"name": "P1 - Urgent"}, {"name": "High"}, {"name": "Medium"}, {"name": "Low"}]},
        "Type": {"type": "select", "options": [{"name": "Bug"}, {"name": "Feature"}, {"name": "Question"}]},
        "Assignee": {"type": "people", "options": []},
        "Due": {"type": "date", "options": []},
        "Tags": {"type": "multi_select", "options": [{"name": "frontend"}, {"name": "backend"}]},
    }


class TestSimilarity:
    @pytest.mark.parametrize("a,b", [("Priority", "priority"), ("  tags ", "Tags")])
    def test_exact_match_scores_one(self, a, b):
        assert similarity(a, b) == 1.0

    @pytest.mark.parametrize("a,b", [("priority", "Task Priority"), ("bug", "Bug Report")])
    def test_containment(self, a, b):
        assert similarity(a, b) == 0.8

    def test_prefix_ratio(self):
        assert similarity("assignee", "assigned to") == pytest.approx(7 / 11)

    def test_empty_side_scores_zero(self):
        assert similarity("", "priority") == 0.0
        assert similarity(None, "priority") == 0.0

    @pytest.mark.parametrize("a,b", [("", ""), ("  ", ""), (None, None)])
    def test_both_empty_scores_zero(self, a, b):
        assert similarity(a, b) == 0.0

    def test_word_order_is_not_considered(self):
        assert similarity("bug report", "report bug") < 0.3

    @pytest.mark.parametrize("a,b", [("high", "Highest"), ("dueDate", "Due Date"), ("x", "y")])
    def test_score_is_bounded(self, a, b):
        assert 0.0 <= similarity(a, b) <= 1.0


class TestFindBestProperty:
    def test_picks_best_property(self, schema):
        match = find_best_property("priority", schema)
        assert match.property_name == "Priority"
        assert match.property_type == "select"
        assert match.confidence == 1.0

    def test_below_threshold_is_none(self, schema):
        assert find_best_property("estimate", schema) is None

    def test_ties_keep_schema_order(self):
        properties = {
            "Task Type": {"type": "select"},
            "Type of work": {"type": "select"},
        }
        assert find_best_property("type", properties).property_name == "Task Type"


class TestValueMapping:
    def test_vocabulary_maps_onto_options(self):
        value_map = generate_value_mapping("priority", ["Urgent!", "High", "Medium", "Low"])
        assert value_map["high"] == "High"
        assert value_map["urgent"] == "Urgent!"

    def test_unknown_field_has_no_vocabulary(self):
        assert generate_value_mapping("assignee", ["alice"]) == {}

    def test_default_mapping_covers_schema(self, schema):
        mapping = generate_default_mapping(schema)
        assert mapping["priority"].property_name == "Priority"
        assert mapping["priority"].value_map["high"] == "High"
        assert mapping["type"].value_map["bug"] == "Bug"
        assert mapping["assignee"].property_name == "Assignee"
        assert mapping["tags"].property_type == "multi_select"
        assert "domain" not in mapping

    def test_field_mapping_dict_round_trip(self):
        fm = FieldMapping("Priority", "select", 0.8, {"high": "P1"})
        data = fm.to_dict()
        assert data == {"property": "Priority", "type": "select", "confidence": 0.8, "value_map": {"high": "P1"}}
        assert FieldMapping.from_dict(data) == fm


class TestTransformValue:
    def test_explicit_map_wins(self):
        assert transform_value("high", ["High", "P1"], {"high": "P1"}) == "P1"

    def test_explicit_map_is_case_insensitive(self):
        assert transform_value("HIGH", None, {"high": "P1"}) == "P1"

    def test_no_options_passes_through(self):
        assert transform_value("critical") == "critical"

    def test_fuzzy_option(self):
        assert transform_value("med", ["Low", "Medium", "High"]) == "Medium"

    def test_no_confident_option_passes_through(self):
        assert transform_value("zzz", ["Low", "Medium"]) == "zzz"
        assert transform_value("xyz", ["Urgent"]) == "xyz"

    def test_option_objects_are_accepted(self):
        assert transform_value("xyz", [{"name": "Urgent"}]) == "xyz"
        assert transform_value("high", [{"name": "High"}]) == "High"
        assert transform_value("med", [{"name": "Low"}, "Medium", {"name": None}]) == "Medium"

    def test_empty_value(self):
        assert transform_value(None, ["Low"]) is None
        assert transform_value("", ["Low"]) is None


class TestMapTaskFields:
    def test_maps_values_and_assignee(self, schema):
        mapping = generate_default_mapping(schema)
        result = map_task_fields(
            {"priority": "high", "type": "bug", "assignee": "U1", "dueDate": "2026-01-31", "tags": ["frontend"], "domain": None},
            mapping,
            schema,
            assignee_id="notion-user-1",
        )
        assert result.values["Priority"] == ("select", "High")
        assert result.values["Type"] == ("select", "Bug")
        assert result.values["Assignee"] == ("people", "notion-user-1")
        assert result.values["Due"] == ("date", "2026-01-31")
        assert result.values["Tags"] == ("multi_select", ["frontend"])
        assert result.unmapped == []

    def test_unresolved_assignee_is_unmapped(self, schema):
        mapping = generate_default_mapping(schema)
        result = map_task_fields({"assignee": "U1"}, mapping, schema, assignee_id=None)
        assert "Assignee" not in result.values
        assert result.unmapped == ["assignee"]

    def test_field_without_property_is_unmapped(self, schema):
        mapping = generate_default_mapping(schema)
        result = map_task_fields({"domain": "design"}, mapping, schema)
        assert result.unmapped == ["domain"]
        assert result.values == {}

    def test_unmatched_option_is_written_raw_and_reported(self, schema):
        mapping = generate_default_mapping(schema)
        result = map_task_fields({"type": "improvement"}, mapping, schema)
        assert result.values["Type"] == ("select", "improvement")
        assert result.unmapped == ["type"]

    def test_empty_values_are_skipped(self, schema):
        mapping = generate_default_mapping(schema)
        result = map_task_fields({"priority": None, "tags": [], "type": ""}, mapping, schema)
        assert result.values == {}
        assert result.unmapped == []
