"""Tests for Flow Configuration and domain routing."""

import pytest

from triage.common.errors import FatalError, NotFound, RoutingError, Unauthorized
from triage.common.schemas import FlowOutput, SourceType
from triage.common.store import Datastore
from triage.pipeline.context import TeamContext
from triage.pipeline.flows import FLOWS, FlowConfiguration, route_task, validate_outputs


def _output(name, domains=(), is_default=False):
    return FlowOutput(flow_id="flow_1", team_id="team1", name=name, domain_filter=list(domains), is_default=is_default)


@pytest.fixture
def store():
    return Datastore()


@pytest.fixture
def flows(store):
    return FlowConfiguration(store)


@pytest.fixture
def ctx():
    return TeamContext(team_id="team1", role="owner")


class TestRouteTask:
    def test_domain_match(self):
        design = _output("design", ["Design"])
        default = _output("default", is_default=True)
        assert route_task("design", [design, default]) == [design]

    def test_every_matching_output_receives_the_task(self):
        a = _output("a", ["design"])
        b = _output("b", ["design", "ux"])
        assert route_task("design", [a, b, _output("c", is_default=True)]) == [a, b]

    def test_no_domain_goes_to_default(self):
        default = _output("default", is_default=True)
        assert route_task(None, [_output("design", ["design"]), default]) == [default]

    def test_unmatched_domain_goes_to_default(self):
        default = _output("default", is_default=True)
        assert route_task("finance", [_output("design", ["design"]), default]) == [default]

    def test_unmatched_domain_without_default(self):
        with pytest.raises(RoutingError, match="No default output configured"):
            route_task("finance", [_output("design", ["design"])])


class TestValidateOutputs:
    def test_no_outputs(self):
        with pytest.raises(FatalError, match="at least one output"):
            validate_outputs([])

    def test_no_default(self):
        with pytest.raises(FatalError, match="exactly one default"):
            validate_outputs([_output("a", ["design"])])

    def test_single_default_is_clean(self):
        assert validate_outputs([_output("a", is_default=True), _output("b", ["x"])]) == []

    def test_several_defaults_warn(self, caplog):
        warnings = validate_outputs([_output("first", is_default=True), _output("second", is_default=True)])
        assert len(warnings) == 1
        assert "'first' is used" in warnings[0]
        assert "2 default outputs" in caplog.text


class TestFlowConfiguration:
    def test_create_and_list(self, flows, ctx):
        flow = flows.create_flow(ctx, "Design triage", available_domains=["design"])
        assert flows.get_flow("team1", flow.id).available_domains == ["design"]
        assert flows.get_flow("team2", flow.id) is None

    def test_member_cannot_create(self, flows):
        with pytest.raises(Unauthorized):
            flows.create_flow(TeamContext(team_id="team1", role="member"), "x")

    def test_add_to_missing_flow(self, flows, ctx):
        with pytest.raises(NotFound):
            flows.add_input(ctx, "flow_missing", SourceType.SLACK, "T1")

    def test_canonical_prefers_first_active(self, flows, store, ctx):
        inactive = flows.create_flow(ctx, "old", active=False)
        active = flows.create_flow(ctx, "current")
        store.update(FLOWS, inactive.id, {"created_at": "2020-01-01T00:00:00+00:00"})

        assert flows.canonical_flow("team1").id == active.id

    def test_canonical_falls_back_to_first_flow(self, flows, store, ctx):
        first = flows.create_flow(ctx, "first", active=False)
        second = flows.create_flow(ctx, "second", active=False)
        store.update(FLOWS, second.id, {"created_at": "2030-01-01T00:00:00+00:00"})

        assert flows.canonical_flow("team1").id == first.id

    def test_equal_timestamps_keep_insertion_order(self, flows, store, ctx):
        ids = [flows.create_flow(ctx, f"f{i}").id for i in range(3)]
        for flow_id in ids:
            store.update(FLOWS, flow_id, {"created_at": "2025-01-01T00:00:00+00:00"})

        assert [f.id for f in flows.list_flows("team1")] == ids
        assert flows.canonical_flow("team1").id == ids[0]

    def test_no_flow(self, flows):
        assert flows.canonical_flow("team1") is None

    def test_resolve_input(self, flows, ctx):
        flow = flows.create_flow(ctx, "f")
        flows.add_input(ctx, flow.id, SourceType.SLACK, "T123")

        found = flows.resolve_input(SourceType.SLACK, "T123")
        assert found.team_id == "team1"
        assert found.flow_id == flow.id
        assert flows.resolve_input(SourceType.FIGMA, "T123") is None
        assert flows.inputs_for(flow)[0].workspace_id == "T123"

    def test_outputs_for_active_only(self, flows, store, ctx):
        flow = flows.create_flow(ctx, "f")
        kept = flows.add_output(ctx, flow.id, database_id="db1", is_default=True, field_mapping={"priority": {"property": "P"}})
        dropped = flows.add_output(ctx, flow.id, database_id="db2")
        store.update("flow_outputs", dropped.id, {"active": False})

        outputs = flows.outputs_for(flow)
        assert [o.id for o in outputs] == [kept.id]
        assert outputs[0].settings == {"database_id": "db1", "field_mapping": {"priority": {"property": "P"}}}
