"""
Flow Configuration

Per-team binding of inputs (sources) to outputs (destinations), with AI
prompt overrides and domain-routing rules.

A team normally has one active flow, but nothing enforces it: the canonical
flow is the earliest-created active flow, else the earliest-created flow.
"""

import logging
from typing import Any, Dict, List, Optional

from ..common.errors import FatalError, NotFound, RoutingError
from ..common.schemas import Flow, FlowInput, FlowOutput, Provider, SourceType
from ..common.store import Datastore
from .context import FLOWS_WRITE, TeamContext

logger = logging.getLogger("triage.pipeline.flows")

FLOWS = "flows"
FLOW_INPUTS = "flow_inputs"
FLOW_OUTPUTS = "flow_outputs"


def _creation_order(flow: Flow):
    # sorted() is stable, so equal timestamps keep insertion order
    return flow.created_at


def route_task(domain: Optional[str], outputs: List[FlowOutput]) -> List[FlowOutput]:
    """
    Select the outputs a task goes to.

    Outputs whose domain filter contains the task's domain all receive it.
    A task without a domain, or whose domain no output claims, goes to the
    default output.

    Raises:
        RoutingError: fallback needed but no default output is configured
    """
    if domain:
        wanted = domain.lower()
        matched = [
            o for o in outputs
            if any(d.lower() == wanted for d in o.domain_filter)
        ]
        if matched:
            logger.debug("Domain %s routed to %s", domain, [o.id for o in matched])
            return matched

    default = next((o for o in outputs if o.is_default), None)
    if default is None:
        raise RoutingError(
            f"No default output configured (domain: {domain or 'none'})"
        )
    return [default]


def validate_outputs(outputs: List[FlowOutput]) -> List[str]:
    """
    Check a flow's outputs can route every task.

    Returns:
        Warnings (several defaults: the first one wins)

    Raises:
        FatalError: no outputs, or no default output
    """
    if not outputs:
        raise FatalError("Flow must have at least one output")

    defaults = [o for o in outputs if o.is_default]
    if not defaults:
        raise FatalError("Flow must have exactly one default output")

    warnings = []
    if len(defaults) > 1:
        message = f"Flow has {len(defaults)} default outputs; '{defaults[0].name or defaults[0].id}' is used"
        logger.warning(message)
        warnings.append(message)
    return warnings


class FlowConfiguration:
    """
    Team flow definitions backed by the datastore.

    Usage:
        flows = FlowConfiguration(store)
        flow = flows.create_flow(ctx, "Design triage", available_domains=["design"])
        flows.add_input(ctx, flow.id, SourceType.SLACK, workspace_id="T123")
        flows.add_output(ctx, flow.id, database_id="db1", is_default=True)
    """

    def __init__(self, store: Datastore):
        self._store = store

    # -- writes ------------------------------------------------------------

    def create_flow(
        self,
        ctx: TeamContext,
        name: str,
        *,
        active: bool = True,
        ai_enabled: bool = True,
        available_domains: Optional[List[str]] = None,
        ai_summary_prompt: Optional[str] = None,
        ai_task_prompt: Optional[str] = None,
    ) -> Flow:
        ctx.require(FLOWS_WRITE)
        flow = Flow(
            team_id=ctx.team_id,
            name=name,
            active=active,
            ai_enabled=ai_enabled,
            available_domains=available_domains or [],
            ai_summary_prompt=ai_summary_prompt,
            ai_task_prompt=ai_task_prompt,
        )
        self._store.insert(FLOWS, flow.model_dump(mode="json"))
        logger.info("Created flow %s for team %s", flow.id, ctx.team_id)
        return flow

    def add_input(
        self,
        ctx: TeamContext,
        flow_id: str,
        source_type: SourceType,
        workspace_id: str,
        *,
        connected_account_id: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> FlowInput:
        ctx.require(FLOWS_WRITE)
        self._require_flow(ctx.team_id, flow_id)
        flow_input = FlowInput(
            flow_id=flow_id,
            team_id=ctx.team_id,
            source_type=source_type,
            workspace_id=workspace_id,
            connected_account_id=connected_account_id,
            settings=settings or {},
        )
        self._store.insert(FLOW_INPUTS, flow_input.model_dump(mode="json"))
        return flow_input

    def add_output(
        self,
        ctx: TeamContext,
        flow_id: str,
        *,
        database_id: str,
        name: str = "",
        destination_type: Provider = Provider.NOTION,
        connected_account_id: Optional[str] = None,
        domain_filter: Optional[List[str]] = None,
        is_default: bool = False,
        field_mapping: Optional[Dict[str, Any]] = None,
    ) -> FlowOutput:
        ctx.require(FLOWS_WRITE)
        self._require_flow(ctx.team_id, flow_id)
        settings: Dict[str, Any] = {"database_id": database_id}
        if field_mapping:
            settings["field_mapping"] = field_mapping
        output = FlowOutput(
            flow_id=flow_id,
            team_id=ctx.team_id,
            destination_type=destination_type,
            name=name,
            connected_account_id=connected_account_id,
            domain_filter=domain_filter or [],
            is_default=is_default,
            settings=settings,
        )
        self._store.insert(FLOW_OUTPUTS, output.model_dump(mode="json"))
        return output

    # -- reads -------------------------------------------------------------

    def _require_flow(self, team_id: str, flow_id: str) -> Flow:
        flow = self.get_flow(team_id, flow_id)
        if flow is None:
            raise NotFound(f"flow {flow_id}")
        return flow

    def get_flow(self, team_id: str, flow_id: str) -> Optional[Flow]:
        record = self._store.get(FLOWS, flow_id, team_id=team_id)
        return Flow.model_validate(record) if record else None

    def list_flows(self, team_id: str) -> List[Flow]:
        flows = [Flow.model_validate(r) for r in self._store.find(FLOWS, team_id=team_id)]
        return sorted(flows, key=_creation_order)

    def canonical_flow(self, team_id: str) -> Optional[Flow]:
        """First active flow by creation time, else the first flow"""
        flows = self.list_flows(team_id)
        for flow in flows:
            if flow.active:
                return flow
        return flows[0] if flows else None

    def resolve_input(self, source_type: SourceType, workspace_id: str) -> Optional[FlowInput]:
        """Find the flow input an inbound event belongs to"""
        matches = self._store.find(
            FLOW_INPUTS,
            source_type=SourceType(source_type).value,
            workspace_id=workspace_id,
            active=True,
        )
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                "%d flow inputs match %s workspace %s, using the first",
                len(matches), source_type, workspace_id,
            )
        return FlowInput.model_validate(matches[0])

    def inputs_for(self, flow: Flow) -> List[FlowInput]:
        return [
            FlowInput.model_validate(r)
            for r in self._store.find(FLOW_INPUTS, flow_id=flow.id, team_id=flow.team_id)
        ]

    def outputs_for(self, flow: Flow) -> List[FlowOutput]:
        """Active outputs of a flow, in creation order"""
        return [
            FlowOutput.model_validate(r)
            for r in self._store.find(FLOW_OUTPUTS, flow_id=flow.id, team_id=flow.team_id, active=True)
        ]
