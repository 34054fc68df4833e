"""
Triage Server

FastAPI server for inbound webhooks and pipeline control.

Endpoints:
- POST /webhooks/{slack,figma,email}: Source webhooks (signature-verified)
- POST /discussions/{id}/process: Trigger processing
- POST /discussions/{id}/retry: Retry failed processing as a new Job
- GET /jobs, /jobs/{id}: Job monitoring
- GET/POST /flows, POST /flows/{id}/inputs, /flows/{id}/outputs: Flow setup
- GET/POST /accounts, POST /accounts/{id}/verify, DELETE /accounts/{id}
- GET /user-mappings, POST /user-mappings/{id}/confirm
- GET /health, /metrics

Pipeline:
1. Verify the webhook signature and answer provider handshakes
2. Normalize the event and resolve the flow input that owns it
3. Store the discussion (duplicates are acknowledged and dropped)
4. Run the Job in the background: classify -> map -> create
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..common.config import TriageConfig, ensure_directories, load_config
from ..common.errors import FatalError, JobConflict, TriageError
from ..common.llm_client import LLMClient
from ..common.schemas import JobStatus, Provider, SourceType
from ..common.store import Datastore
from .accounts import AccountRegistry
from .classifier import TaskClassifier
from .connector import SourceConnector
from .context import TeamContext
from .destinations import DestinationAdapter, NotionDestination
from .discussions import DiscussionStore
from .flows import FlowConfiguration, validate_outputs
from .metrics import OperationMetrics
from .orchestrator import BackoffPolicy, JobOrchestrator
from .sources import SourceAdapter, RawRequest, get_adapter
from .user_mapping import UserIdentityMapper

logger = logging.getLogger("triage.pipeline.server")

ERROR_STATUS = {
    "ValidationError": 400,
    "Unauthorized": 403,
    "NotFound": 404,
    "JobConflict": 409,
}

HEADER_ROLES = ("owner", "admin", "member")


# =============================================================================
# Runtime
# =============================================================================

@dataclass
class Runtime:
    """Wired pipeline components shared by every request"""
    config: TriageConfig
    store: Datastore
    accounts: AccountRegistry
    discussions: DiscussionStore
    flows: FlowConfiguration
    user_mapper: UserIdentityMapper
    classifier: TaskClassifier
    orchestrator: JobOrchestrator
    adapters: Dict[SourceType, SourceAdapter]
    secrets: Dict[SourceType, str]


def build_runtime(
    config: TriageConfig,
    llm: Optional[Any] = None,
    destinations: Optional[Dict[Provider, DestinationAdapter]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Runtime:
    """Wire the pipeline from configuration"""
    pipeline = config.pipeline
    store = Datastore(Path(pipeline.datastore_path) if pipeline.datastore_path else None)

    tolerance = config.sources.signature_tolerance_seconds
    adapters = {source_type: get_adapter(source_type, tolerance) for source_type in SourceType}
    secrets = {
        SourceType.SLACK: config.sources.slack_signing_secret,
        SourceType.FIGMA: config.sources.figma_passcode,
        SourceType.EMAIL: config.sources.email_webhook_secret,
    }

    if destinations is None:
        destinations = {
            Provider.NOTION: NotionDestination(
                http_client=http_client,
                api_url=config.destinations.notion_api_url,
                notion_version=config.destinations.notion_version,
                timeout=pipeline.destination_timeout,
            ),
        }

    testers: Dict[Provider, Any] = {Provider(s.value): adapter for s, adapter in adapters.items()}
    testers.update(destinations)
    accounts = AccountRegistry(store, testers, http_client=http_client)

    if llm is None:
        llm = LLMClient.from_config(config.llm)
    classifier = TaskClassifier(llm, timeout=pipeline.classifier_timeout, max_tasks=pipeline.max_tasks)

    discussions = DiscussionStore(store)
    flows = FlowConfiguration(store)
    user_mapper = UserIdentityMapper(store)
    metrics = OperationMetrics()
    sources = SourceConnector(
        flows, accounts, adapters,
        http_client=http_client,
        timeout=pipeline.destination_timeout,
        metrics=metrics,
    )
    orchestrator = JobOrchestrator(
        store, discussions, flows, accounts, classifier, user_mapper, destinations,
        max_attempts=pipeline.max_attempts,
        backoff=BackoffPolicy(
            base_delay=pipeline.backoff_base_delay,
            factor=pipeline.backoff_factor,
            max_delay=pipeline.backoff_max_delay,
        ),
        destination_timeout=pipeline.destination_timeout,
        metrics=metrics,
        sources=sources,
    )
    return Runtime(
        config=config,
        store=store,
        accounts=accounts,
        discussions=discussions,
        flows=flows,
        user_mapper=user_mapper,
        classifier=classifier,
        orchestrator=orchestrator,
        adapters=adapters,
        secrets=secrets,
    )


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return runtime


def team_context(
    x_team_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> TeamContext:
    """Caller identity from gateway headers"""
    if not x_team_id:
        raise HTTPException(status_code=400, detail="X-Team-Id header required")
    role = (x_user_role or "member").lower()
    if role not in HEADER_ROLES:
        raise HTTPException(status_code=403, detail=f"Unknown role: {role}")
    return TeamContext(team_id=x_team_id, user_id=x_user_id or "", role=role)


# =============================================================================
# Request Models
# =============================================================================

class AccountCreate(BaseModel):
    """Manual credential entry"""
    provider: Provider
    label: str
    token: str = Field(..., min_length=1)
    provider_account_id: str = ""
    refresh_token: Optional[str] = None
    token_expires_at: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    provider_metadata: Dict[str, Any] = Field(default_factory=dict)


class MappingConfirm(BaseModel):
    """Destination user chosen for a mapping"""
    destination_user_id: str = Field(..., min_length=1)
    destination_user_name: Optional[str] = None


class FlowCreate(BaseModel):
    name: str
    active: bool = True
    ai_enabled: bool = True
    available_domains: List[str] = Field(default_factory=list)
    ai_summary_prompt: Optional[str] = None
    ai_task_prompt: Optional[str] = None


class FlowInputCreate(BaseModel):
    source_type: SourceType
    workspace_id: str
    connected_account_id: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)


class FlowOutputCreate(BaseModel):
    database_id: str
    name: str = ""
    destination_type: Provider = Provider.NOTION
    connected_account_id: Optional[str] = None
    domain_filter: List[str] = Field(default_factory=list)
    is_default: bool = False
    field_mapping: Optional[Dict[str, Any]] = None


# =============================================================================
# Background Tasks
# =============================================================================

async def run_job_in_background(runtime: Runtime, team_id: str, job_id: str) -> None:
    """Run a Job created by a webhook delivery"""
    try:
        job = await runtime.orchestrator.run_job(team_id, job_id)
    except JobConflict as e:
        logger.info("Job %s picked up elsewhere: %s", job_id, e)
        return
    logger.info("Job %s finished %s (%d task(s))", job.id, job.status.value, len(job.task_ids))


# =============================================================================
# Endpoints
# =============================================================================

router = APIRouter()


async def _handle_webhook(
    source_type: SourceType,
    request: Request,
    background_tasks: BackgroundTasks,
    runtime: Runtime,
) -> JSONResponse:
    adapter = runtime.adapters[source_type]
    raw = RawRequest(body=await request.body(), headers=dict(request.headers))

    if not adapter.verify_signature(raw, runtime.secrets.get(source_type, "")):
        logger.warning("Rejected %s webhook: invalid signature", source_type.value)
        raise HTTPException(status_code=401, detail="Invalid signature")

    payload = raw.json()

    handshake = adapter.handshake(payload)
    if handshake is not None:
        return JSONResponse(handshake)

    normalized = adapter.normalize(payload)
    if normalized is None:
        return JSONResponse({"ok": True, "ignored": True})

    flow_input = runtime.flows.resolve_input(source_type, normalized.workspace_id)
    if flow_input is None:
        logger.info("No flow input for %s workspace %s", source_type.value, normalized.workspace_id)
        return JSONResponse({"ok": True, "ignored": True})

    ctx = TeamContext.system(flow_input.team_id)
    outcome = await runtime.orchestrator.ingest(ctx, normalized, adapter)

    if outcome.created and outcome.job is not None:
        # Acknowledge now; providers retry deliveries that respond slowly
        background_tasks.add_task(run_job_in_background, runtime, ctx.team_id, outcome.job.id)

    return JSONResponse({
        "ok": True,
        "discussion_id": outcome.discussion.id,
        "created": outcome.created,
        "bootstrap": outcome.is_bootstrap,
        "job_id": outcome.job.id if outcome.job else None,
        "discovered_users": len(outcome.discovered_users),
    })


@router.post("/webhooks/slack")
async def slack_webhook(request: Request, background_tasks: BackgroundTasks, runtime: Runtime = Depends(get_runtime)):
    """Slack Events API (app mentions and direct messages)"""
    return await _handle_webhook(SourceType.SLACK, request, background_tasks, runtime)


@router.post("/webhooks/figma")
async def figma_webhook(request: Request, background_tasks: BackgroundTasks, runtime: Runtime = Depends(get_runtime)):
    """Figma FILE_COMMENT webhooks"""
    return await _handle_webhook(SourceType.FIGMA, request, background_tasks, runtime)


@router.post("/webhooks/email")
async def email_webhook(request: Request, background_tasks: BackgroundTasks, runtime: Runtime = Depends(get_runtime)):
    """Inbound forwarded email"""
    return await _handle_webhook(SourceType.EMAIL, request, background_tasks, runtime)


@router.post("/discussions/{discussion_id}/process")
async def process_discussion(
    discussion_id: str,
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    """Process a discussion now and return the resulting Job"""
    job = await runtime.orchestrator.process_discussion(ctx, discussion_id)
    return job.model_dump(mode="json")


@router.post("/discussions/{discussion_id}/retry")
async def retry_discussion(
    discussion_id: str,
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    """Retry a failed discussion as a new Job"""
    job = await runtime.orchestrator.retry_discussion(ctx, discussion_id)
    return job.model_dump(mode="json")


def _job_view(job) -> Dict[str, Any]:
    view = job.model_dump(mode="json")
    view["can_retry"] = job.status == JobStatus.FAILED
    return view


@router.get("/jobs")
async def list_jobs(
    status: Optional[JobStatus] = None,
    discussion_id: Optional[str] = None,
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    jobs = runtime.orchestrator.list_jobs(ctx.team_id, status=status, discussion_id=discussion_id)
    return {"count": len(jobs), "jobs": [_job_view(j) for j in jobs]}


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    job = runtime.orchestrator.get_job(ctx.team_id, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_view(job)


def _flow_view(runtime: Runtime, flow) -> Dict[str, Any]:
    outputs = runtime.flows.outputs_for(flow)
    try:
        issues = validate_outputs(outputs)
    except FatalError as e:
        issues = [e.message]
    return {
        **flow.model_dump(mode="json"),
        "inputs": [i.model_dump(mode="json") for i in runtime.flows.inputs_for(flow)],
        "outputs": [o.model_dump(mode="json") for o in outputs],
        "issues": issues,
    }


@router.get("/flows")
async def list_flows(ctx: TeamContext = Depends(team_context), runtime: Runtime = Depends(get_runtime)):
    """Team flows with their inputs, outputs and configuration issues"""
    return {"flows": [_flow_view(runtime, flow) for flow in runtime.flows.list_flows(ctx.team_id)]}


@router.post("/flows")
async def create_flow(
    body: FlowCreate,
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    flow = runtime.flows.create_flow(ctx, **body.model_dump())
    return flow.model_dump(mode="json")


@router.post("/flows/{flow_id}/inputs")
async def add_flow_input(
    flow_id: str,
    body: FlowInputCreate,
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    flow_input = runtime.flows.add_input(
        ctx, flow_id, body.source_type, body.workspace_id,
        connected_account_id=body.connected_account_id,
        settings=body.settings,
    )
    return flow_input.model_dump(mode="json")


@router.post("/flows/{flow_id}/outputs")
async def add_flow_output(
    flow_id: str,
    body: FlowOutputCreate,
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    output = runtime.flows.add_output(ctx, flow_id, **body.model_dump())
    return output.model_dump(mode="json")


@router.get("/accounts")
async def list_accounts(ctx: TeamContext = Depends(team_context), runtime: Runtime = Depends(get_runtime)):
    return {"accounts": [a.model_dump(mode="json") for a in runtime.accounts.list(ctx)]}


@router.post("/accounts")
async def create_account(
    body: AccountCreate,
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    account = runtime.accounts.create(
        ctx, body.provider, body.label, body.token,
        provider_account_id=body.provider_account_id,
        refresh_token=body.refresh_token,
        token_expires_at=body.token_expires_at,
        scopes=body.scopes,
        provider_metadata=body.provider_metadata,
    )
    return account.model_dump(mode="json")


@router.post("/accounts/{account_id}/verify")
async def verify_account(
    account_id: str,
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    result = await runtime.accounts.verify(ctx, account_id)
    return {"success": result.success, "status": result.status.value, "error": result.error}


@router.delete("/accounts/{account_id}")
async def delete_account(
    account_id: str,
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    if not runtime.accounts.delete(ctx, account_id):
        raise HTTPException(status_code=404, detail="Account not found")
    return {"status": "deleted", "account_id": account_id}


@router.get("/user-mappings")
async def list_user_mappings(
    unresolved: bool = False,
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    mappings = runtime.user_mapper.list(ctx.team_id, unresolved_only=unresolved)
    return {"count": len(mappings), "mappings": [m.model_dump(mode="json") for m in mappings]}


@router.post("/user-mappings/{mapping_id}/confirm")
async def confirm_user_mapping(
    mapping_id: str,
    body: MappingConfirm,
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    mapping = runtime.user_mapper.confirm(ctx, mapping_id, body.destination_user_id, body.destination_user_name)
    return mapping.model_dump(mode="json")


@router.get("/health")
async def health(request: Request):
    """Health check endpoint"""
    runtime: Optional[Runtime] = getattr(request.app.state, "runtime", None)
    return {
        "status": "healthy",
        "service": "triage",
        "initialized": runtime is not None,
        "classifier_available": runtime.classifier.is_available if runtime else False,
        "sources": [s.value for s in runtime.adapters] if runtime else [],
    }


@router.get("/metrics")
async def metrics(
    ctx: TeamContext = Depends(team_context),
    runtime: Runtime = Depends(get_runtime),
):
    """The caller team's job counts plus process-wide operation timings"""
    return {
        "jobs": runtime.orchestrator.get_stats(ctx.team_id),
        "operations": runtime.orchestrator.metrics.summary(),
    }


async def triage_error_handler(request: Request, exc: TriageError) -> JSONResponse:
    status_code = ERROR_STATUS.get(exc.kind, 500)
    if status_code == 500:
        logger.error("Unhandled %s on %s: %s", exc.kind, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.kind, "detail": exc.message})


# =============================================================================
# Application
# =============================================================================

def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        runtime: Pre-wired components (default: built from config at startup)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize components on startup"""
        print("[Triage] Starting up...")
        if getattr(app.state, "runtime", None) is None:
            ensure_directories()
            config = load_config()
            app.state.runtime = build_runtime(config)
            print(f"[Triage] Loaded config (provider: {config.llm.provider})")

        current = app.state.runtime
        if current.classifier.is_available:
            print("[Triage] Classifier ready")
        else:
            print("[Triage] Classifier not available (flows with AI enabled will fail)")
        for source_type, secret in current.secrets.items():
            if not secret:
                print(f"[Triage] Warning: no {source_type.value} webhook secret, deliveries will be rejected")
        print("[Triage] Ready to receive events")

        yield

        print("[Triage] Shutting down...")

    app = FastAPI(
        title="Triage",
        description="Turns team conversations into tracker tasks",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.include_router(router)
    app.add_exception_handler(TriageError, triage_error_handler)
    return app


app = create_app()


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the Triage server"""
    import uvicorn

    config = load_config()
    logging.basicConfig(
        level=config.server.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print(f"[Triage] Starting server on {config.server.host}:{config.server.port}")
    uvicorn.run(
        "triage.pipeline.server:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
