"""
Job Orchestrator

Drives one Discussion through classify -> map -> create as a Job with
bounded retries. When the source has a connected account, the whole thread
is read before classification and the outcome is reported back once the
Job ends.

State machine:
    pending -> processing -> completed | retrying | failed
    retrying -> processing

Every transition is a conditional datastore update scoped to the expected
current status, so two executions racing on one Job id cannot both win.
This is the only module that converts exceptions into Job state.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from ..common.errors import (
    RETRYABLE_ERRORS,
    AuthError,
    FatalError,
    JobConflict,
    MappingError,
    NotFound,
    ValidationError,
)
from ..common.schemas import (
    AccountStatus,
    ConnectedAccount,
    DetectedTask,
    Discussion,
    DiscussionStatus,
    Flow,
    FlowOutput,
    Job,
    JobStage,
    JobStatus,
    NormalizedDiscussion,
    Task,
    UserMapping,
    utc_now,
)
from ..common.store import Datastore
from .accounts import AccountRegistry
from .classifier import PromptOverrides, TaskClassifier
from .connector import SourceConnector
from .context import DISCUSSIONS_PROCESS, TeamContext
from .destinations import DestinationAdapter
from .discussions import DiscussionStore
from .field_mapping import FieldMapping, generate_default_mapping, map_task_fields
from .flows import FlowConfiguration, route_task
from .metrics import OperationMetrics
from .sources.base import SourceAdapter, first_line
from .user_mapping import UserIdentityMapper

logger = logging.getLogger("triage.pipeline.orchestrator")

JOBS = "jobs"
TASKS = "tasks"
TASK_UNIQUE_ON = ("discussion_id", "flow_output_id", "task_index")

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.RETRYING, JobStatus.FAILED},
    JobStatus.RETRYING: {JobStatus.PROCESSING},
}

OPEN_STATUSES = (JobStatus.PENDING, JobStatus.RETRYING)


@dataclass
class BackoffPolicy:
    """Exponential delay between attempts, capped at ``max_delay``"""
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failure (1-based)"""
        return min(self.max_delay, self.base_delay * self.factor ** max(0, attempt - 1))


@dataclass
class IngestOutcome:
    """What happened to one inbound event"""
    discussion: Discussion
    created: bool
    job: Optional[Job] = None
    discovered_users: List[UserMapping] = field(default_factory=list)

    @property
    def is_bootstrap(self) -> bool:
        return self.discussion.processing_status == DiscussionStatus.BOOTSTRAP


@dataclass
class _RunState:
    """Results gathered during one execution of a Job"""
    task_ids: List[str] = field(default_factory=list)
    unmapped_fields: List[str] = field(default_factory=list)

    def add_unmapped(self, names: List[str]) -> None:
        for name in names:
            if name not in self.unmapped_fields:
                self.unmapped_fields.append(name)


@dataclass
class _OutputContext:
    """Everything needed to write tasks to one flow output"""
    output: FlowOutput
    account: ConnectedAccount
    destination: DestinationAdapter
    schema: Dict[str, Dict[str, Any]]
    mapping: Dict[str, FieldMapping]


@dataclass
class _PlannedTask:
    index: int
    task: DetectedTask
    target: _OutputContext
    properties: Dict[str, Any]
    field_values: Dict[str, Any]
    unmapped: List[str]


class JobOrchestrator:
    """
    Runs Jobs for ingested discussions.

    Args:
        store: Datastore holding jobs and tasks
        discussions: Discussion store
        flows: Flow configuration
        accounts: Connected account registry (read only)
        classifier: Task classifier
        user_mapper: User identity mapper
        destinations: Provider -> destination adapter
        max_attempts: Attempts per Job before it fails
        backoff: Delay policy between attempts
        destination_timeout: Seconds allowed per destination call
        sleep: Awaitable used to wait out backoff (injectable for tests)
        metrics: Operation metrics sink
        sources: Source connector for thread reads and notifications (optional)
    """

    def __init__(
        self,
        store: Datastore,
        discussions: DiscussionStore,
        flows: FlowConfiguration,
        accounts: AccountRegistry,
        classifier: TaskClassifier,
        user_mapper: UserIdentityMapper,
        destinations: Dict[Any, DestinationAdapter],
        *,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
        destination_timeout: float = 15.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: Optional[OperationMetrics] = None,
        sources: Optional[SourceConnector] = None,
    ):
        self._store = store
        self._discussions = discussions
        self._flows = flows
        self._accounts = accounts
        self._classifier = classifier
        self._user_mapper = user_mapper
        self._destinations = destinations
        self._max_attempts = max_attempts
        self._backoff = backoff or BackoffPolicy()
        self._destination_timeout = destination_timeout
        self._sleep = sleep
        self.metrics = metrics or OperationMetrics()
        self._sources = sources

    # =========================================================================
    # Ingestion
    # =========================================================================

    async def ingest(
        self,
        ctx: TeamContext,
        normalized: NormalizedDiscussion,
        adapter: SourceAdapter,
    ) -> IngestOutcome:
        """
        Store an inbound discussion and queue it for processing.

        A re-delivered event creates nothing. A user-sync comment records the
        users it names as discovered mappings and never becomes a Job.
        """
        result = self._discussions.ingest(ctx, normalized)
        discussion = result.discussion

        if not result.created:
            return IngestOutcome(discussion, created=False, job=self.latest_job(ctx.team_id, discussion.id))

        users = adapter.parse_bootstrap(normalized.content)
        if users:
            discovered = self._user_mapper.record_discovered(
                ctx.team_id, normalized.source_type, normalized.workspace_id, users,
            )
            discussion = self._discussions.set_status(ctx.team_id, discussion.id, DiscussionStatus.BOOTSTRAP)
            return IngestOutcome(discussion, created=True, discovered_users=discovered)

        job = self.create_job(ctx.team_id, discussion.id)
        return IngestOutcome(discussion, created=True, job=job)

    # =========================================================================
    # Job records
    # =========================================================================

    def create_job(self, team_id: str, discussion_id: str, retry_of: Optional[str] = None) -> Job:
        job = Job(
            team_id=team_id,
            discussion_id=discussion_id,
            max_attempts=self._max_attempts,
            retry_of=retry_of,
        )
        self._store.insert(JOBS, job.model_dump(mode="json"))
        logger.info("Created job %s for discussion %s", job.id, discussion_id)
        return job

    def get_job(self, team_id: str, job_id: str) -> Optional[Job]:
        record = self._store.get(JOBS, job_id, team_id=team_id)
        return Job.model_validate(record) if record else None

    def list_jobs(
        self,
        team_id: str,
        status: Optional[JobStatus] = None,
        discussion_id: Optional[str] = None,
    ) -> List[Job]:
        """Jobs of a team in creation order"""
        filters: Dict[str, Any] = {"team_id": team_id}
        if status is not None:
            filters["status"] = JobStatus(status).value
        if discussion_id is not None:
            filters["discussion_id"] = discussion_id
        jobs = [Job.model_validate(r) for r in self._store.find(JOBS, **filters)]
        return sorted(jobs, key=lambda j: j.created_at)

    def latest_job(self, team_id: str, discussion_id: str) -> Optional[Job]:
        jobs = self.list_jobs(team_id, discussion_id=discussion_id)
        return jobs[-1] if jobs else None

    def list_tasks(self, team_id: str, discussion_id: Optional[str] = None) -> List[Task]:
        filters: Dict[str, Any] = {"team_id": team_id}
        if discussion_id is not None:
            filters["discussion_id"] = discussion_id
        return [Task.model_validate(r) for r in self._store.find(TASKS, **filters)]

    def get_stats(self, team_id: Optional[str] = None) -> Dict[str, Any]:
        """Job counts by status plus created task count"""
        filters = {"team_id": team_id} if team_id else {}
        jobs = self._store.find(JOBS, **filters)
        stats: Dict[str, Any] = {status.value: 0 for status in JobStatus}
        for job in jobs:
            stats[job["status"]] = stats.get(job["status"], 0) + 1
        stats["total"] = len(jobs)
        stats["tasks_created"] = self._store.count(TASKS, **filters)
        return stats

    def _transition(self, job: Job, status: JobStatus, **changes: Any) -> Job:
        """
        Move a Job to ``status`` only if it is still in the status we read.

        Raises:
            JobConflict: illegal transition, or another execution got there first
        """
        if status not in ALLOWED_TRANSITIONS.get(job.status, set()):
            raise JobConflict(f"job {job.id} cannot go from {job.status.value} to {status.value}")

        changes["status"] = status.value
        record = self._store.update(
            JOBS, job.id, changes,
            team_id=job.team_id,
            expected={"status": job.status.value},
        )
        if record is None:
            raise JobConflict(f"job {job.id} is no longer {job.status.value}")
        logger.info("Job %s: %s -> %s", job.id, job.status.value, status.value)
        return Job.model_validate(record)

    def _set_stage(self, job: Job, stage: JobStage, **changes: Any) -> Job:
        changes["stage"] = stage.value
        record = self._store.update(
            JOBS, job.id, changes,
            team_id=job.team_id,
            expected={"status": JobStatus.PROCESSING.value},
        )
        if record is None:
            raise JobConflict(f"job {job.id} left processing during {stage.value}")
        logger.debug("Job %s stage %s", job.id, stage.value)
        return Job.model_validate(record)

    @staticmethod
    def _classify_error(error: BaseException) -> bool:
        """True if the error is worth another attempt"""
        return isinstance(error, RETRYABLE_ERRORS + (httpx.TransportError, asyncio.TimeoutError))

    # =========================================================================
    # Execution
    # =========================================================================

    async def run_job(self, team_id: str, job_id: str) -> Job:
        """
        Run a pending or retrying Job until it is completed or failed.

        Retryable failures wait out the backoff and run again while attempts
        remain; anything else fails the Job immediately.

        Raises:
            NotFound: no such Job for this team
            JobConflict: the Job is being run by another execution
        """
        job = self.get_job(team_id, job_id)
        if job is None:
            raise NotFound(f"job {job_id}")
        if job.status.is_terminal:
            return job

        while True:
            job = self._transition(job, JobStatus.PROCESSING, started_at=job.started_at or utc_now())
            state = _RunState()
            started = self.metrics.start()
            try:
                job = await self._execute(job, state)
            except JobConflict:
                raise
            except Exception as e:
                self.metrics.record("job", started, success=False)
                attempts = job.attempts + 1
                retryable = self._classify_error(e)
                changes = {
                    "attempts": attempts,
                    "error": str(e),
                    "task_ids": state.task_ids,
                    "unmapped_fields": state.unmapped_fields,
                }
                if retryable and attempts < job.max_attempts:
                    job = self._transition(job, JobStatus.RETRYING, **changes)
                    delay = self._backoff.delay(attempts)
                    logger.warning(
                        "Job %s attempt %d/%d failed (%s), retrying in %.1fs",
                        job.id, attempts, job.max_attempts, e, delay,
                    )
                    await self._sleep(delay)
                    continue

                job = self._transition(job, JobStatus.FAILED, completed_at=utc_now(), **changes)
                logger.error("Job %s failed after %d attempt(s): %s", job.id, attempts, e)
                self._mark_discussion(job, DiscussionStatus.FAILED)
                await self._notify_source(job, DiscussionStatus.FAILED)
                return job

            self.metrics.record("job", started, success=True)
            job = self._transition(
                job, JobStatus.COMPLETED,
                completed_at=utc_now(),
                error=None,
                task_ids=state.task_ids,
                unmapped_fields=state.unmapped_fields,
            )
            self._mark_discussion(job, DiscussionStatus.COMPLETED)
            await self._notify_source(job, DiscussionStatus.COMPLETED)
            return job

    def _mark_discussion(self, job: Job, status: DiscussionStatus) -> None:
        try:
            self._discussions.set_status(job.team_id, job.discussion_id, status)
        except NotFound:
            logger.warning("Discussion %s of job %s no longer exists", job.discussion_id, job.id)

    async def _notify_source(self, job: Job, status: DiscussionStatus) -> None:
        if self._sources is None:
            return
        discussion = self._discussions.get(job.team_id, job.discussion_id)
        if discussion is None:
            return
        by_id = {t.id: t for t in self.list_tasks(job.team_id, job.discussion_id)}
        tasks = [by_id[task_id] for task_id in job.task_ids if task_id in by_id]
        await self._sources.notify(discussion, status, tasks)

    async def process_discussion(self, ctx: TeamContext, discussion_id: str) -> Job:
        """
        Process a discussion on request.

        Runs the discussion's open Job, returns one already in flight
        unchanged, or creates and runs a new Job.
        """
        ctx.require(DISCUSSIONS_PROCESS)
        discussion = self._discussions.require(ctx.team_id, discussion_id)
        if discussion.processing_status == DiscussionStatus.BOOTSTRAP:
            raise ValidationError(f"discussion {discussion_id} is a user-sync comment")

        jobs = self.list_jobs(ctx.team_id, discussion_id=discussion_id)
        in_flight = [j for j in jobs if j.status == JobStatus.PROCESSING]
        if in_flight:
            return in_flight[-1]

        open_jobs = [j for j in jobs if j.status in OPEN_STATUSES]
        job = open_jobs[-1] if open_jobs else self.create_job(ctx.team_id, discussion_id)
        return await self.run_job(ctx.team_id, job.id)

    async def retry_discussion(self, ctx: TeamContext, discussion_id: str) -> Job:
        """
        Retry a discussion whose latest Job failed.

        The failed Job is left untouched; a new Job pointing at it runs instead.

        Raises:
            NotFound: unknown discussion, or it has no Job yet
            JobConflict: the latest Job has not failed
        """
        ctx.require(DISCUSSIONS_PROCESS)
        self._discussions.require(ctx.team_id, discussion_id)

        latest = self.latest_job(ctx.team_id, discussion_id)
        if latest is None:
            raise NotFound(f"no job for discussion {discussion_id}")
        if latest.status != JobStatus.FAILED:
            raise JobConflict(f"latest job {latest.id} is {latest.status.value}, only failed jobs can be retried")

        job = self.create_job(ctx.team_id, discussion_id, retry_of=latest.id)
        logger.info("Retrying discussion %s: job %s replaces %s", discussion_id, job.id, latest.id)
        return await self.run_job(ctx.team_id, job.id)

    async def _execute(self, job: Job, state: _RunState) -> Job:
        discussion = self._discussions.require(job.team_id, job.discussion_id)
        self._discussions.set_status(job.team_id, discussion.id, DiscussionStatus.PROCESSING)

        # -- classify ---------------------------------------------------------
        flow = self._flows.canonical_flow(job.team_id)
        if flow is None:
            raise FatalError(f"team {job.team_id} has no flow configured")
        job = self._set_stage(job, JobStage.CLASSIFY, flow_id=flow.id)

        if self._sources is not None and discussion.thread is None:
            thread = await self._sources.fetch_thread(discussion)
            if thread is not None:
                discussion = self._discussions.record_thread(job.team_id, discussion.id, thread)

        tasks, domain, summary = await self._detect_tasks(flow, discussion)
        discussion = self._discussions.record_analysis(job.team_id, discussion.id, tasks, domain, summary)
        if not tasks:
            logger.info("No tasks detected in discussion %s", discussion.id)
            return job

        # -- map --------------------------------------------------------------
        job = self._set_stage(job, JobStage.MAP)
        outputs = self._flows.outputs_for(flow)
        if not outputs:
            raise FatalError(f"flow {flow.id} has no active outputs")

        targets: Dict[str, _OutputContext] = {}
        planned: List[_PlannedTask] = []
        for index, task in enumerate(tasks):
            for output in route_task(task.domain or domain, outputs):
                if output.id not in targets:
                    targets[output.id] = await self._prepare_output(job.team_id, output)
                plan = self._plan_task(index, task, targets[output.id], discussion)
                state.add_unmapped(plan.unmapped)
                planned.append(plan)

        # -- create -----------------------------------------------------------
        job = self._set_stage(job, JobStage.CREATE)
        for plan in planned:
            task_record = await self._create_task(job, discussion, plan)
            state.task_ids.append(task_record.id)
        return job

    async def _detect_tasks(
        self, flow: Flow, discussion: Discussion,
    ) -> Tuple[List[DetectedTask], Optional[str], Optional[str]]:
        if not flow.ai_enabled:
            title = discussion.title or first_line(discussion.content) or "Untitled discussion"
            return [DetectedTask(title=title, description=discussion.content)], None, None

        content = (discussion.thread.render() if discussion.thread else "") or discussion.content
        overrides = PromptOverrides(task_prompt=flow.ai_task_prompt, summary_prompt=flow.ai_summary_prompt)
        with self.metrics.measure("classify"):
            result = await self._classifier.classify(
                content, overrides, flow.available_domains,
            )
        return result.detected_tasks, result.domain, result.summary

    async def _prepare_output(self, team_id: str, output: FlowOutput) -> _OutputContext:
        destination = self._destinations.get(output.destination_type)
        if destination is None:
            raise FatalError(f"no destination adapter for {output.destination_type.value}")

        if not output.connected_account_id:
            raise FatalError(f"output {output.name or output.id} has no connected account")
        account = self._accounts.get_credentials(team_id, output.connected_account_id)
        if account is None or account.status != AccountStatus.CONNECTED:
            status = account.status.value if account else "missing"
            raise AuthError(f"account {output.connected_account_id} for output {output.name or output.id} is {status}")

        schema = await self._call_destination(
            "fetch_schema", destination.fetch_schema(account, output.settings),
        )
        configured = output.settings.get("field_mapping")
        if configured:
            mapping = {name: FieldMapping.from_dict(data) for name, data in configured.items()}
        else:
            mapping = generate_default_mapping(schema)
        return _OutputContext(output, account, destination, schema, mapping)

    def _resolve_assignee(self, discussion: Discussion, assignee: Optional[str]) -> Optional[str]:
        if not assignee:
            return None
        handle = assignee.lstrip("@")
        mapping = self._user_mapper.resolve(
            discussion.team_id, discussion.source_type, discussion.workspace_id, handle,
        )
        if (mapping is None or not mapping.is_resolved) and "@" in handle:
            mapping = self._user_mapper.resolve_by_email(discussion.team_id, discussion.source_type, handle)
        if mapping is not None and mapping.is_resolved:
            return mapping.destination_user_id
        return None

    def _plan_task(self, index: int, task: DetectedTask, target: _OutputContext, discussion: Discussion) -> _PlannedTask:
        assignee_id = self._resolve_assignee(discussion, task.assignee)
        mapped = map_task_fields(task.field_values(), target.mapping, target.schema, assignee_id)
        for name in mapped.unmapped:
            logger.warning("Task %d of %s: %s", index, discussion.id, MappingError(name))

        return _PlannedTask(
            index=index,
            task=task,
            target=target,
            properties=target.destination.build_properties(task, mapped.values, target.schema),
            field_values={prop: value for prop, (_, value) in mapped.values.items()},
            unmapped=mapped.unmapped,
        )

    async def _create_task(self, job: Job, discussion: Discussion, plan: _PlannedTask) -> Task:
        """Create one destination record, reusing the Task a previous attempt made"""
        target = plan.target
        existing = self._store.find_one(
            TASKS,
            discussion_id=discussion.id,
            flow_output_id=target.output.id,
            task_index=plan.index,
        )
        if existing:
            logger.info("Task %d of %s already created in %s", plan.index, discussion.id, target.output.id)
            return Task.model_validate(existing)

        created = await self._call_destination(
            "create_task",
            target.destination.create_task(
                target.account, target.output.settings, plan.properties, plan.task, discussion,
            ),
        )
        task = Task(
            team_id=job.team_id,
            discussion_id=discussion.id,
            job_id=job.id,
            flow_output_id=target.output.id,
            task_index=plan.index,
            external_id=created.external_id,
            external_url=created.url,
            title=plan.task.title,
            field_values=plan.field_values,
            unmapped_fields=plan.unmapped,
        )
        record, _ = self._store.insert_unique(TASKS, task.model_dump(mode="json"), unique_on=TASK_UNIQUE_ON)
        return Task.model_validate(record)

    async def _call_destination(self, operation: str, call: Awaitable[Any]) -> Any:
        with self.metrics.measure(f"destination.{operation}"):
            return await asyncio.wait_for(call, timeout=self._destination_timeout)
