"""
Source Connector

Talks back to the system a discussion came from: reads the full thread
before classification and, once a Job ends, posts the created tasks and
a status marker into the conversation.

Credentials come from the connected account of the flow input that
matched the discussion. Without one, the connector does nothing.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ..common.errors import TriageError
from ..common.schemas import (
    AccountStatus,
    ConnectedAccount,
    Discussion,
    DiscussionStatus,
    DiscussionThread,
    SourceType,
    Task,
)
from .accounts import AccountRegistry
from .flows import FlowConfiguration
from .metrics import OperationMetrics
from .sources.base import SourceAdapter

logger = logging.getLogger("triage.pipeline.connector")

NOTIFY_ERRORS = (TriageError, httpx.HTTPError, asyncio.TimeoutError)


def confirmation_message(tasks: List[Task]) -> str:
    """Reply listing the tasks a Job created"""
    if len(tasks) == 1:
        task = tasks[0]
        lines = [f"Task created: {task.title}"]
        if task.external_url:
            lines.append(task.external_url)
        return "\n".join(lines)

    lines = [f"Created {len(tasks)} tasks:"]
    for number, task in enumerate(tasks, start=1):
        suffix = f" {task.external_url}" if task.external_url else ""
        lines.append(f"{number}. {task.title}{suffix}")
    return "\n".join(lines)


class SourceConnector:
    """
    Reads threads from and reports results to source systems.

    Args:
        flows: Flow configuration, to find the matching input
        accounts: Connected account registry (read only)
        adapters: Source type -> source adapter
        http_client: Shared client; a short-lived one is opened per call otherwise
        timeout: Seconds allowed per source call
        metrics: Operation metrics sink
    """

    def __init__(
        self,
        flows: FlowConfiguration,
        accounts: AccountRegistry,
        adapters: Dict[SourceType, SourceAdapter],
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        metrics: Optional[OperationMetrics] = None,
    ):
        self._flows = flows
        self._accounts = accounts
        self._adapters = adapters
        self._http_client = http_client
        self._timeout = timeout
        self.metrics = metrics or OperationMetrics()

    def account_for(self, discussion: Discussion) -> Optional[ConnectedAccount]:
        """Connected source account for a discussion, if one is usable"""
        flow_input = self._flows.resolve_input(discussion.source_type, discussion.workspace_id)
        if flow_input is None or flow_input.team_id != discussion.team_id:
            return None
        if not flow_input.connected_account_id:
            return None

        account = self._accounts.get_credentials(discussion.team_id, flow_input.connected_account_id)
        if account is None or account.status != AccountStatus.CONNECTED:
            logger.debug("Source account %s is not usable", flow_input.connected_account_id)
            return None
        return account

    async def fetch_thread(self, discussion: Discussion) -> Optional[DiscussionThread]:
        """
        Fetch the discussion's thread, or None when it cannot be read.

        Raises:
            AuthError: the source rejected the stored credential
            TransientError: the source is unreachable
            asyncio.TimeoutError: the source did not answer in time
        """
        adapter = self._adapters.get(discussion.source_type)
        account = self.account_for(discussion)
        if adapter is None or account is None:
            return None

        return await self._call(
            "fetch_thread",
            lambda client: adapter.fetch_thread(account, discussion, client),
        )

    async def notify(
        self,
        discussion: Discussion,
        status: DiscussionStatus,
        tasks: Optional[List[Task]] = None,
    ) -> bool:
        """
        Report a finished run in the source conversation.

        Posts the created tasks as a reply, then marks the source message
        with ``status``. Failures are logged and never raised.

        Returns:
            True if the reply and the status marker were both accepted
        """
        adapter = self._adapters.get(discussion.source_type)
        account = self.account_for(discussion)
        if adapter is None or account is None:
            return False

        try:
            replied = True
            if tasks:
                message = confirmation_message(tasks)
                replied = await self._call(
                    "post_reply",
                    lambda client: adapter.post_reply(account, discussion, message, client),
                )
            marked = await self._call(
                "update_status",
                lambda client: adapter.update_status(account, discussion, status, client),
            )
        except NOTIFY_ERRORS as e:
            logger.warning("Could not notify %s about discussion %s: %s", discussion.source_type.value, discussion.id, e)
            return False

        logger.info(
            "Notified %s about discussion %s (%s, %d task(s))",
            discussion.source_type.value, discussion.id, DiscussionStatus(status).value, len(tasks or []),
        )
        return bool(replied and marked)

    async def _call(self, operation: str, call: Callable[[httpx.AsyncClient], Awaitable[Any]]) -> Any:
        with self.metrics.measure(f"source.{operation}"):
            if self._http_client is not None:
                return await asyncio.wait_for(call(self._http_client), timeout=self._timeout)
            async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout)) as client:
                return await asyncio.wait_for(call(client), timeout=self._timeout)
