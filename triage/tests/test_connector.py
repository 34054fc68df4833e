"""Tests for thread reads and result notifications through source adapters."""

import asyncio
import logging

import pytest
from unittest.mock import AsyncMock, MagicMock

from triage.common.errors import TransientError
from triage.common.schemas import (
    Discussion,
    DiscussionStatus,
    DiscussionThread,
    Provider,
    SourceType,
    Task,
    ThreadMessage,
)
from triage.common.store import Datastore
from triage.pipeline.accounts import ACCOUNTS, AccountRegistry
from triage.pipeline.connector import SourceConnector, confirmation_message
from triage.pipeline.context import TeamContext
from triage.pipeline.flows import FlowConfiguration


def _task(title, url=None, index=0):
    return Task(
        team_id="team1",
        discussion_id="disc_1",
        job_id="job_1",
        flow_output_id="fout_1",
        task_index=index,
        external_id=f"page-{index}",
        external_url=url,
        title=title,
    )


class Setup:
    """Flow input with a connected Slack account and a mocked adapter"""

    def __init__(self, with_account=True):
        self.store = Datastore()
        self.flows = FlowConfiguration(self.store)
        self.accounts = AccountRegistry(self.store, {})
        self.admin = TeamContext(team_id="team1", user_id="u1", role="admin")

        self.account = None
        if with_account:
            self.account = self.accounts.create(self.admin, Provider.SLACK, "Slack", "xoxb-bot-token")
        flow = self.flows.create_flow(self.admin, "Triage")
        self.flows.add_input(
            self.admin, flow.id, SourceType.SLACK, "T1",
            connected_account_id=self.account.id if self.account else None,
        )

        self.adapter = MagicMock()
        self.adapter.fetch_thread = AsyncMock(return_value=None)
        self.adapter.post_reply = AsyncMock(return_value=True)
        self.adapter.update_status = AsyncMock(return_value=True)
        self.connector = SourceConnector(
            self.flows, self.accounts, {SourceType.SLACK: self.adapter},
            http_client=MagicMock(),
            timeout=0.5,
        )
        self.discussion = Discussion(
            team_id="team1",
            source_type=SourceType.SLACK,
            source_dedup_key="C1:1.0:1.0",
            source_thread_id="C1:1.0",
            workspace_id="T1",
            content="<@U1> the export is broken",
        )


class TestConfirmationMessage:
    def test_single_task(self):
        message = confirmation_message([_task("Fix export", "https://notion.test/p1")])
        assert message == "Task created: Fix export\nhttps://notion.test/p1"

    def test_several_tasks_are_numbered(self):
        message = confirmation_message([_task("Fix export", "https://notion.test/p1"), _task("Add test", index=1)])
        assert message.splitlines() == [
            "Created 2 tasks:",
            "1. Fix export https://notion.test/p1",
            "2. Add test",
        ]


class TestAccountFor:
    def test_input_account_is_used(self):
        setup = Setup()
        account = setup.connector.account_for(setup.discussion)
        assert account.id == setup.account.id
        assert account.access_token == "xoxb-bot-token"

    def test_input_without_account(self):
        setup = Setup(with_account=False)
        assert setup.connector.account_for(setup.discussion) is None

    def test_unknown_workspace(self):
        setup = Setup()
        other = setup.discussion.model_copy(update={"workspace_id": "T9"})
        assert setup.connector.account_for(other) is None

    def test_other_team_input_is_not_used(self):
        setup = Setup()
        other = setup.discussion.model_copy(update={"team_id": "team2"})
        assert setup.connector.account_for(other) is None

    def test_revoked_account_is_not_used(self):
        setup = Setup()
        setup.store.update(ACCOUNTS, setup.account.id, {"status": "revoked"}, team_id="team1")
        assert setup.connector.account_for(setup.discussion) is None


class TestFetchThread:
    @pytest.mark.asyncio
    async def test_returns_adapter_thread(self):
        setup = Setup()
        thread = DiscussionThread(root=ThreadMessage(author="U1", text="export is broken"))
        setup.adapter.fetch_thread.return_value = thread

        assert await setup.connector.fetch_thread(setup.discussion) == thread
        account, discussion, _ = setup.adapter.fetch_thread.call_args.args
        assert account.id == setup.account.id
        assert discussion.id == setup.discussion.id

    @pytest.mark.asyncio
    async def test_no_account_means_no_call(self):
        setup = Setup(with_account=False)
        assert await setup.connector.fetch_thread(setup.discussion) is None
        setup.adapter.fetch_thread.assert_not_called()

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        setup = Setup()
        setup.adapter.fetch_thread.side_effect = TransientError("slack unavailable (503)")
        with pytest.raises(TransientError):
            await setup.connector.fetch_thread(setup.discussion)
        assert setup.connector.metrics.summary("source.fetch_thread")["failure"] == 1


class TestNotify:
    @pytest.mark.asyncio
    async def test_reply_then_status(self):
        setup = Setup()
        tasks = [_task("Fix export", "https://notion.test/p1")]

        assert await setup.connector.notify(setup.discussion, DiscussionStatus.COMPLETED, tasks) is True

        _, _, message, _ = setup.adapter.post_reply.call_args.args
        assert message == "Task created: Fix export\nhttps://notion.test/p1"
        _, _, status, _ = setup.adapter.update_status.call_args.args
        assert status == DiscussionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_no_tasks_only_marks_status(self):
        setup = Setup()
        assert await setup.connector.notify(setup.discussion, DiscussionStatus.FAILED) is True
        setup.adapter.post_reply.assert_not_called()
        setup.adapter.update_status.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejected_reply_is_reported(self):
        setup = Setup()
        setup.adapter.post_reply.return_value = False
        assert await setup.connector.notify(setup.discussion, DiscussionStatus.COMPLETED, [_task("x")]) is False
        setup.adapter.update_status.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failures_are_logged_not_raised(self, caplog):
        setup = Setup()
        setup.adapter.post_reply.side_effect = TransientError("slack unavailable (503)")

        with caplog.at_level(logging.WARNING, logger="triage.pipeline.connector"):
            assert await setup.connector.notify(setup.discussion, DiscussionStatus.COMPLETED, [_task("x")]) is False

        assert "Could not notify slack" in caplog.text
        setup.adapter.update_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_is_logged_not_raised(self):
        setup = Setup()

        async def slow(*args):
            await asyncio.sleep(5)

        setup.adapter.update_status.side_effect = slow
        assert await setup.connector.notify(setup.discussion, DiscussionStatus.COMPLETED) is False

    @pytest.mark.asyncio
    async def test_unconnected_source_is_skipped(self):
        setup = Setup(with_account=False)
        assert await setup.connector.notify(setup.discussion, DiscussionStatus.COMPLETED, [_task("x")]) is False
        setup.adapter.post_reply.assert_not_called()
