"""
Slack Adapter

Handles Slack Events API webhooks and normalizes bot mentions and direct
messages into discussions.
"""

import hmac
import hashlib
import logging
import re
import time
from typing import Optional, Dict, Any, List

import httpx

from ...common.errors import AuthError, TransientError, ValidationError
from ...common.schemas import (
    ConnectedAccount,
    Discussion,
    DiscussionStatus,
    DiscussionThread,
    NormalizedDiscussion,
    SourceType,
    ThreadMessage,
)
from .base import SourceAdapter, RawRequest, DiscoveredUser, first_line

logger = logging.getLogger("triage.pipeline.sources.slack")

SLACK_API_URL = "https://slack.com/api"

# <@U12345678> or <@U12345678|alice>
SLACK_MENTION = re.compile(r"<@([UW][A-Z0-9]+)(?:\|([^>]+))?>")

AUTH_ERROR_CODES = {"invalid_auth", "not_authed", "token_revoked", "token_expired", "account_inactive"}

# reaction names, without colons
STATUS_REACTIONS = {
    DiscussionStatus.PENDING: "eyes",
    DiscussionStatus.PROCESSING: "hourglass_flowing_sand",
    DiscussionStatus.ANALYZED: "robot_face",
    DiscussionStatus.COMPLETED: "white_check_mark",
    DiscussionStatus.FAILED: "x",
}

THREAD_PAGE_SIZE = 100


class SlackAdapter(SourceAdapter):
    """
    Adapter for Slack Events API webhooks.

    Processes:
    - app_mention events (the bot is mentioned in a channel or thread)
    - message events in direct messages with the bot

    Ignores:
    - Bot messages and message subtypes (edits, joins, deletions)
    - Event types other than the above
    """

    source_type = SourceType.SLACK

    def __init__(self, tolerance_seconds: int = 300, clock=time.time):
        super().__init__(tolerance_seconds)
        self._clock = clock

    def verify_signature(self, request: RawRequest, secret: str) -> bool:
        """
        Verify Slack request signature.

        Slack signs ``v0:{timestamp}:{body}`` with HMAC-SHA256 and sends it
        as ``X-Slack-Signature: v0=<hex>`` alongside
        ``X-Slack-Request-Timestamp``.
        """
        if not secret:
            logger.warning("Slack signing secret not configured, rejecting request")
            return False

        signature = request.header("x-slack-signature")
        timestamp = request.header("x-slack-request-timestamp")
        if not signature or not timestamp:
            return False

        # Replay protection
        try:
            if abs(self._clock() - int(timestamp)) > self.tolerance_seconds:
                return False
        except ValueError:
            return False

        sig_basestring = f"v0:{timestamp}:".encode("utf-8") + request.body
        expected_sig = "v0=" + hmac.new(
            secret.encode("utf-8"),
            sig_basestring,
            hashlib.sha256
        ).hexdigest()

        return hmac.compare_digest(expected_sig, signature)

    def handshake(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Echo the challenge for URL verification"""
        if payload.get("type") == "url_verification":
            return {"challenge": payload.get("challenge")}
        return None

    def normalize(self, payload: Dict[str, Any]) -> Optional[NormalizedDiscussion]:
        if payload.get("type") != "event_callback":
            return None

        event = payload.get("event") or {}
        if not self._is_relevant(event):
            return None

        channel = event.get("channel")
        ts = event.get("ts")
        team_id = payload.get("team_id") or event.get("team")
        if not channel or not ts or not team_id:
            raise ValidationError("Slack event missing channel, ts or team_id")

        text = event.get("text", "")
        user = event.get("user", "")
        thread_ts = event.get("thread_ts") or ts
        mentioned = [u.user_id for u in self.extract_mentions(text)]
        participants = [user] + [m for m in mentioned if m != user] if user else mentioned

        return NormalizedDiscussion(
            source_type=SourceType.SLACK,
            source_dedup_key=f"{channel}:{thread_ts}:{ts}",
            source_thread_id=f"{channel}:{thread_ts}",
            workspace_id=team_id,
            title=first_line(self._clean_text(text)) or "Slack discussion",
            content=text,
            author_handle=user,
            participants=participants,
            source_url=f"https://slack.com/archives/{channel}/p{ts.replace('.', '')}",
            metadata={
                "slack_team_id": team_id,
                "channel_id": channel,
                "thread_ts": thread_ts,
                "event_id": payload.get("event_id"),
                "event_type": event.get("type"),
            },
            raw_payload=payload,
        )

    def _is_relevant(self, event: Dict[str, Any]) -> bool:
        if event.get("bot_id") or event.get("subtype"):
            return False
        if event.get("type") == "app_mention":
            return True
        return event.get("type") == "message" and event.get("channel_type") == "im"

    def _clean_text(self, text: str) -> str:
        """Replace mention markup with readable handles"""
        return SLACK_MENTION.sub(lambda m: f"@{m.group(2) or m.group(1)}", text or "")

    def extract_mentions(self, text: str) -> List[DiscoveredUser]:
        """Slack ``<@U123>`` mentions, falling back to plain @handles"""
        users = [
            DiscoveredUser(user_id=m.group(1), name=m.group(2))
            for m in SLACK_MENTION.finditer(text or "")
        ]
        if users:
            return users
        return super().extract_mentions(text)

    async def test_connection(
        self,
        account: ConnectedAccount,
        http_client: httpx.AsyncClient,
    ) -> bool:
        """Call auth.test with the stored bot token"""
        response = await self._send(
            http_client,
            "POST",
            f"{SLACK_API_URL}/auth.test",
            headers={"Authorization": f"Bearer {account.access_token}"},
        )
        data = response.json()
        if data.get("ok"):
            return True

        error = data.get("error", "unknown_error")
        if error in AUTH_ERROR_CODES:
            raise AuthError(f"slack auth.test failed: {error}")
        raise TransientError(f"slack auth.test failed: {error}")

    async def fetch_thread(
        self,
        account: ConnectedAccount,
        discussion: Discussion,
        http_client: httpx.AsyncClient,
    ) -> Optional[DiscussionThread]:
        """Read the thread with conversations.replies; bot messages are skipped"""
        channel, thread_ts = self._thread_ref(discussion)
        response = await self._send(
            http_client,
            "GET",
            f"{SLACK_API_URL}/conversations.replies",
            headers={"Authorization": f"Bearer {account.access_token}"},
            params={"channel": channel, "ts": thread_ts, "limit": THREAD_PAGE_SIZE},
        )
        data = response.json()
        if not data.get("ok"):
            error = data.get("error", "unknown_error")
            if error in AUTH_ERROR_CODES:
                raise AuthError(f"slack conversations.replies failed: {error}")
            if error == "ratelimited":
                raise TransientError("slack conversations.replies rate limited")
            logger.warning("Cannot read Slack thread %s:%s: %s", channel, thread_ts, error)
            return None

        messages = [
            ThreadMessage(author=m.get("user", ""), text=m.get("text", ""), timestamp=m.get("ts"))
            for m in data.get("messages") or []
            if not m.get("bot_id")
        ]
        if not messages:
            return None
        if data.get("has_more"):
            logger.info("Slack thread %s:%s has more than %d messages", channel, thread_ts, THREAD_PAGE_SIZE)

        participants = []
        for message in messages:
            if message.author and message.author not in participants:
                participants.append(message.author)
        return DiscussionThread(root=messages[0], replies=messages[1:], participants=participants)

    async def post_reply(
        self,
        account: ConnectedAccount,
        discussion: Discussion,
        message: str,
        http_client: httpx.AsyncClient,
    ) -> bool:
        """Threaded chat.postMessage under the discussion's root message"""
        channel, thread_ts = self._thread_ref(discussion)
        response = await self._send(
            http_client,
            "POST",
            f"{SLACK_API_URL}/chat.postMessage",
            headers={"Authorization": f"Bearer {account.access_token}"},
            json={"channel": channel, "text": message, "thread_ts": thread_ts},
        )
        return self._api_ok(response, "chat.postMessage")

    async def update_status(
        self,
        account: ConnectedAccount,
        discussion: Discussion,
        status: DiscussionStatus,
        http_client: httpx.AsyncClient,
    ) -> bool:
        """Add the status reaction to the thread's root message"""
        reaction = STATUS_REACTIONS.get(DiscussionStatus(status))
        if reaction is None:
            return False

        channel, thread_ts = self._thread_ref(discussion)
        response = await self._send(
            http_client,
            "POST",
            f"{SLACK_API_URL}/reactions.add",
            headers={"Authorization": f"Bearer {account.access_token}"},
            json={"channel": channel, "timestamp": thread_ts, "name": reaction},
        )
        return self._api_ok(response, "reactions.add", tolerated={"already_reacted"})

    def _thread_ref(self, discussion: Discussion):
        """(channel, thread_ts) of a Slack discussion"""
        channel = discussion.metadata.get("channel_id")
        thread_ts = discussion.metadata.get("thread_ts")
        if not channel or not thread_ts:
            channel, _, thread_ts = discussion.source_thread_id.partition(":")
        if not channel or not thread_ts:
            raise ValidationError(f"discussion {discussion.id} has no Slack thread reference")
        return channel, thread_ts

    def _api_ok(self, response: httpx.Response, method: str, tolerated=frozenset()) -> bool:
        data = response.json()
        error = data.get("error")
        if data.get("ok") or error in tolerated:
            return True
        logger.warning("Slack %s failed: %s", method, error or "unknown_error")
        return False
