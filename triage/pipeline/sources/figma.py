"""
Figma Adapter

Handles Figma FILE_COMMENT webhooks (design-review comments).

Figma does not sign webhook bodies; instead every delivery carries the
passcode chosen when the webhook was registered.
"""

import hmac
import json
import logging
import re
from typing import Optional, Dict, Any, List

import httpx

from ...common.errors import ValidationError
from ...common.schemas import (
    ConnectedAccount,
    Discussion,
    DiscussionStatus,
    DiscussionThread,
    NormalizedDiscussion,
    SourceType,
    ThreadMessage,
)
from .base import SourceAdapter, RawRequest, DiscoveredUser, RESERVED_HANDLES, first_line

logger = logging.getLogger("triage.pipeline.sources.figma")

FIGMA_API_URL = "https://api.figma.com/v1"

# @Name (id)  e.g. "@Jane Doe (1234567890)" or with a uuid
NAMED_MENTION = re.compile(r"@([^@()\n]+?)\s*\(([A-Za-z0-9\-:]+)\)")
# @[id:name]
BRACKET_MENTION = re.compile(r"@\[([^:\]]+):([^\]]+)\]")

STATUS_EMOJI = {
    DiscussionStatus.PENDING: ":eyes:",
    DiscussionStatus.PROCESSING: ":hourglass:",
    DiscussionStatus.ANALYZED: ":robot:",
    DiscussionStatus.COMPLETED: ":white_check_mark:",
    DiscussionStatus.FAILED: ":x:",
}


class FigmaAdapter(SourceAdapter):
    """
    Adapter for Figma webhooks.

    Processes:
    - FILE_COMMENT events (new comments and replies on a design file)

    Answers:
    - PING (sent by Figma when the webhook is created)
    """

    source_type = SourceType.FIGMA

    def verify_signature(self, request: RawRequest, secret: str) -> bool:
        """Compare the body's ``passcode`` to the registered passcode"""
        if not secret:
            logger.warning("Figma webhook passcode not configured, rejecting request")
            return False

        try:
            payload = json.loads(request.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return False
        if not isinstance(payload, dict):
            return False

        passcode = str(payload.get("passcode") or "")
        return bool(passcode) and hmac.compare_digest(passcode.encode("utf-8"), secret.encode("utf-8"))

    def handshake(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if payload.get("event_type") == "PING":
            return {"ok": True}
        return None

    def normalize(self, payload: Dict[str, Any]) -> Optional[NormalizedDiscussion]:
        if payload.get("event_type") != "FILE_COMMENT":
            return None

        file_key = payload.get("file_key")
        comment_id = payload.get("comment_id")
        webhook_id = payload.get("webhook_id")
        if not file_key or not comment_id or not webhook_id:
            raise ValidationError("Figma comment missing file_key, comment_id or webhook_id")

        text = self._render_comment(payload)
        if not text.strip():
            raise ValidationError("Figma comment has no text")

        author = payload.get("triggered_by") or {}
        parent_id = payload.get("parent_id") or comment_id
        file_name = payload.get("file_name") or file_key
        mentioned = [u.user_id for u in self.extract_mentions(text)]
        author_id = str(author.get("id") or "")

        return NormalizedDiscussion(
            source_type=SourceType.FIGMA,
            source_dedup_key=f"{file_key}:{comment_id}",
            source_thread_id=f"{file_key}:{parent_id}",
            workspace_id=str(webhook_id),
            title=f"{file_name}: {first_line(self._strip_mentions(text), 60)}",
            content=text,
            author_handle=author.get("handle") or author_id,
            participants=[p for p in [author_id] + mentioned if p],
            source_url=f"https://www.figma.com/file/{file_key}#{comment_id}",
            metadata={
                "file_key": file_key,
                "file_name": file_name,
                "comment_id": comment_id,
                "parent_id": parent_id,
                "webhook_id": webhook_id,
            },
            raw_payload=payload,
        )

    def _render_comment(self, payload: Dict[str, Any]) -> str:
        """Join comment fragments, rendering mentions as ``@[id:handle]``"""
        handles = {
            str(m.get("id")): m.get("handle") or str(m.get("id"))
            for m in payload.get("mentions") or []
        }
        parts = []
        for fragment in payload.get("comment") or []:
            if "text" in fragment:
                parts.append(fragment["text"])
            elif "mention" in fragment:
                user_id = str(fragment["mention"])
                parts.append(f"@[{user_id}:{handles.get(user_id, user_id)}]")
        return "".join(parts)

    def _strip_mentions(self, text: str) -> str:
        text = BRACKET_MENTION.sub(lambda m: f"@{m.group(2)}", text)
        return NAMED_MENTION.sub(lambda m: f"@{m.group(1).strip()}", text)

    def extract_mentions(self, text: str) -> List[DiscoveredUser]:
        """
        Extract mentions in the three formats Figma comments arrive in.

        ``@Name (id)`` and ``@[id:name]`` carry user ids; plain ``@handle`` is
        only used when neither structured format is present.
        """
        text = text or ""
        users = [
            DiscoveredUser(user_id=m.group(2), name=m.group(1).strip())
            for m in NAMED_MENTION.finditer(text)
        ]
        users += [
            DiscoveredUser(user_id=m.group(1).strip(), name=m.group(2).strip())
            for m in BRACKET_MENTION.finditer(text)
        ]
        users = [u for u in users if u.user_id.lower() not in RESERVED_HANDLES]
        if users:
            return users
        return super().extract_mentions(text)

    async def test_connection(
        self,
        account: ConnectedAccount,
        http_client: httpx.AsyncClient,
    ) -> bool:
        """Fetch the token owner's profile"""
        await self._send(
            http_client,
            "GET",
            f"{FIGMA_API_URL}/me",
            headers={"X-Figma-Token": account.access_token},
        )
        return True

    async def fetch_thread(
        self,
        account: ConnectedAccount,
        discussion: Discussion,
        http_client: httpx.AsyncClient,
    ) -> Optional[DiscussionThread]:
        """
        Rebuild a comment thread from the file's comment list.

        The root is the comment the discussion's thread points at; replies
        are the comments whose parent is that root, oldest first.
        """
        file_key, root_id = self._thread_ref(discussion)
        response = await self._send(
            http_client,
            "GET",
            f"{FIGMA_API_URL}/files/{file_key}/comments",
            headers={"X-Figma-Token": account.access_token},
        )
        comments = response.json().get("comments") or []

        root = next((c for c in comments if str(c.get("id")) == root_id), None)
        if root is None:
            logger.warning("Figma comment %s not found in file %s", root_id, file_key)
            return None
        replies = sorted(
            (c for c in comments if str(c.get("parent_id") or "") == root_id),
            key=lambda c: c.get("created_at") or "",
        )

        participants = []
        for comment in [root] + replies:
            user_id = str((comment.get("user") or {}).get("id") or "")
            if user_id and user_id not in participants:
                participants.append(user_id)
        return DiscussionThread(
            root=self._thread_message(root),
            replies=[self._thread_message(c) for c in replies],
            participants=participants,
        )

    async def post_reply(
        self,
        account: ConnectedAccount,
        discussion: Discussion,
        message: str,
        http_client: httpx.AsyncClient,
    ) -> bool:
        """Reply to the root comment of the discussion's thread"""
        file_key, root_id = self._thread_ref(discussion)
        await self._send(
            http_client,
            "POST",
            f"{FIGMA_API_URL}/files/{file_key}/comments",
            headers={"X-Figma-Token": account.access_token},
            json={"message": message, "comment_id": root_id},
        )
        return True

    async def update_status(
        self,
        account: ConnectedAccount,
        discussion: Discussion,
        status: DiscussionStatus,
        http_client: httpx.AsyncClient,
    ) -> bool:
        """React to the root comment with the status emoji"""
        emoji = STATUS_EMOJI.get(DiscussionStatus(status))
        if emoji is None:
            return False

        file_key, root_id = self._thread_ref(discussion)
        await self._send(
            http_client,
            "POST",
            f"{FIGMA_API_URL}/files/{file_key}/comments/{root_id}/reactions",
            headers={"X-Figma-Token": account.access_token},
            json={"emoji": emoji},
        )
        return True

    def _thread_ref(self, discussion: Discussion):
        file_key = discussion.metadata.get("file_key")
        root_id = discussion.metadata.get("parent_id") or discussion.metadata.get("comment_id")
        if not file_key or not root_id:
            file_key, _, root_id = discussion.source_thread_id.partition(":")
        if not file_key or not root_id:
            raise ValidationError(f"discussion {discussion.id} has no Figma comment reference")
        return file_key, str(root_id)

    def _thread_message(self, comment: Dict[str, Any]) -> ThreadMessage:
        user = comment.get("user") or {}
        return ThreadMessage(
            author=user.get("handle") or str(user.get("id") or ""),
            text=comment.get("message") or "",
            timestamp=comment.get("created_at"),
        )
