"""
Base Source Adapter

Abstract base class for provider-specific inbound event adapters.
Each adapter verifies request authenticity, normalizes a raw event into a
provider-neutral discussion and tests stored credentials. Adapters for
sources with an API also read the surrounding conversation and report
processing results back into it.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ...common.errors import AuthError, TransientError, ValidationError
from ...common.schemas import (
    ConnectedAccount,
    Discussion,
    DiscussionStatus,
    DiscussionThread,
    NormalizedDiscussion,
    SourceType,
)

logger = logging.getLogger("triage.pipeline.sources")

# "<mention-of-bot> User Sync: <mentions>"
BOOTSTRAP_MARKER = re.compile(r"user\s+sync\s*:", re.IGNORECASE)

# Plain @handle, not preceded by a word character (skips email addresses)
PLAIN_MENTION = re.compile(r"(?<![\w.])@([A-Za-z0-9][\w.\-]*)")

RESERVED_HANDLES = {"everyone", "here", "channel"}


@dataclass
class RawRequest:
    """Inbound webhook request as seen by an adapter"""
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "")

    def json(self) -> Dict[str, Any]:
        """Decode the body as a JSON object, raising ValidationError otherwise"""
        try:
            data = json.loads(self.body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError(f"invalid JSON body: {e}")
        if not isinstance(data, dict):
            raise ValidationError("JSON body must be an object")
        return data


@dataclass
class DiscoveredUser:
    """A source-system user found in a bootstrap comment"""
    user_id: str
    name: Optional[str] = None


class SourceAdapter(ABC):
    """
    Abstract base class for source adapters.

    Each adapter must implement:
    - verify_signature: Check the provider's signing scheme
    - normalize: Convert a raw payload to a NormalizedDiscussion
    - test_connection: Check a stored credential against the provider API

    May override, when the source has a conversation API:
    - fetch_thread: Read the whole conversation a discussion belongs to
    - post_reply: Answer in that conversation
    - update_status: Show processing state on the source message
    """

    source_type: SourceType

    def __init__(self, tolerance_seconds: int = 300):
        """
        Initialize adapter.

        Args:
            tolerance_seconds: Maximum age of a signed request timestamp
        """
        self.tolerance_seconds = tolerance_seconds

    @abstractmethod
    def verify_signature(self, request: RawRequest, secret: str) -> bool:
        """
        Verify the webhook signature.

        Args:
            request: Raw body and headers
            secret: Provider signing secret; an empty secret never verifies

        Returns:
            True if the request is authentic
        """

    @abstractmethod
    def normalize(self, payload: Dict[str, Any]) -> Optional[NormalizedDiscussion]:
        """
        Normalize a raw event payload.

        Returns:
            NormalizedDiscussion, or None if the event should be ignored

        Raises:
            ValidationError: payload of a handled event type is malformed
        """

    @abstractmethod
    async def test_connection(
        self,
        account: ConnectedAccount,
        http_client: httpx.AsyncClient,
    ) -> bool:
        """
        Test a stored credential.

        Raises:
            AuthError: provider explicitly rejected the credential
            TransientError: provider unreachable
        """

    async def fetch_thread(
        self,
        account: ConnectedAccount,
        discussion: Discussion,
        http_client: httpx.AsyncClient,
    ) -> Optional[DiscussionThread]:
        """
        Fetch the conversation around a discussion.

        Returns:
            DiscussionThread, or None when the source has no thread to read

        Raises:
            AuthError: provider rejected the credential
            TransientError: provider unreachable or rate limited
        """
        return None

    async def post_reply(
        self,
        account: ConnectedAccount,
        discussion: Discussion,
        message: str,
        http_client: httpx.AsyncClient,
    ) -> bool:
        """Reply in the discussion's conversation; False if nothing was posted"""
        return False

    async def update_status(
        self,
        account: ConnectedAccount,
        discussion: Discussion,
        status: DiscussionStatus,
        http_client: httpx.AsyncClient,
    ) -> bool:
        """Mark the source message with a processing status; False if unsupported"""
        return False

    def handshake(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Response body for provider handshake requests, or None"""
        return None

    def extract_mentions(self, text: str) -> List[DiscoveredUser]:
        """
        Extract user mentions from text.

        Override in subclass for provider mention formats; the default
        understands plain @handles.
        """
        users = []
        for match in PLAIN_MENTION.finditer(text or ""):
            handle = match.group(1).rstrip(".-")
            if handle and handle.lower() not in RESERVED_HANDLES:
                users.append(DiscoveredUser(user_id=handle, name=handle))
        return users

    def parse_bootstrap(self, text: str) -> List[DiscoveredUser]:
        """
        Parse a user-sync comment into discovered users.

        The comment must contain a line with a mention followed by the
        ``User Sync:`` marker. Everything after the marker is parsed for
        mentions; duplicates are dropped, order is kept.
        """
        if not text:
            return []

        offset = 0
        for line in text.splitlines(keepends=True):
            match = BOOTSTRAP_MARKER.search(line)
            if match and self.extract_mentions(line[:match.start()]):
                rest = text[offset + match.end():]
                seen = set()
                users = []
                for user in self.extract_mentions(rest):
                    if user.user_id not in seen:
                        seen.add(user.user_id)
                        users.append(user)
                return users
            offset += len(line)
        return []

    def _check_response(self, response: httpx.Response) -> None:
        """Map provider HTTP failures onto the error taxonomy"""
        if response.status_code in (401, 403):
            raise AuthError(f"{self.source_type.value} rejected credential ({response.status_code})")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"{self.source_type.value} unavailable ({response.status_code})")
        if response.status_code >= 400:
            raise TransientError(f"{self.source_type.value} returned {response.status_code}")

    async def _send(self, http_client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await http_client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransientError(f"{self.source_type.value} unreachable: {e}")
        self._check_response(response)
        return response


def first_line(text: str, limit: int = 80) -> str:
    """First non-empty line of text, truncated for use as a title"""
    for line in (text or "").splitlines():
        line = line.strip()
        if line:
            return line if len(line) <= limit else line[: limit - 3].rstrip() + "..."
    return ""
