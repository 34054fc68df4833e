"""
Email Adapter

Handles inbound forwarded email delivered by a Svix-signed webhook
(Resend inbound routing). Each team forwards to its own inbound address,
which is the workspace id a flow input matches on.

Email has no conversation API: threads are not fetched and results are
not reported back to the sender.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import re
import time
from html import unescape
from typing import Optional, Dict, Any, List

import httpx

from ...common.errors import AuthError, ValidationError
from ...common.schemas import ConnectedAccount, NormalizedDiscussion, SourceType
from .base import SourceAdapter, RawRequest, first_line

logger = logging.getLogger("triage.pipeline.sources.email")

SUBJECT_PREFIX = re.compile(r"^\s*((fwd?|fw|re)\s*:\s*)+", re.IGNORECASE)
FORWARD_SEPARATOR = re.compile(
    r"^-{2,}\s*(forwarded message|original message)\s*-{2,}\s*$",
    re.IGNORECASE | re.MULTILINE,
)
ADDRESS = re.compile(r"<?([\w.+\-]+@[\w\-]+(?:\.[\w\-]+)+)>?")
HTML_TAG = re.compile(r"<[^>]+>")
HTML_BREAK = re.compile(r"<\s*(br|/p|/div|/li)\s*/?>", re.IGNORECASE)

# Figma comment notifications: comments-<FILE_KEY>@email.figma.com
FIGMA_SENDER = re.compile(r"comments-([A-Za-z0-9]+)@", re.IGNORECASE)
FIGMA_FILE_URL = re.compile(r"figma\.com/(?:file|design|proto|board)/([A-Za-z0-9]+)")


class EmailAdapter(SourceAdapter):
    """
    Adapter for inbound forwarded email.

    Processes:
    - email.received events

    Notes:
    - Forwarding headers are stripped from the subject
    - HTML-only bodies are reduced to text
    - Figma comment notifications are tagged with their file key
    """

    source_type = SourceType.EMAIL

    def __init__(self, tolerance_seconds: int = 300, clock=time.time):
        super().__init__(tolerance_seconds)
        self._clock = clock

    def verify_signature(self, request: RawRequest, secret: str) -> bool:
        """
        Verify a Svix signature.

        Signed content is ``{svix-id}.{svix-timestamp}.{body}``; the header
        holds one or more space-separated ``v1,<base64 sig>`` entries.
        """
        if not secret:
            logger.warning("Email webhook secret not configured, rejecting request")
            return False

        msg_id = request.header("svix-id")
        timestamp = request.header("svix-timestamp")
        signature_header = request.header("svix-signature")
        if not msg_id or not timestamp or not signature_header:
            return False

        try:
            if abs(self._clock() - int(timestamp)) > self.tolerance_seconds:
                return False
        except ValueError:
            return False

        try:
            key = self._decode_secret(secret)
        except (binascii.Error, ValueError):
            logger.warning("Email webhook secret is not valid base64")
            return False

        signed = f"{msg_id}.{timestamp}.".encode("utf-8") + request.body
        expected = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode()

        for entry in signature_header.split():
            version, _, sig = entry.partition(",")
            if version == "v1" and hmac.compare_digest(sig, expected):
                return True
        return False

    @staticmethod
    def _decode_secret(secret: str) -> bytes:
        if secret.startswith("whsec_"):
            return base64.b64decode(secret[len("whsec_"):], validate=True)
        return secret.encode("utf-8")

    def normalize(self, payload: Dict[str, Any]) -> Optional[NormalizedDiscussion]:
        if payload.get("type") not in ("email.received", "inbound.email"):
            return None

        data = payload.get("data") or {}
        sender = self._address(data.get("from"))
        recipients = self._recipients(data.get("to"))
        if not sender or not recipients:
            raise ValidationError("email missing from or to address")

        body = self._body(data)
        if not body.strip():
            raise ValidationError("email has no body")

        headers = self._headers(data.get("headers"))
        message_id = (headers.get("message-id") or data.get("message_id") or data.get("email_id") or "").strip()
        if not message_id:
            raise ValidationError("email has no message id")

        references = (headers.get("references") or "").split()
        thread_root = references[0] if references else (headers.get("in-reply-to") or message_id)
        subject = SUBJECT_PREFIX.sub("", data.get("subject") or "").strip()

        metadata = {
            "from": sender,
            "to": recipients,
            "subject": data.get("subject") or "",
            "message_id": message_id,
        }
        # file keys are case-sensitive, so match on the raw sender
        figma_file_key = self._figma_file_key(str(data.get("from") or ""), body)
        if figma_file_key:
            metadata["figma_file_key"] = figma_file_key

        return NormalizedDiscussion(
            source_type=SourceType.EMAIL,
            source_dedup_key=message_id,
            source_thread_id=thread_root.strip(),
            workspace_id=recipients[0],
            title=subject or first_line(body) or "Forwarded email",
            content=body,
            author_handle=sender,
            participants=[sender],
            metadata=metadata,
            raw_payload=payload,
        )

    def _body(self, data: Dict[str, Any]) -> str:
        text = data.get("text") or ""
        if not text and data.get("html"):
            html = HTML_BREAK.sub("\n", data["html"])
            text = unescape(HTML_TAG.sub("", html))
        # Drop the forwarding banner, keep the forwarded content
        return FORWARD_SEPARATOR.sub("", text).strip()

    @staticmethod
    def _address(value: Any) -> str:
        if isinstance(value, dict):
            value = value.get("email") or value.get("address") or ""
        match = ADDRESS.search(str(value or ""))
        return match.group(1).lower() if match else ""

    def _recipients(self, value: Any) -> List[str]:
        values = value if isinstance(value, list) else [value]
        return [a for a in (self._address(v) for v in values) if a]

    @staticmethod
    def _headers(value: Any) -> Dict[str, str]:
        """Headers arrive either as a mapping or as a list of name/value pairs"""
        if isinstance(value, dict):
            return {str(k).lower(): str(v) for k, v in value.items()}
        if isinstance(value, list):
            return {
                str(h.get("name", "")).lower(): str(h.get("value", ""))
                for h in value
                if isinstance(h, dict)
            }
        return {}

    @staticmethod
    def _figma_file_key(sender: str, body: str) -> Optional[str]:
        match = FIGMA_SENDER.search(sender)
        if match:
            return match.group(1)
        match = FIGMA_FILE_URL.search(body)
        return match.group(1) if match else None

    async def test_connection(
        self,
        account: ConnectedAccount,
        http_client: httpx.AsyncClient,
    ) -> bool:
        """Inbound email has no provider API to call; a stored secret is enough"""
        if not account.access_token:
            raise AuthError("email account has no webhook secret")
        return True
