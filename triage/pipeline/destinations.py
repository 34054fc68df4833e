"""
Destination Adapters

Contract for the external tracking systems tasks are created in, and the
Notion implementation of it.

Error mapping for every destination call:
- 401/403 -> AuthError (fatal; the account must be fixed and re-verified)
- 429, 5xx, transport errors, timeouts -> TransientError (retryable)
- any other 4xx -> FatalError (bad database id or payload)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..common.errors import AuthError, FatalError, TransientError
from ..common.schemas import ConnectedAccount, DetectedTask, Discussion, Provider

logger = logging.getLogger("triage.pipeline.destinations")

MAX_TEXT = 2000


@dataclass
class CreatedRecord:
    """Reference to a record created in the destination"""
    external_id: str
    url: Optional[str] = None


class DestinationAdapter(ABC):
    """Contract every destination implements"""

    provider: Provider

    @abstractmethod
    async def fetch_schema(self, account: ConnectedAccount, settings: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        """Ordered property schema: name -> {"type": ..., "options": [...]}"""

    @abstractmethod
    def build_properties(
        self,
        task: DetectedTask,
        values: Dict[str, Tuple[str, Any]],
        schema: Dict[str, Dict[str, Any]],
    ) -> Dict[str, Any]:
        """Destination payload for the task title plus mapped property values"""

    @abstractmethod
    async def create_task(
        self,
        account: ConnectedAccount,
        settings: Dict[str, Any],
        properties: Dict[str, Any],
        task: DetectedTask,
        discussion: Discussion,
    ) -> CreatedRecord:
        """Create one record and return its reference"""

    @abstractmethod
    async def test_connection(self, account: ConnectedAccount, http_client: httpx.AsyncClient) -> bool:
        """Check the credential against the destination API"""


def _text(content: Any) -> List[Dict[str, Any]]:
    return [{"type": "text", "text": {"content": str(content)[:MAX_TEXT]}}]


def format_notion_property(value: Any, property_type: str) -> Optional[Dict[str, Any]]:
    """Notion property payload for a value, or None for unsupported types"""
    if property_type == "title":
        return {"title": _text(value)}
    if property_type == "rich_text":
        return {"rich_text": _text(value)}
    if property_type == "select":
        return {"select": {"name": str(value)}}
    if property_type == "status":
        return {"status": {"name": str(value)}}
    if property_type == "multi_select":
        values = value if isinstance(value, list) else [value]
        return {"multi_select": [{"name": str(v)} for v in values]}
    if property_type == "people":
        return {"people": [{"id": str(value)}]}
    if property_type == "date":
        return {"date": {"start": str(value)}}
    if property_type == "number":
        try:
            return {"number": float(value)}
        except (TypeError, ValueError):
            return None
    if property_type == "checkbox":
        return {"checkbox": bool(value)}
    if property_type == "url":
        return {"url": str(value)}
    if property_type == "email":
        return {"email": str(value)}
    return None


class NotionDestination(DestinationAdapter):
    """
    Creates pages in a Notion database.

    Output settings:
        database_id: target database
        field_mapping: optional explicit mapping (otherwise generated from the schema)
    """

    provider = Provider.NOTION

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        api_url: str = "https://api.notion.com/v1",
        notion_version: str = "2022-06-28",
        timeout: float = 15.0,
    ):
        self._http_client = http_client
        self._api_url = api_url.rstrip("/")
        self._notion_version = notion_version
        self._timeout = timeout

    def _headers(self, account: ConnectedAccount) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {account.access_token}",
            "Notion-Version": self._notion_version,
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        account: ConnectedAccount,
        json: Optional[Dict[str, Any]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> Dict[str, Any]:
        client = http_client or self._http_client
        url = f"{self._api_url}{path}"
        try:
            if client is not None:
                response = await client.request(method, url, headers=self._headers(account), json=json, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout)) as owned:
                    response = await owned.request(method, url, headers=self._headers(account), json=json)
        except httpx.TimeoutException as e:
            raise TransientError(f"notion timed out: {e}")
        except httpx.TransportError as e:
            raise TransientError(f"notion unreachable: {e}")

        if response.status_code in (401, 403):
            raise AuthError(f"notion rejected credential ({response.status_code})")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"notion unavailable ({response.status_code})")
        if response.status_code >= 400:
            raise FatalError(f"notion {method} {path} failed ({response.status_code}): {response.text[:200]}")
        return response.json()

    @staticmethod
    def _database_id(settings: Dict[str, Any]) -> str:
        database_id = settings.get("database_id")
        if not database_id:
            raise FatalError("notion output has no database_id")
        return database_id

    async def fetch_schema(self, account: ConnectedAccount, settings: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        data = await self._request("GET", f"/databases/{self._database_id(settings)}", account)
        schema = {}
        for name, prop in (data.get("properties") or {}).items():
            prop_type = prop.get("type", "")
            options = (prop.get(prop_type) or {}).get("options", []) if isinstance(prop.get(prop_type), dict) else []
            schema[name] = {"type": prop_type, "options": [{"name": o.get("name")} for o in options]}
        return schema

    @staticmethod
    def title_property(schema: Dict[str, Dict[str, Any]]) -> str:
        for name, prop in schema.items():
            if prop.get("type") == "title":
                return name
        return "Name"

    def build_properties(
        self,
        task: DetectedTask,
        values: Dict[str, Tuple[str, Any]],
        schema: Dict[str, Dict[str, Any]],
    ) -> Dict[str, Any]:
        properties = {self.title_property(schema): format_notion_property(task.title, "title")}
        for name, (prop_type, value) in values.items():
            formatted = format_notion_property(value, prop_type)
            if formatted is None:
                logger.debug("Skipping %s: unsupported Notion type %s", name, prop_type)
                continue
            properties[name] = formatted
        return properties

    def build_content(self, task: DetectedTask, discussion: Discussion) -> List[Dict[str, Any]]:
        """Page body: description, action items, and a link back to the source"""
        blocks = []
        if task.description:
            blocks.append({"object": "block", "type": "paragraph", "paragraph": {"rich_text": _text(task.description)}})
        for item in task.action_items or []:
            blocks.append({"object": "block", "type": "to_do", "to_do": {"checked": False, "rich_text": _text(item)}})

        source = f"From {discussion.source_type.value}: {discussion.title}"
        rich = _text(source)
        if discussion.source_url:
            rich[0]["text"]["link"] = {"url": discussion.source_url}
        blocks.append({"object": "block", "type": "paragraph", "paragraph": {"rich_text": rich}})
        return blocks

    async def create_task(
        self,
        account: ConnectedAccount,
        settings: Dict[str, Any],
        properties: Dict[str, Any],
        task: DetectedTask,
        discussion: Discussion,
    ) -> CreatedRecord:
        body = {
            "parent": {"database_id": self._database_id(settings)},
            "properties": properties,
            "children": self.build_content(task, discussion),
        }
        data = await self._request("POST", "/pages", account, json=body)
        page_id = data.get("id")
        if not page_id:
            raise TransientError("notion returned no page id")
        logger.info("Created Notion page %s for discussion %s", page_id, discussion.id)
        return CreatedRecord(external_id=page_id, url=data.get("url"))

    async def test_connection(self, account: ConnectedAccount, http_client: httpx.AsyncClient) -> bool:
        await self._request("GET", "/users/me", account, http_client=http_client)
        return True
