"""Tests for the Notion destination adapter."""

import json

import httpx
import pytest

from triage.common.errors import AuthError, FatalError, TransientError
from triage.common.schemas import ConnectedAccount, DetectedTask, Discussion, Provider, SourceType
from triage.pipeline.destinations import NotionDestination, format_notion_property


@pytest.fixture
def account():
    return ConnectedAccount(
        id="acct_1", team_id="team1", provider=Provider.NOTION, label="Notion", access_token="secret_notion"
    )


@pytest.fixture
def discussion():
    return Discussion(
        id="disc_1",
        team_id="team1",
        source_type=SourceType.SLACK,
        source_dedup_key="C1:1.0:1.0",
        source_thread_id="C1:1.0",
        workspace_id="T1",
        title="Login broken",
        content="Login is broken",
        source_url="https://slack.example/archives/C1/p10",
    )


def _destination(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return NotionDestination(http_client=client, api_url="https://notion.test/v1")


DATABASE = {
    "properties": {
        "Task": {"type": "title", "title": {}},
        "Priority": {"type": "select", "select": {"options": [{"name": "High", "color": "red"}, {"name": "Low"}]}},
        "Tags": {"type": "multi_select", "multi_select": {"options": [{"name": "ui"}]}},
        "Assignee": {"type": "people", "people": {}},
    }
}


class TestFormatProperty:
    @pytest.mark.parametrize("value,prop_type,expected", [
        ("High", "select", {"select": {"name": "High"}}),
        ("Done", "status", {"status": {"name": "Done"}}),
        (["a", "b"], "multi_select", {"multi_select": [{"name": "a"}, {"name": "b"}]}),
        ("a", "multi_select", {"multi_select": [{"name": "a"}]}),
        ("user-1", "people", {"people": [{"id": "user-1"}]}),
        ("2026-01-31", "date", {"date": {"start": "2026-01-31"}}),
        ("3", "number", {"number": 3.0}),
        (1, "checkbox", {"checkbox": True}),
    ])
    def test_supported_types(self, value, prop_type, expected):
        assert format_notion_property(value, prop_type) == expected

    def test_text_is_truncated(self):
        formatted = format_notion_property("x" * 5000, "rich_text")
        assert len(formatted["rich_text"][0]["text"]["content"]) == 2000

    def test_unsupported(self):
        assert format_notion_property("x", "relation") is None
        assert format_notion_property("many", "number") is None


class TestSchema:
    @pytest.mark.asyncio
    async def test_fetch_schema(self, account):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["version"] = request.headers["Notion-Version"]
            return httpx.Response(200, json=DATABASE)

        schema = await _destination(handler).fetch_schema(account, {"database_id": "db1"})

        assert seen["url"] == "https://notion.test/v1/databases/db1"
        assert seen["auth"] == "Bearer secret_notion"
        assert seen["version"] == "2022-06-28"
        assert list(schema) == ["Task", "Priority", "Tags", "Assignee"]
        assert schema["Priority"] == {"type": "select", "options": [{"name": "High"}, {"name": "Low"}]}
        assert schema["Assignee"] == {"type": "people", "options": []}

    @pytest.mark.asyncio
    async def test_missing_database_id(self, account):
        with pytest.raises(FatalError, match="database_id"):
            await _destination(lambda r: httpx.Response(200, json={})).fetch_schema(account, {})

    def test_title_property(self):
        assert NotionDestination.title_property({"Task": {"type": "title"}}) == "Task"
        assert NotionDestination.title_property({}) == "Name"


class TestCreateTask:
    @pytest.mark.asyncio
    async def test_creates_page(self, account, discussion):
        captured = {}

        def handler(request):
            captured["method"] = request.method
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "page-1", "url": "https://notion.so/page-1"})

        destination = _destination(handler)
        task = DetectedTask(title="Fix login", description="Safari only", action_items=["Reproduce"])
        schema = {"Task": {"type": "title"}}
        properties = destination.build_properties(
            task,
            {"Priority": ("select", "High"), "Related": ("relation", "x")},
            schema,
        )

        record = await destination.create_task(account, {"database_id": "db1"}, properties, task, discussion)

        assert record.external_id == "page-1"
        assert record.url == "https://notion.so/page-1"
        body = captured["body"]
        assert captured["method"] == "POST"
        assert body["parent"] == {"database_id": "db1"}
        assert body["properties"]["Task"]["title"][0]["text"]["content"] == "Fix login"
        assert body["properties"]["Priority"] == {"select": {"name": "High"}}
        assert "Related" not in body["properties"]
        types = [block["type"] for block in body["children"]]
        assert types == ["paragraph", "to_do", "paragraph"]
        source_link = body["children"][-1]["paragraph"]["rich_text"][0]["text"]
        assert source_link["content"] == "From slack: Login broken"
        assert source_link["link"] == {"url": "https://slack.example/archives/C1/p10"}

    @pytest.mark.asyncio
    async def test_missing_page_id_is_transient(self, account, discussion):
        destination = _destination(lambda r: httpx.Response(200, json={}))
        with pytest.raises(TransientError):
            await destination.create_task(account, {"database_id": "db1"}, {}, DetectedTask(title="t"), discussion)


class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (401, AuthError),
        (403, AuthError),
        (429, TransientError),
        (502, TransientError),
        (400, FatalError),
        (404, FatalError),
    ])
    async def test_status_codes(self, account, status, error):
        destination = _destination(lambda r: httpx.Response(status, json={"message": "nope"}))
        with pytest.raises(error):
            await destination.fetch_schema(account, {"database_id": "db1"})

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self, account):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientError, match="unreachable"):
            await _destination(handler).fetch_schema(account, {"database_id": "db1"})

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, account):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransientError, match="timed out"):
            await _destination(handler).fetch_schema(account, {"database_id": "db1"})


class TestConnection:
    @pytest.mark.asyncio
    async def test_uses_given_client(self, account):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(200, json={"object": "user"})

        destination = NotionDestination(api_url="https://notion.test/v1")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert await destination.test_connection(account, client) is True
        assert calls == ["/v1/users/me"]

    @pytest.mark.asyncio
    async def test_rejected_token(self, account):
        destination = NotionDestination(api_url="https://notion.test/v1")
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(401))) as client:
            with pytest.raises(AuthError):
                await destination.test_connection(account, client)
