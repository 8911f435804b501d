import asyncio
import json

import httpx
import pytest

from locu.errors import ProviderError, SyncPermanent, SyncTransient
from locu.models import IntegrationConnection
from locu.providers import TodoistProvider, map_todoist_task
from locu.remote import RestRemoteStore, classify_http_error


def _connection(credential="tok-123"):
    return IntegrationConnection(id="conn-1", type="todoist", label="Todoist", credential=credential, is_active=True)


def test_map_todoist_task_builds_normalized_item():
    item = map_todoist_task(
        {"id": 42, "content": "File taxes", "project_id": "p-9", "priority": 4, "labels": ["admin"],
         "description": "Before the deadline"},
        "conn-1",
        "Personal",
    )
    assert item.source_type == "todoist"
    assert item.source_id == "42"
    assert item.connection_id == "conn-1"
    assert item.subtitle == "Personal · Urgent"
    assert item.metadata["projectId"] == "p-9"
    assert item.metadata["description"] == "Before the deadline"
    assert item.url == "https://todoist.com/showTask?id=42"


def test_fetch_normalized_items_follows_cursors():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, request.url.params.get("cursor")))
        assert request.headers["Authorization"] == "Bearer tok-123"
        if request.url.path.endswith("/projects"):
            return httpx.Response(200, json={"results": [{"id": "p-1", "name": "Home"}], "next_cursor": None})
        if request.url.params.get("cursor") == "page-2":
            return httpx.Response(200, json={"results": [{"id": "t-2", "content": "B", "project_id": "p-1"}],
                                             "next_cursor": None})
        return httpx.Response(200, json={"results": [{"id": "t-1", "content": "A", "project_id": "p-1"}],
                                         "next_cursor": "page-2"})

    provider = TodoistProvider("https://todoist.test/api/v1", transport=httpx.MockTransport(handler))
    items = asyncio.run(provider.fetch_normalized_items(_connection()))

    assert [(i.source_id, i.metadata["projectName"]) for i in items] == [("t-1", "Home"), ("t-2", "Home")]
    assert seen == [("/api/v1/projects", None), ("/api/v1/tasks", None), ("/api/v1/tasks", "page-2")]


@pytest.mark.parametrize(
    "status,code",
    [(429, "rate_limited"), (401, "invalid_key"), (403, "invalid_key"), (502, "server_error"), (404, "unknown")],
)
def test_todoist_errors_map_to_provider_codes(status, code):
    transport = httpx.MockTransport(lambda request: httpx.Response(status, json={}))
    provider = TodoistProvider("https://todoist.test/api/v1", transport=transport)
    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(provider.push_completion(_connection(), "t-1", True))
    assert excinfo.value.code == code
    assert excinfo.value.status_code == status


def test_todoist_network_failure_and_missing_token():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    provider = TodoistProvider("https://todoist.test/api/v1", transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(provider.list_tasks("tok-123"))
    assert excinfo.value.code == "network_error"

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(provider.fetch_normalized_items(_connection(credential=None)))
    assert excinfo.value.code == "invalid_key"


def test_push_completion_posts_close_and_reopen():
    paths = []

    def handler(request):
        paths.append((request.method, request.url.path))
        return httpx.Response(204)

    provider = TodoistProvider("https://todoist.test/api/v1", transport=httpx.MockTransport(handler))

    async def _run():
        await provider.push_completion(_connection(), "t-7", True)
        await provider.push_completion(_connection(), "t-7", False)

    asyncio.run(_run())
    assert paths == [("POST", "/api/v1/tasks/t-7/close"), ("POST", "/api/v1/tasks/t-7/reopen")]


def _status_error(status):
    request = httpx.Request("POST", "https://remote.test/rest/v1/tasks")
    response = httpx.Response(status, text="nope", request=request)
    return httpx.HTTPStatusError("failed", request=request, response=response)


@pytest.mark.parametrize("status", [408, 425, 429, 500, 503])
def test_retryable_statuses_are_transient(status):
    error = classify_http_error(_status_error(status))
    assert isinstance(error, SyncTransient)
    assert error.status_code == status


@pytest.mark.parametrize("status", [400, 401, 409, 422])
def test_client_errors_are_permanent(status):
    error = classify_http_error(_status_error(status))
    assert isinstance(error, SyncPermanent)
    assert error.status_code == status


def test_transport_errors_are_transient():
    request = httpx.Request("GET", "https://remote.test")
    assert isinstance(classify_http_error(httpx.ReadTimeout("slow", request=request)), SyncTransient)


def test_rest_remote_store_requests():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, json=[{"id": "s-1"}])
        if request.method == "DELETE":
            return httpx.Response(404, json={"message": "not found"})
        return httpx.Response(201)

    store = RestRemoteStore("https://remote.test/rest/v1/", api_key="anon-key", transport=httpx.MockTransport(handler))

    async def _run():
        await store.upsert("tasks", {"id": "t-1", "title": "A"})
        await store.update("tasks", "t-1", {"title": "B"})
        await store.delete("tasks", "t-1")
        return await store.fetch("sessions", "acct-1", since="2026-10-17T00:00:00.000+00:00")

    rows = asyncio.run(_run())
    upsert, patch, delete, fetch = requests
    assert rows == [{"id": "s-1"}]
    assert upsert.headers["Prefer"].startswith("resolution=merge-duplicates")
    assert upsert.url.params["on_conflict"] == "id"
    assert json.loads(upsert.content) == {"id": "t-1", "title": "A"}
    assert upsert.headers["Authorization"] == "Bearer anon-key"
    assert patch.method == "PATCH" and patch.url.params["id"] == "eq.t-1"
    assert delete.method == "DELETE"
    assert fetch.url.path == "/rest/v1/sessions"
    assert fetch.url.params["owner_id"] == "eq.acct-1"
    assert fetch.url.params["started_at"] == "gte.2026-10-17T00:00:00.000+00:00"


def test_rest_remote_store_surfaces_rejections():
    transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"message": "bad column"}))
    store = RestRemoteStore("https://remote.test/rest/v1", transport=transport)
    with pytest.raises(SyncPermanent):
        asyncio.run(store.upsert("tasks", {"id": "t-1"}))

    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    store = RestRemoteStore("https://remote.test/rest/v1", transport=transport)
    with pytest.raises(SyncTransient):
        asyncio.run(store.delete("tasks", "t-1"))
