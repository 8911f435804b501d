import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from locu.errors import ProviderError
from locu.importer import NormalizedItem
from locu.models import IntegrationConnection

logger = logging.getLogger(__name__)

TODOIST_PRIORITY_LABELS = {1: "", 2: "Medium", 3: "High", 4: "Urgent"}
TODOIST_PAGE_LIMIT = "200"


class ProviderClient(Protocol):
    async def fetch_normalized_items(self, connection: IntegrationConnection) -> List[NormalizedItem]: ...

    async def push_completion(self, connection: IntegrationConnection, external_id: str, is_completed: bool) -> None: ...


def map_todoist_task(task: Dict[str, Any], connection_id: Optional[str],
                     project_name: Optional[str] = None) -> NormalizedItem:
    """Priority in Todoist: 1 = normal, 2 = medium, 3 = high, 4 = urgent."""
    task_id = str(task.get("id"))
    priority_label = TODOIST_PRIORITY_LABELS.get(task.get("priority"), "")
    parts = [part for part in (project_name, priority_label) if part]
    return NormalizedItem(
        id=task_id,
        connection_id=connection_id,
        source_type="todoist",
        source_id=task_id,
        title=task.get("content") or "",
        subtitle=" · ".join(parts) if parts else None,
        metadata={
            "projectId": task.get("project_id"),
            "projectName": project_name,
            "priority": task.get("priority"),
            "due": task.get("due"),
            "labels": task.get("labels") or [],
            "description": task.get("description"),
            "duration": task.get("duration"),
        },
        url=f"https://todoist.com/showTask?id={task_id}",
    )


class TodoistProvider:
    def __init__(self, base_url: str, timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _get_headers(self, token: Optional[str]) -> Dict[str, str]:
        if not token:
            raise ProviderError("invalid_key", "Todoist token not configured")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json"
        }

    def _raise_for_status(self, resp: httpx.Response) -> None:
        code = resp.status_code
        if code == 429:
            raise ProviderError("rate_limited", "Todoist rate limit hit", code)
        if code in (401, 403):
            raise ProviderError("invalid_key", "Todoist rejected the token", code)
        if code >= 500:
            raise ProviderError("server_error", f"Todoist server error ({code})", code)
        if code >= 400:
            raise ProviderError("unknown", f"Unexpected response from Todoist ({code})", code)

    async def _request(self, method: str, path: str, token: Optional[str],
                       params: Optional[Dict[str, str]] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, url, headers=self._get_headers(token), params=params)
        except httpx.TransportError as exc:
            raise ProviderError("network_error", f"Could not reach Todoist: {exc}") from exc
        self._raise_for_status(resp)
        return resp

    async def _paginate(self, path: str, token: Optional[str]) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            params = {"limit": TODOIST_PAGE_LIMIT}
            if cursor:
                params["cursor"] = cursor
            payload = (await self._request("GET", path, token, params=params)).json()
            if isinstance(payload, list):
                results.extend(payload)
                return results
            results.extend(payload.get("results") or [])
            cursor = payload.get("next_cursor")
            if not cursor:
                return results

    async def list_projects(self, token: Optional[str]) -> List[Dict[str, Any]]:
        return await self._paginate("/projects", token)

    async def list_tasks(self, token: Optional[str]) -> List[Dict[str, Any]]:
        """Lists active Todoist tasks for the token."""
        return await self._paginate("/tasks", token)

    async def fetch_normalized_items(self, connection: IntegrationConnection) -> List[NormalizedItem]:
        projects = await self.list_projects(connection.credential)
        names = {str(p.get("id")): p.get("name") for p in projects}
        tasks = await self.list_tasks(connection.credential)
        return [map_todoist_task(t, connection.id, names.get(str(t.get("project_id")))) for t in tasks]

    async def push_completion(self, connection: IntegrationConnection, external_id: str, is_completed: bool) -> None:
        action = "close" if is_completed else "reopen"
        await self._request("POST", f"/tasks/{external_id}/{action}", connection.credential)


class ProviderRegistry:
    def __init__(self, providers: Optional[Dict[str, ProviderClient]] = None):
        self._providers: Dict[str, ProviderClient] = dict(providers or {})

    def register(self, integration_type: str, client: ProviderClient) -> None:
        self._providers[integration_type] = client

    def get(self, integration_type: str) -> Optional[ProviderClient]:
        return self._providers.get(integration_type)

    def types(self) -> List[str]:
        return sorted(self._providers)
