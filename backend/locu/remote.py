import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from locu.errors import SyncPermanent, SyncTransient

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429}

# Column the `since` filter applies to; rows without updated_at are time-keyed.
SINCE_COLUMNS = {"sessions": "started_at", "time_entries": "started_at"}


class RemoteStore(Protocol):
    async def upsert(self, table: str, row: Dict[str, Any]) -> None: ...

    async def update(self, table: str, entity_id: str, fields: Dict[str, Any]) -> None: ...

    async def delete(self, table: str, entity_id: str) -> None: ...

    async def fetch(self, table: str, owner_id: str, since: Optional[str] = None) -> List[Dict[str, Any]]: ...


def classify_http_error(exc: Exception) -> Exception:
    """Map an httpx failure onto the outbox's retry policy."""
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        detail = f"{code} {exc.response.text[:200]}".strip()
        if code in TRANSIENT_STATUS_CODES or code >= 500:
            return SyncTransient(detail, status_code=code)
        return SyncPermanent(detail, status_code=code)
    if isinstance(exc, httpx.TransportError):
        return SyncTransient(f"network error: {exc}")
    return SyncPermanent(str(exc))


class RestRemoteStore:
    """PostgREST-style remote mirror.

    Inserts are sent as upserts keyed by id so a retried insert is harmless;
    updates and deletes of rows the server no longer has are treated as done.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
            headers["apikey"] = self.api_key
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _send(self, method: str, path: str, extra_headers: Optional[Dict[str, str]] = None,
                    **kwargs) -> httpx.Response:
        url = f"{self.base_url}/{path}"
        headers = self._get_headers()
        if extra_headers:
            headers.update(extra_headers)
        try:
            async with self._client() as client:
                resp = await client.request(method, url, headers=headers, **kwargs)
                resp.raise_for_status()
                return resp
        except (httpx.HTTPStatusError, httpx.TransportError) as exc:
            raise classify_http_error(exc) from exc

    async def upsert(self, table: str, row: Dict[str, Any]) -> None:
        await self._send(
            "POST",
            table,
            extra_headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            params={"on_conflict": "id"},
            json=row,
        )

    async def update(self, table: str, entity_id: str, fields: Dict[str, Any]) -> None:
        # PATCH on a missing row matches nothing and still returns 2xx.
        await self._send("PATCH", table, params={"id": f"eq.{entity_id}"}, json=fields)

    async def delete(self, table: str, entity_id: str) -> None:
        try:
            await self._send("DELETE", table, params={"id": f"eq.{entity_id}"})
        except SyncPermanent as exc:
            if exc.status_code == 404:
                logger.info("Remote %s/%s already gone", table, entity_id)
                return
            raise

    async def fetch(self, table: str, owner_id: str, since: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, str] = {"owner_id": f"eq.{owner_id}", "select": "*"}
        if since:
            params[SINCE_COLUMNS.get(table, "updated_at")] = f"gte.{since}"
        resp = await self._send("GET", table, params=params)
        payload = resp.json()
        if isinstance(payload, list):
            return payload
        return []
