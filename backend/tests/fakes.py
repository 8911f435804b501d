"""In-memory collaborators shared by the test modules."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from locu.errors import ProviderError
from locu.importer import NormalizedItem


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 10, 17, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


class FakeRemoteStore:
    """Remote mirror keyed by table then id; ``failures`` pops one exception per call for an entity."""

    def __init__(self):
        self.rows: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}

    def fail(self, entity_id: str, *errors: Exception) -> None:
        self.failures.setdefault(entity_id, []).extend(errors)

    def _maybe_fail(self, entity_id: str) -> None:
        queued = self.failures.get(entity_id)
        if queued:
            raise queued.pop(0)

    async def upsert(self, table: str, row: Dict[str, Any]) -> None:
        self.calls.append(("upsert", table, row["id"]))
        self._maybe_fail(row["id"])
        self.rows.setdefault(table, {})[row["id"]] = dict(row)

    async def update(self, table: str, entity_id: str, fields: Dict[str, Any]) -> None:
        self.calls.append(("update", table, entity_id))
        self._maybe_fail(entity_id)
        existing = self.rows.setdefault(table, {}).get(entity_id)
        if existing is not None:
            existing.update(fields)

    async def delete(self, table: str, entity_id: str) -> None:
        self.calls.append(("delete", table, entity_id))
        self._maybe_fail(entity_id)
        self.rows.setdefault(table, {}).pop(entity_id, None)

    async def fetch(self, table: str, owner_id: str, since: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = [dict(r) for r in self.rows.get(table, {}).values() if r.get("owner_id") == owner_id]
        if since:
            key = "started_at" if table in ("sessions", "time_entries") else "updated_at"
            rows = [r for r in rows if (r.get(key) or "") >= since]
        return rows


class FakeProvider:
    def __init__(self, items: Optional[List[NormalizedItem]] = None, fail_with: Optional[ProviderError] = None):
        self.items = list(items or [])
        self.fail_with = fail_with
        self.completions: List[tuple] = []

    async def fetch_normalized_items(self, connection) -> List[NormalizedItem]:
        if self.fail_with is not None:
            raise self.fail_with
        return [
            NormalizedItem(**{**item.__dict__, "connection_id": connection.id}) for item in self.items
        ]

    async def push_completion(self, connection, external_id: str, is_completed: bool) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.completions.append((connection.id, external_id, is_completed))


def linear_item(source_id: str, team_id: str = "team-eng", title: Optional[str] = None) -> NormalizedItem:
    return NormalizedItem(
        id=f"lin-{source_id}",
        connection_id=None,
        source_type="linear",
        source_id=source_id,
        title=title or f"Issue {source_id}",
        subtitle="Engineering",
        metadata={"teamId": team_id, "teamName": "Engineering", "projectName": "Platform"},
        url=f"https://linear.app/issue/{source_id}",
    )
