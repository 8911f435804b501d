import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from locu.clock import Clock, to_iso, utc_now
from locu.errors import EntityNotFound, ProviderError
from locu.importer import ImportEngine, ImportResult, NormalizedItem
from locu.models import IntegrationConnection, Section
from locu.providers import ProviderRegistry
from locu.store import LocalStore

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = ("linear", "todoist", "attio")


@dataclass
class ConnectionSyncResult:
    connection_id: str
    import_result: ImportResult = field(default_factory=ImportResult)
    inbox_items: List[NormalizedItem] = field(default_factory=list)
    error: Optional[str] = None


class ConnectionService:
    """External accounts (local only, never mirrored) and their sync runs."""

    def __init__(self, store: LocalStore, importer: ImportEngine, providers: ProviderRegistry,
                 clock: Clock = utc_now):
        self.store = store
        self.importer = importer
        self.providers = providers
        self.clock = clock

    async def list(self, active_only: bool = False) -> List[IntegrationConnection]:
        async with self.store.transaction() as session:
            stmt = select(IntegrationConnection).order_by(IntegrationConnection.created_at)
            if active_only:
                stmt = stmt.where(IntegrationConnection.is_active.is_(True))
            return list((await session.execute(stmt)).scalars().all())

    async def get(self, connection_id: str) -> IntegrationConnection:
        async with self.store.transaction() as session:
            connection = await session.get(IntegrationConnection, connection_id)
            if connection is None:
                raise EntityNotFound("connection", connection_id)
            return connection

    async def add(self, integration_type: str, credential: str, label: Optional[str] = None,
                  metadata: Optional[Dict[str, Any]] = None) -> IntegrationConnection:
        if integration_type not in SUPPORTED_TYPES:
            raise ValueError(f"unsupported integration type: {integration_type}")
        now = to_iso(self.clock())
        connection = IntegrationConnection(
            id=str(uuid.uuid4()),
            type=integration_type,
            label=label or integration_type.capitalize(),
            credential=credential,
            metadata_json=metadata or {},
            is_active=True,
            default_section=Section.sooner.value,
            auto_import=False,
            created_at=now,
            updated_at=now,
        )
        async with self.store.transaction() as session:
            session.add(connection)
        logger.info("Added %s connection %s", integration_type, connection.id)
        return connection

    async def update(self, connection_id: str, **fields: Any) -> IntegrationConnection:
        allowed = {"label", "credential", "default_bucket_id", "default_section", "auto_import", "is_active"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"fields not editable: {sorted(unknown)}")
        if "default_section" in fields:
            fields["default_section"] = Section(fields["default_section"]).value
        async with self.store.transaction() as session:
            connection = await session.get(IntegrationConnection, connection_id)
            if connection is None:
                raise EntityNotFound("connection", connection_id)
            for key, value in fields.items():
                setattr(connection, key, value)
            connection.updated_at = to_iso(self.clock())
            return connection

    async def disconnect(self, connection_id: str, clear_credential: bool = False) -> IntegrationConnection:
        changes: Dict[str, Any] = {"is_active": False}
        if clear_credential:
            changes["credential"] = None
        return await self.update(connection_id, **changes)

    async def remove(self, connection_id: str) -> bool:
        async with self.store.transaction() as session:
            connection = await session.get(IntegrationConnection, connection_id)
            if connection is None:
                return False
            await session.delete(connection)
            return True

    async def sync(self, connection_id: str) -> ConnectionSyncResult:
        """Fetch a connection's items, route them by rule, and return what is left for triage."""
        connection = await self.get(connection_id)
        if not connection.is_active:
            raise ValueError(f"connection {connection_id} is disconnected")
        client = self.providers.get(connection.type)
        if client is None:
            raise ProviderError("unsupported", f"no provider client for {connection.type}")

        items = await client.fetch_normalized_items(connection)
        result = ConnectionSyncResult(connection_id=connection_id)
        result.import_result = await self.importer.apply_import_rules(items)
        result.inbox_items = await self.importer.filter_unimported(items)

        async with self.store.transaction() as session:
            row = await session.get(IntegrationConnection, connection_id)
            if row is not None:
                row.last_synced_at = to_iso(self.clock())
        logger.info(
            f"Synced {connection.type} connection {connection_id}: "
            f"{len(items)} fetched, {result.import_result.imported} imported, {len(result.inbox_items)} in inbox"
        )
        return result

    async def sync_all(self) -> List[ConnectionSyncResult]:
        # One at a time; providers rate-limit per account.
        results: List[ConnectionSyncResult] = []
        for connection in await self.list(active_only=True):
            try:
                results.append(await self.sync(connection.id))
            except ProviderError as exc:
                logger.error(f"Sync failed for connection {connection.id} ({exc.code}): {exc}")
                results.append(ConnectionSyncResult(connection_id=connection.id, error=f"{exc.code}: {exc}"))
        return results
