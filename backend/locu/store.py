import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from locu.errors import SchemaUnavailable, StorageExhausted

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


def _install_sqlite_hooks(engine) -> None:
    # Let SQLAlchemy own BEGIN so DDL and data moves share one transaction.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _alembic_config(connection=None) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    if connection is not None:
        cfg.attributes["connection"] = connection
    return cfg


def _run_upgrades(connection, revision: str) -> None:
    command.upgrade(_alembic_config(connection), revision)


def _read_revision(connection) -> Optional[str]:
    return MigrationContext.configure(connection).get_current_revision()


def _is_disk_full(exc: BaseException) -> bool:
    message = str(exc).lower()
    return "database or disk is full" in message or "disk i/o error" in message


class LocalStore:
    """Versioned on-device store.

    ``open()`` must succeed before any ``transaction()``; a failed upgrade
    leaves the previous schema untouched and the store unusable.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = create_async_engine(database_url)
        if database_url.startswith("sqlite"):
            _install_sqlite_hooks(self.engine)
        self.session_factory = sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def open(self, revision: str = "head") -> None:
        before = await self.current_revision()
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(_run_upgrades, revision)
        except Exception as exc:
            self._ready = False
            logger.error(f"Schema upgrade to {revision} failed, staying at {before}: {exc}")
            if _is_disk_full(exc):
                raise StorageExhausted(str(exc)) from exc
            raise SchemaUnavailable(f"schema upgrade failed: {exc}") from exc
        after = await self.current_revision()
        if before != after:
            logger.info("Local schema upgraded %s -> %s", before, after)
        self._ready = True

    async def current_revision(self) -> Optional[str]:
        async with self.engine.connect() as conn:
            return await conn.run_sync(_read_revision)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One ``BEGIN IMMEDIATE`` unit of work; commits on success."""
        if not self._ready:
            raise SchemaUnavailable("local store is not open")
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except OperationalError as exc:
                if _is_disk_full(exc):
                    logger.critical(f"Local storage exhausted: {exc}")
                    raise StorageExhausted(str(exc)) from exc
                raise

    async def close(self) -> None:
        self._ready = False
        await self.engine.dispose()
