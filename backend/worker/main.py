import asyncio
import logging
import time
from typing import Optional

from locu.errors import SchemaUnavailable, StorageExhausted
from locu.outbox import DrainReport
from locu.runtime import Runtime

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("worker")

LOOP_ERROR_PAUSE_SECONDS = 5


async def drain_once(runtime: Runtime) -> DrainReport:
    report = await runtime.outbox.drain()
    if report.dead:
        for error in report.errors:
            logger.error(
                f"Dead letter: {error['operation']} {error['table']}/{error['entity_id']}: {error['error']}"
            )
    return report


async def sync_integrations_once(runtime: Runtime) -> int:
    """Sync every active connection; returns how many tasks were imported."""
    imported = 0
    for result in await runtime.connections.sync_all():
        if result.error:
            logger.warning(f"Integration sync failed for {result.connection_id}: {result.error}")
            continue
        imported += result.import_result.imported
    return imported


async def worker_loop(runtime: Runtime, iterations: Optional[int] = None):
    logger.info("Worker started, draining outbox and syncing integrations...")
    cfg = runtime.settings
    last_integration_sync: Optional[float] = None
    count = 0
    while iterations is None or count < iterations:
        count += 1
        try:
            await runtime.load_identity()
            await drain_once(runtime)
            now = time.monotonic()
            if last_integration_sync is None or now - last_integration_sync >= cfg.INTEGRATION_SYNC_INTERVAL_SECONDS:
                last_integration_sync = now
                imported = await sync_integrations_once(runtime)
                if imported:
                    logger.info(f"Integration sync imported {imported} tasks")
        except (SchemaUnavailable, StorageExhausted):
            raise
        except Exception as e:
            logger.error(f"Error in worker loop: {e}")
            await asyncio.sleep(LOOP_ERROR_PAUSE_SECONDS)
            continue
        await asyncio.sleep(cfg.OUTBOX_DRAIN_INTERVAL_SECONDS)


async def main():
    runtime = Runtime(run_ticker=False)
    await runtime.open()
    try:
        await worker_loop(runtime)
    finally:
        await runtime.close()


if __name__ == "__main__":
    asyncio.run(main())
