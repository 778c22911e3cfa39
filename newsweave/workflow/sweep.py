"""Periodic sweep that re-queues items whose enrichment never finished."""

import asyncio
from typing import Dict, Any, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from newsweave.core.db import AsyncSessionLocal
from newsweave.core.logging import get_logger, setup_logging
from newsweave.core.repositories import items_needing_retry, chunked
from newsweave.core.settings import get_settings
from newsweave.core.time import hours_ago
from newsweave.enrichment.analysis import MIN_TRANSLATE_CHARS
from newsweave.workflow.messages import BatchProcessMessage
from newsweave.workflow.queue import MessageQueue, build_queue

logger = get_logger(__name__)

SWEEP_WINDOW_HOURS = 48
SWEEP_BATCH_SIZE = 20


async def sweep_incomplete_items(
    queue: MessageQueue,
    session_factory: Optional[async_sessionmaker] = None,
    window_hours: int = SWEEP_WINDOW_HOURS,
    batch_size: int = SWEEP_BATCH_SIZE,
    translate: bool = True,
) -> Dict[str, Any]:
    """
    Re-queue recently ingested items with missing enrichment.

    Items go out as batch_process messages of `batch_size` ids. Pass
    `translate=False` when no completion provider is configured, so that
    untranslated content alone does not count as unfinished.

    Returns:
        {'items': n, 'batches': m}
    """
    session_factory = session_factory or AsyncSessionLocal

    async with session_factory() as session:
        item_ids = await items_needing_retry(
            session,
            since=hours_ago(window_hours),
            translate_min_chars=MIN_TRANSLATE_CHARS if translate else None,
        )

    if not item_ids:
        logger.info("Retry sweep: nothing to reprocess")
        return {'items': 0, 'batches': 0}

    batches = await queue.send_batch(
        BatchProcessMessage(item_ids=chunk, triggered_by="retry_sweep")
        for chunk in chunked(item_ids, batch_size)
    )

    logger.info(f"Retry sweep queued {len(item_ids)} items in {batches} batches")
    return {'items': len(item_ids), 'batches': batches}


async def _run_once() -> Dict[str, Any]:
    queue = build_queue()
    try:
        return await sweep_incomplete_items(queue, translate=bool(get_settings().openrouter_api_key))
    finally:
        await queue.aclose()


def main():
    """CLI entry point, meant to be run from cron."""
    import argparse

    parser = argparse.ArgumentParser(description='Re-queue items with incomplete enrichment')
    parser.parse_args()

    setup_logging("sweep")
    stats = asyncio.run(_run_once())
    print(f"Queued {stats['items']} items in {stats['batches']} batches")
    return 0


if __name__ == "__main__":
    exit(main())
