"""Ingestion pipeline.

Coordinates one producer run:
- URL normalization and in-batch deduplication
- Chunked existence check against the item store
- Concurrent insert of new items (per-item isolation) + queue message
- Source-priority upgrades for rediscovered items

`run_ingest` drives it for every active feed in config/feeds.yaml.
"""

import asyncio
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, List, Any, Optional, Tuple

import yaml
from sqlalchemy.ext.asyncio import async_sessionmaker

from newsweave.core.db import AsyncSessionLocal
from newsweave.core.logging import get_logger, setup_logging
from newsweave.core.models import FeedSource
from newsweave.core.repositories import (
    find_existing_by_urls,
    insert_item,
    update_item_fields,
    upsert_feed_from_yaml,
    list_active_feeds,
    update_feed_headers,
    increment_feed_error_count,
)
from newsweave.core.settings import get_settings
from newsweave.core.time import utcnow
from newsweave.ingestor.extractor import ContentExtractor, WebExtractor
from newsweave.ingestor.normalizer import (
    RawEntry, normalize_url, detect_platform, is_hn_discussion, batch_normalize_entries
)
from newsweave.ingestor.priority import should_upgrade
from newsweave.ingestor.rss import RSSFetcher
from newsweave.workflow.messages import ItemProcessMessage
from newsweave.workflow.queue import MessageQueue, build_queue

logger = get_logger(__name__)

MAX_ITEMS_PER_FEED = 30
PLATFORM_SOURCE_TYPES = ('hackernews', 'youtube', 'twitter')


@dataclass
class IngestStats:
    """Outcome of one producer batch."""
    total: int = 0
    inserted: int = 0
    duplicates: int = 0
    upgraded: int = 0
    failed: int = 0
    item_ids: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "IngestStats") -> None:
        self.total += other.total
        self.inserted += other.inserted
        self.duplicates += other.duplicates
        self.upgraded += other.upgraded
        self.failed += other.failed
        self.item_ids.extend(other.item_ids)
        self.errors.extend(other.errors)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def dedupe_batch(entries: List[RawEntry]) -> List[RawEntry]:
    """Normalize URLs in place and keep the first entry per normalized URL."""
    seen = set()
    unique: List[RawEntry] = []
    for entry in entries:
        entry.url = normalize_url(entry.url)
        if not entry.url or entry.url in seen:
            continue
        seen.add(entry.url)
        unique.append(entry)
    return unique


def resolve_source_type(url: str, metadata: Optional[Dict[str, Any]], default: str) -> str:
    """Platform metadata wins, then the URL's host, then the producer default."""
    if metadata and metadata.get('type') in PLATFORM_SOURCE_TYPES:
        return metadata['type']
    platform = detect_platform(url)
    if platform in PLATFORM_SOURCE_TYPES:
        return platform
    return default


def build_item_record(
    entry: RawEntry,
    source_label: str,
    source_type: str,
    metadata: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    """Insert record for a new item; enrichment fields start empty."""
    now = utcnow()
    return {
        'url': entry.url,
        'title': (entry.title or entry.url)[:800],
        'source': source_label,
        'source_type': source_type,
        'summary': entry.summary or None,
        'content': entry.content or None,
        'tags': [],
        'keywords': [],
        'og_image_url': entry.image_url,
        'platform_metadata': metadata,
        'published_at': entry.published_at or now,
        'ingested_at': now,
    }


async def ingest_entries(
    entries: List[RawEntry],
    source_label: str,
    *,
    queue: MessageQueue,
    extractor: ContentExtractor,
    session_factory: Optional[async_sessionmaker] = None,
    default_source_type: str = 'rss',
) -> IngestStats:
    """
    Deduplicate and store one producer batch.

    Every successfully inserted item yields exactly one item_process
    message. Existing items are only ever re-labelled (see priority.py),
    never re-inserted or re-queued. One failing item never aborts the batch.

    Args:
        entries: Raw entries from one producer run
        source_label: Provenance label of the producer
        queue: Destination for item_process messages
        extractor: Platform metadata collaborator
        session_factory: Session maker (defaults to the application's)
        default_source_type: source_type for items with no platform match

    Returns:
        IngestStats for the batch
    """
    session_factory = session_factory or AsyncSessionLocal
    stats = IngestStats()

    unique = dedupe_batch(entries)
    stats.total = len(unique)
    stats.duplicates += len(entries) - len(unique)
    if not unique:
        return stats

    # Existence check happens before any insert decision for this run
    async with session_factory() as session:
        existing = await find_existing_by_urls(session, [e.url for e in unique])

    new_entries = [e for e in unique if e.url not in existing]
    rediscovered = [(e, existing[e.url]) for e in unique if e.url in existing]
    stats.duplicates += len(rediscovered)

    insert_tasks = [
        _insert_new_entry(e, source_label, default_source_type, queue, extractor, session_factory)
        for e in new_entries
    ]
    upgrade_tasks = [
        _upgrade_existing(e, item_id, current, source_label, extractor, session_factory)
        for e, (item_id, current) in rediscovered
    ]

    insert_results = await asyncio.gather(*insert_tasks, return_exceptions=True)
    for entry, outcome in zip(new_entries, insert_results):
        if isinstance(outcome, BaseException):
            stats.failed += 1
            stats.errors.append(f"{entry.url}: {outcome}")
            logger.error(f"Failed to ingest {entry.url}: {outcome}", extra={"source": source_label})
        elif outcome is None:
            stats.duplicates += 1
        else:
            stats.inserted += 1
            stats.item_ids.append(outcome)

    upgrade_results = await asyncio.gather(*upgrade_tasks, return_exceptions=True)
    for (entry, _), outcome in zip(rediscovered, upgrade_results):
        if isinstance(outcome, BaseException):
            stats.errors.append(f"{entry.url}: upgrade failed: {outcome}")
            logger.error(f"Source upgrade failed for {entry.url}: {outcome}")
        elif outcome:
            stats.upgraded += 1

    logger.info(
        f"Ingested batch from {source_label}: {stats.inserted}/{stats.total} new, "
        f"{stats.upgraded} upgraded, {stats.failed} failed",
        extra={"source": source_label, "inserted": stats.inserted, "failed": stats.failed}
    )
    return stats


async def _insert_new_entry(
    entry: RawEntry,
    source_label: str,
    default_source_type: str,
    queue: MessageQueue,
    extractor: ContentExtractor,
    session_factory: async_sessionmaker,
) -> Optional[int]:
    """Insert one new item and enqueue it. Returns the id, or None on a lost race."""
    metadata = await extractor.platform_metadata(entry.url, entry.comments_url)
    source_type = resolve_source_type(entry.url, metadata, default_source_type)
    if is_hn_discussion(entry.comments_url) and metadata:
        source_type = 'hackernews'

    record = build_item_record(entry, source_label, source_type, metadata)
    async with session_factory() as session:
        created, item = await insert_item(session, record)

    if not created:
        return None

    await queue.send(ItemProcessMessage(item_id=item.id, source_type=source_type))
    logger.debug(f"Inserted item {item.id} ({source_type}): {entry.url}")
    return item.id


async def _upgrade_existing(
    entry: RawEntry,
    item_id: int,
    current_label: Optional[str],
    source_label: str,
    extractor: ContentExtractor,
    session_factory: async_sessionmaker,
) -> bool:
    """Re-label a rediscovered item when the producer outranks it."""
    if not should_upgrade(source_label, current_label):
        return False

    fields: Dict[str, Any] = {'source': source_label}
    if is_hn_discussion(entry.comments_url):
        try:
            metadata = await extractor.platform_metadata(entry.url, entry.comments_url)
        except Exception as e:
            logger.warning(f"HN metadata fetch failed during upgrade of {entry.url}: {e}")
            metadata = None
        if metadata:
            fields['source_type'] = 'hackernews'
            fields['platform_metadata'] = metadata

    async with session_factory() as session:
        updated = await update_item_fields(session, item_id, fields)

    if updated:
        logger.info(f"Upgraded source of item {item_id}: {current_label!r} -> {source_label!r}")
    return bool(updated)


# ---------------------------------------------------------------------------
# Feed producer
# ---------------------------------------------------------------------------

def load_feeds_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load the feeds YAML; missing or unreadable files yield an empty config."""
    path = Path(config_path or get_settings().feeds_config_path)
    if not path.exists():
        logger.warning(f"Config file not found: {path}")
        return {}
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


async def run_ingest(
    *,
    queue: Optional[MessageQueue] = None,
    extractor: Optional[ContentExtractor] = None,
    fetcher: Optional[RSSFetcher] = None,
    session_factory: Optional[async_sessionmaker] = None,
    config_path: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Poll every active feed once and ingest its entries.

    Feeds run concurrently; one failing feed never aborts the run.

    Returns:
        Dictionary with ingestion statistics
    """
    start_time = time.time()
    session_factory = session_factory or AsyncSessionLocal
    owns_queue = queue is None
    queue = queue or build_queue()
    owns_extractor = extractor is None
    extractor = extractor or WebExtractor()
    owns_fetcher = fetcher is None
    fetcher = fetcher or RSSFetcher()

    stats: Dict[str, Any] = {
        'feeds_ok': 0,
        'feeds_304': 0,
        'feeds_error': 0,
        'items': IngestStats(),
        'errors': [],
        'runtime_seconds': 0,
    }

    try:
        async with session_factory() as session:
            config = load_feeds_config(config_path)
            for feed_config in config.get('feeds', []):
                try:
                    await upsert_feed_from_yaml(session, feed_config)
                except Exception as e:
                    logger.error(f"Error syncing feed {feed_config.get('url', 'unknown')}: {e}")
                    stats['errors'].append(f"Feed sync error: {e}")
            feeds = await list_active_feeds(session)

        logger.info(f"Starting ingestion for {len(feeds)} active feeds")
        results = await asyncio.gather(
            *[_process_feed(feed, fetcher, queue, extractor, session_factory) for feed in feeds],
            return_exceptions=True,
        )

        for feed, result in zip(feeds, results):
            if isinstance(result, BaseException):
                stats['feeds_error'] += 1
                stats['errors'].append(f"Feed {feed.name}: {result}")
                logger.error(f"Feed {feed.name} failed: {result}")
                continue
            status, feed_stats = result
            stats[f'feeds_{status}'] += 1
            if feed_stats is not None:
                stats['items'].merge(feed_stats)
    finally:
        if owns_fetcher:
            await fetcher.aclose()
        if owns_extractor:
            await extractor.aclose()
        if owns_queue:
            await queue.aclose()

    stats['items'] = stats['items'].as_dict()
    stats['runtime_seconds'] = round(time.time() - start_time, 2)

    logger.info(
        f"Ingestion completed in {stats['runtime_seconds']}s: "
        f"{stats['feeds_ok']} feeds OK, {stats['feeds_304']} not modified, "
        f"{stats['feeds_error']} errors, "
        f"{stats['items']['inserted']}/{stats['items']['total']} items inserted"
    )
    return stats


async def _process_feed(
    feed: FeedSource,
    fetcher: RSSFetcher,
    queue: MessageQueue,
    extractor: ContentExtractor,
    session_factory: async_sessionmaker,
) -> Tuple[str, Optional[IngestStats]]:
    """Fetch one feed and ingest its newest entries. Returns (status, stats)."""
    result = await fetcher.fetch(feed.url, etag=feed.etag, last_modified=feed.last_modified)

    async with session_factory() as session:
        if result.status_code == 304:
            await update_feed_headers(session, feed, None, None)
            return '304', None
        if result.status_code != 200 or result.feed is None:
            await increment_feed_error_count(session, feed, result.error or f"HTTP {result.status_code}")
            return 'error', None

    entries = batch_normalize_entries(result.feed.entries, limit=MAX_ITEMS_PER_FEED)
    feed_stats = await ingest_entries(
        entries,
        feed.label or feed.name,
        queue=queue,
        extractor=extractor,
        session_factory=session_factory,
        default_source_type=feed.source_type or 'rss',
    )

    async with session_factory() as session:
        await update_feed_headers(session, feed, result.etag, result.last_modified)

    return 'ok', feed_stats


def run_cli(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Synchronous CLI wrapper for the feed ingestion run."""
    settings = get_settings()
    if settings.queue_backend == 'memory':
        logger.warning("QUEUE_BACKEND=memory: item_process messages will not outlive this process")
    return asyncio.run(run_ingest(config_path=config_path))


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='Newsweave feed ingestion')
    parser.add_argument('--config', default=None, help='Path to feeds YAML (default: FEEDS_CONFIG_PATH)')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging')
    args = parser.parse_args()

    setup_logging("ingestor")
    if args.verbose:
        import logging
        logging.getLogger('newsweave').setLevel(logging.DEBUG)

    stats = run_cli(config_path=args.config)

    items = stats['items']
    print("\n=== Feed Ingestion Results ===")
    print(f"Runtime: {stats['runtime_seconds']}s")
    print(f"Feeds OK: {stats['feeds_ok']}  Not modified: {stats['feeds_304']}  Errors: {stats['feeds_error']}")
    print(f"Items: {items['inserted']} inserted, {items['duplicates']} duplicates, "
          f"{items['upgraded']} upgraded, {items['failed']} failed (of {items['total']})")

    errors = stats['errors'] + items['errors']
    if errors:
        print(f"\nErrors ({len(errors)}):")
        for error in errors[:10]:
            print(f"  - {error}")

    return 0 if not stats['errors'] else 1


if __name__ == "__main__":
    exit(main())
