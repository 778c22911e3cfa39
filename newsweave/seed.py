"""Database initialization.

Creates every table and registers the feeds listed in config/feeds.yaml.
Safe to re-run: table creation skips existing tables and feeds are
upserted by URL.
"""

import asyncio
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from newsweave.core.db import AsyncSessionLocal, create_all
from newsweave.core.logging import get_logger, setup_logging
from newsweave.core.repositories import upsert_feed_from_yaml, list_active_feeds
from newsweave.ingestor.pipeline import load_feeds_config

logger = get_logger(__name__)


async def seed_database(
    config_path: Optional[str] = None,
    engine: Optional[AsyncEngine] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> Dict[str, int]:
    """
    Create tables and upsert feeds from YAML.

    Args:
        config_path: Feeds YAML (defaults to FEEDS_CONFIG_PATH)
        engine: Engine to create tables on (defaults to DB_URL)
        session_factory: Session factory for the feed upserts

    Returns:
        {'feeds_processed': n, 'feeds_failed': m, 'feeds_active': k}
    """
    session_factory = session_factory or AsyncSessionLocal

    await create_all(engine)
    logger.info("Database tables ready")

    feeds_config = load_feeds_config(config_path).get('feeds', [])
    processed = failed = 0
    async with session_factory() as session:
        for feed_config in feeds_config:
            try:
                feed = await upsert_feed_from_yaml(session, feed_config)
            except ValueError as e:
                logger.error(f"Skipping feed {feed_config.get('name', 'unknown')}: {e}")
                failed += 1
                continue
            logger.info(f"Registered feed {feed.name} ({feed.url})")
            processed += 1

        active = len(await list_active_feeds(session))

    return {'feeds_processed': processed, 'feeds_failed': failed, 'feeds_active': active}


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='Create tables and register feeds')
    parser.add_argument('--config', default=None, help='Path to feeds YAML (default: FEEDS_CONFIG_PATH)')
    args = parser.parse_args()

    setup_logging("seed")
    stats = asyncio.run(seed_database(config_path=args.config))

    print(f"Feeds registered: {stats['feeds_processed']}  Skipped: {stats['feeds_failed']}")
    print(f"Active feeds: {stats['feeds_active']}")
    if stats['feeds_active'] == 0:
        print("No active feeds; check the feeds YAML")
        return 1
    return 0


if __name__ == "__main__":
    exit(main())
