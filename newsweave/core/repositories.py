"""Repository layer for database operations.

Async functions over an AsyncSession for feeds, items, topics and
workflow bookkeeping. Each write commits its own unit of work.
"""

from datetime import datetime
from typing import List, Optional, Tuple, Dict, Any, Iterable

from sqlalchemy import select, func, delete, update, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from newsweave.core.models import FeedSource, Item, Topic, WorkflowRun, WorkflowCheckpoint
from newsweave.core.logging import get_logger
from newsweave.core.time import utcnow

logger = get_logger(__name__)

EXISTENCE_CHUNK_SIZE = 50
SOURCE_TYPE_CHUNK_SIZE = 200


def chunked(values: List[Any], size: int) -> Iterable[List[Any]]:
    """Yield consecutive slices of at most `size` elements."""
    for start in range(0, len(values), size):
        yield values[start:start + size]


# ---------------------------------------------------------------------------
# Feed sources
# ---------------------------------------------------------------------------

async def upsert_feed_from_yaml(session: AsyncSession, yaml_rec: Dict[str, Any]) -> FeedSource:
    """
    Upsert a feed source from a YAML record by URL.

    Args:
        session: Database session
        yaml_rec: YAML record with feed configuration

    Returns:
        FeedSource object (existing or newly created)
    """
    url = yaml_rec.get('url')
    if not url:
        raise ValueError("Feed record missing required 'url' field")

    result = await session.execute(select(FeedSource).where(FeedSource.url == url))
    existing = result.scalar_one_or_none()

    if existing:
        update_data = {
            field: yaml_rec[field]
            for field in ('name', 'label', 'source_type', 'active')
            if field in yaml_rec
        }
        if update_data:
            await session.execute(
                update(FeedSource).where(FeedSource.id == existing.id).values(**update_data)
            )
            await session.commit()
            await session.refresh(existing)
        logger.debug(f"Updated existing feed: {existing.name} ({url})")
        return existing

    feed = FeedSource(
        url=url,
        name=yaml_rec.get('name', url),
        label=yaml_rec.get('label') or yaml_rec.get('name', url),
        source_type=yaml_rec.get('source_type', 'rss'),
        active=yaml_rec.get('active', True),
        error_count=0,
    )
    session.add(feed)
    await session.commit()
    await session.refresh(feed)

    logger.info(f"Created new feed: {feed.name} ({url})")
    return feed


async def list_active_feeds(session: AsyncSession) -> List[FeedSource]:
    """Get all active feeds ordered by name."""
    result = await session.execute(
        select(FeedSource).where(FeedSource.active.is_(True)).order_by(FeedSource.name)
    )
    return list(result.scalars().all())


async def update_feed_headers(
    session: AsyncSession,
    feed: FeedSource,
    etag: Optional[str],
    last_modified: Optional[datetime],
    checked_at: Optional[datetime] = None
) -> None:
    """
    Store conditional-request headers and reset the error counter.

    None values keep the previously stored header.
    """
    values: Dict[str, Any] = {
        'last_checked_at': checked_at or utcnow(),
        'error_count': 0,
    }
    if etag is not None:
        values['etag'] = etag
    if last_modified is not None:
        values['last_modified'] = last_modified

    await session.execute(update(FeedSource).where(FeedSource.id == feed.id).values(**values))
    await session.commit()


async def increment_feed_error_count(session: AsyncSession, feed: FeedSource, error_msg: str) -> None:
    """Increment a feed's error counter after a failed fetch."""
    await session.execute(
        update(FeedSource)
        .where(FeedSource.id == feed.id)
        .values(error_count=FeedSource.error_count + 1, last_checked_at=utcnow())
    )
    await session.commit()
    logger.warning(f"Feed error for {feed.name}: {error_msg}")


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

async def find_existing_by_urls(
    session: AsyncSession,
    urls: List[str],
    chunk_size: int = EXISTENCE_CHUNK_SIZE
) -> Dict[str, Tuple[int, Optional[str]]]:
    """
    Batch existence check by normalized URL.

    Queries in chunks to bound the IN-list size.

    Returns:
        Mapping url -> (item id, current source label)
    """
    existing: Dict[str, Tuple[int, Optional[str]]] = {}
    unique_urls = list(dict.fromkeys(u for u in urls if u))

    for chunk in chunked(unique_urls, chunk_size):
        result = await session.execute(
            select(Item.id, Item.url, Item.source).where(Item.url.in_(chunk))
        )
        for item_id, url, source in result.all():
            existing[url] = (item_id, source)

    return existing


async def insert_item(session: AsyncSession, record: Dict[str, Any]) -> Tuple[bool, Item]:
    """
    Insert an item, resolving a unique-URL race by re-selecting.

    Returns:
        Tuple of (was_created, item)
    """
    item = Item(**record)
    session.add(item)
    try:
        await session.commit()
        await session.refresh(item)
        return True, item
    except IntegrityError:
        await session.rollback()
        existing = await get_item_by_url(session, record['url'])
        if existing is None:
            raise
        logger.debug(f"Item inserted concurrently, reusing id={existing.id}: {record['url']}")
        return False, existing


async def get_item(session: AsyncSession, item_id: int) -> Optional[Item]:
    """Load an item by id, bypassing the identity map so reads see fresh rows."""
    result = await session.execute(
        select(Item).where(Item.id == item_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_item_by_url(session: AsyncSession, url: str) -> Optional[Item]:
    result = await session.execute(select(Item).where(Item.url == url))
    return result.scalar_one_or_none()


async def update_item_fields(session: AsyncSession, item_id: int, fields: Dict[str, Any]) -> int:
    """
    Field-level partial update of one item.

    Returns:
        Number of rows updated (0 if the item is gone or nothing to write)
    """
    if not fields:
        return 0
    result = await session.execute(
        update(Item).where(Item.id == item_id).values(**fields, updated_at=utcnow())
    )
    await session.commit()
    return result.rowcount or 0


async def source_types_for_ids(
    session: AsyncSession,
    item_ids: List[int],
    chunk_size: int = SOURCE_TYPE_CHUNK_SIZE
) -> Dict[int, str]:
    """Resolve source_type per item id, chunked."""
    source_types: Dict[int, str] = {}
    for chunk in chunked(list(dict.fromkeys(item_ids)), chunk_size):
        result = await session.execute(select(Item.id, Item.source_type).where(Item.id.in_(chunk)))
        for item_id, source_type in result.all():
            source_types[item_id] = source_type
    return source_types


async def items_needing_retry(
    session: AsyncSession,
    since: datetime,
    limit: int = 1000,
    translate_min_chars: Optional[int] = None,
) -> List[int]:
    """
    Ids of recently ingested items whose enrichment is incomplete.

    An item qualifies when it lacks a localized title, a localized summary
    or an embedding. With `translate_min_chars` set, content longer than
    that which was never translated also qualifies; leave it None when no
    translation would be attempted.
    """
    incomplete = [
        Item.title_localized.is_(None),
        Item.summary_localized.is_(None),
        Item.embedding.is_(None),
    ]
    if translate_min_chars is not None:
        incomplete.append(and_(
            Item.content.is_not(None),
            func.length(Item.content) > translate_min_chars,
            Item.content_localized.is_(None),
        ))

    stmt = (
        select(Item.id)
        .where(Item.ingested_at >= since, or_(*incomplete))
        .order_by(Item.ingested_at.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [row[0] for row in result.all()]


async def embedded_items_since(
    session: AsyncSession,
    since: datetime,
    exclude_id: int
) -> List[Tuple[int, Optional[int], List[float]]]:
    """Embedded items published since `since`, excluding one id."""
    stmt = select(Item.id, Item.topic_id, Item.embedding).where(
        Item.id != exclude_id,
        Item.embedding.is_not(None),
        Item.published_at >= since,
    )
    result = await session.execute(stmt)
    return [(row[0], row[1], row[2]) for row in result.all() if row[2]]


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------

async def create_topic(session: AsyncSession, values: Dict[str, Any]) -> Topic:
    topic = Topic(**values)
    session.add(topic)
    await session.commit()
    await session.refresh(topic)
    return topic


async def delete_topic(session: AsyncSession, topic_id: int) -> None:
    """Delete a topic, returning any members it already claimed to topicless."""
    await session.execute(update(Item).where(Item.topic_id == topic_id).values(topic_id=None))
    await session.execute(delete(Topic).where(Topic.id == topic_id))
    await session.commit()


async def get_topic(session: AsyncSession, topic_id: int) -> Optional[Topic]:
    result = await session.execute(
        select(Topic).where(Topic.id == topic_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def set_topic_for_items(session: AsyncSession, topic_id: int, item_ids: List[int]) -> int:
    """
    Assign a topic to several items in a single UPDATE.

    Only topicless items are touched, so an item's topic is set at most once.
    """
    result = await session.execute(
        update(Item)
        .where(Item.id.in_(item_ids), Item.topic_id.is_(None))
        .values(topic_id=topic_id)
    )
    await session.commit()
    return result.rowcount or 0


async def recompute_topic_stats(session: AsyncSession, topic_id: int) -> int:
    """
    Recompute member count and first/last seen from the topic's actual members.

    Returns:
        Current member count
    """
    seen = func.coalesce(Item.published_at, Item.ingested_at)
    result = await session.execute(
        select(func.count(Item.id), func.min(seen), func.max(seen)).where(Item.topic_id == topic_id)
    )
    count, first_seen, last_seen = result.one()

    await session.execute(
        update(Topic)
        .where(Topic.id == topic_id)
        .values(member_count=count, first_seen_at=first_seen, last_seen_at=last_seen)
    )
    await session.commit()
    return int(count or 0)


async def recent_topic_members(session: AsyncSession, topic_id: int, limit: int = 20) -> List[Item]:
    """Most recently published members of a topic."""
    result = await session.execute(
        select(Item)
        .where(Item.topic_id == topic_id)
        .order_by(Item.published_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def update_topic_display(session: AsyncSession, topic_id: int, fields: Dict[str, Any]) -> None:
    await session.execute(
        update(Topic).where(Topic.id == topic_id).values(**fields, updated_at=utcnow())
    )
    await session.commit()


# ---------------------------------------------------------------------------
# Workflow runs and checkpoints
# ---------------------------------------------------------------------------

async def get_or_create_workflow_run(
    session: AsyncSession,
    instance_id: str,
    item_id: int,
    source_type: str
) -> Tuple[bool, WorkflowRun]:
    """Register a workflow instance; returns (was_created, run)."""
    existing = await get_workflow_run(session, instance_id)
    if existing is not None:
        return False, existing

    run = WorkflowRun(instance_id=instance_id, item_id=item_id, source_type=source_type, status="queued")
    session.add(run)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await get_workflow_run(session, instance_id)
        if existing is None:
            raise
        return False, existing
    return True, run


async def get_workflow_run(session: AsyncSession, instance_id: str) -> Optional[WorkflowRun]:
    result = await session.execute(
        select(WorkflowRun)
        .where(WorkflowRun.instance_id == instance_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def set_workflow_status(
    session: AsyncSession,
    instance_id: str,
    status: str,
    output: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None
) -> None:
    values: Dict[str, Any] = {'status': status, 'updated_at': utcnow()}
    if output is not None:
        values['output'] = output
    if error is not None:
        values['error'] = error[:2000]
    await session.execute(update(WorkflowRun).where(WorkflowRun.instance_id == instance_id).values(**values))
    await session.commit()


async def get_checkpoint(session: AsyncSession, instance_id: str, step_name: str) -> Optional[WorkflowCheckpoint]:
    result = await session.execute(
        select(WorkflowCheckpoint)
        .where(WorkflowCheckpoint.instance_id == instance_id, WorkflowCheckpoint.step_name == step_name)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def save_checkpoint(
    session: AsyncSession,
    instance_id: str,
    step_name: str,
    status: str,
    result: Any = None,
    attempts: int = 0,
    error: Optional[str] = None
) -> None:
    """Insert or overwrite the checkpoint for (instance, step)."""
    values = {
        'status': status,
        'result': result,
        'attempts': attempts,
        'error': error[:2000] if error else None,
        'updated_at': utcnow(),
    }
    existing = await get_checkpoint(session, instance_id, step_name)
    if existing is None:
        session.add(WorkflowCheckpoint(instance_id=instance_id, step_name=step_name, **values))
        try:
            await session.commit()
            return
        except IntegrityError:
            await session.rollback()

    await session.execute(
        update(WorkflowCheckpoint)
        .where(WorkflowCheckpoint.instance_id == instance_id, WorkflowCheckpoint.step_name == step_name)
        .values(**values)
    )
    await session.commit()


async def list_checkpoints(session: AsyncSession, instance_id: str) -> List[WorkflowCheckpoint]:
    result = await session.execute(
        select(WorkflowCheckpoint)
        .where(WorkflowCheckpoint.instance_id == instance_id)
        .order_by(WorkflowCheckpoint.id)
    )
    return list(result.scalars().all())
