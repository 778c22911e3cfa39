"""Topic assignment by nearest-neighbour similarity.

An embedded, topicless item joins the topic of its most similar
topic-bearing neighbour, or founds a new topic together with its
topicless neighbours. Singletons stay topicless.
"""

from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Dict, Any, List, Optional, Tuple

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity
from sqlalchemy.ext.asyncio import AsyncSession

from newsweave.core.logging import get_logger
from newsweave.core.repositories import (
    get_item,
    embedded_items_since,
    create_topic,
    delete_topic,
    set_topic_for_items,
    recompute_topic_stats,
)
from newsweave.core.time import utcnow, to_utc

logger = get_logger(__name__)

SIMILARITY_THRESHOLD = 0.85
TIME_WINDOW_DAYS = 7
MAX_CANDIDATES = 10
SYNTHESIS_THRESHOLDS = frozenset({2, 3, 5, 10})


@dataclass
class TopicAssignment:
    """Outcome of assign_topic; topic_id None means no-op."""
    topic_id: Optional[int] = None
    is_new_topic: bool = False
    member_count: int = 0
    needs_synthesis: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Candidate:
    item_id: int
    topic_id: Optional[int]
    similarity: float


def should_synthesize(member_count: int, is_new_topic: bool) -> bool:
    """A new topic with 2+ members, or an existing one reaching 2, 3, 5 or 10 members."""
    return (is_new_topic and member_count >= 2) or member_count in SYNTHESIS_THRESHOLDS


def rank_candidates(
    embedding: List[float],
    neighbours: List[Tuple[int, Optional[int], List[float]]],
    threshold: float = SIMILARITY_THRESHOLD,
    limit: int = MAX_CANDIDATES,
) -> List[Candidate]:
    """
    Neighbours at or above the similarity threshold, most similar first.

    Args:
        embedding: Query vector
        neighbours: (item_id, topic_id, embedding) tuples
        threshold: Minimum cosine similarity
        limit: Maximum number of candidates

    Returns:
        Candidates sorted by descending similarity
    """
    if not neighbours:
        return []

    dim = len(embedding)
    usable = [n for n in neighbours if len(n[2]) == dim]
    if len(usable) != len(neighbours):
        logger.warning(f"Ignoring {len(neighbours) - len(usable)} neighbours with mismatched dimensions")
    if not usable:
        return []

    query = np.asarray(embedding, dtype=float).reshape(1, -1)
    matrix = np.asarray([n[2] for n in usable], dtype=float)
    similarities = cosine_similarity(query, matrix)[0]

    # Tolerance keeps exact-threshold pairs from being lost to float rounding
    candidates = [
        Candidate(item_id=n[0], topic_id=n[1], similarity=float(s))
        for n, s in zip(usable, similarities)
        if s >= threshold - 1e-9
    ]
    candidates.sort(key=lambda c: c.similarity, reverse=True)
    return candidates[:limit]


async def find_candidates(session: AsyncSession, item_id: int, embedding: List[float], now=None) -> List[Candidate]:
    """Similar embedded items published within the trailing time window."""
    since = (to_utc(now) if now else utcnow()) - timedelta(days=TIME_WINDOW_DAYS)
    neighbours = await embedded_items_since(session, since, exclude_id=item_id)
    return rank_candidates(embedding, neighbours)


async def assign_topic(session: AsyncSession, item_id: int, now=None) -> TopicAssignment:
    """
    Put an embedded item into a topic.

    No-op unless the item exists, has an embedding and has no topic yet.
    Joins the topic of the most similar topic-bearing candidate; otherwise
    founds a topic with every topicless candidate. A failed founding
    assignment deletes the new topic again.

    Args:
        session: Database session
        item_id: Item to cluster
        now: Reference time for the similarity window (defaults to now)

    Returns:
        TopicAssignment
    """
    item = await get_item(session, item_id)
    if item is None or not item.embedding or item.topic_id is not None:
        return TopicAssignment()

    candidates = await find_candidates(session, item.id, item.embedding, now=now)
    if not candidates:
        logger.debug(f"Item {item_id} has no similar neighbours; leaving topicless")
        return TopicAssignment()

    with_topic = next((c for c in candidates if c.topic_id is not None), None)
    if with_topic is not None:
        return await _join_topic(session, item_id, with_topic)

    return await _create_topic(session, item, candidates)


async def _join_topic(session: AsyncSession, item_id: int, candidate: Candidate) -> TopicAssignment:
    topic_id = candidate.topic_id
    joined = await set_topic_for_items(session, topic_id, [item_id])
    if not joined:
        logger.info(f"Item {item_id} was assigned a topic concurrently; not joining topic {topic_id}")
        return TopicAssignment()
    member_count = await recompute_topic_stats(session, topic_id)

    logger.info(
        f"Item {item_id} joined topic {topic_id} (similarity {candidate.similarity:.3f}, {member_count} members)"
    )
    return TopicAssignment(
        topic_id=topic_id,
        is_new_topic=False,
        member_count=member_count,
        needs_synthesis=should_synthesize(member_count, False),
    )


async def _create_topic(session: AsyncSession, item, candidates: List[Candidate]) -> TopicAssignment:
    now = utcnow()
    item_id = item.id
    topic = await create_topic(session, {
        'title': item.title,
        'title_localized': item.title_localized,
        'canonical_item_id': item_id,
        'member_count': len(candidates) + 1,
        'first_seen_at': now,
        'last_seen_at': now,
    })
    topic_id = topic.id

    member_ids = [item_id] + [c.item_id for c in candidates]
    try:
        assigned = await set_topic_for_items(session, topic_id, member_ids)
    except Exception as e:
        logger.error(f"Topic {topic_id} member assignment failed, deleting topic: {e}")
        await session.rollback()
        await delete_topic(session, topic_id)
        return TopicAssignment()

    # Members may have been claimed by another topic in the meantime
    if assigned < 2:
        logger.warning(f"Topic {topic_id} got {assigned} members, deleting topic")
        await delete_topic(session, topic_id)
        return TopicAssignment()

    member_count = await recompute_topic_stats(session, topic_id)
    logger.info(f"Created topic {topic_id} from item {item_id} with {member_count} members")
    return TopicAssignment(
        topic_id=topic_id,
        is_new_topic=True,
        member_count=member_count,
        needs_synthesis=should_synthesize(member_count, True),
    )
