"""Source-priority ranking for provenance upgrades.

When a producer rediscovers an item that is already stored, the item's
`source` label is replaced only if the producer outranks the stored
label. Named low-priority producers are listed explicitly; anything
else (feed names, publisher names) gets DEFAULT_RANK.
"""

from typing import Optional

SOURCE_PRIORITY = {
    'Twitter': 0,
    'Unknown': 0,
    'Telegram': 1,
}

DEFAULT_RANK = 10


def source_rank(label: Optional[str]) -> int:
    """Rank of a provenance label; a missing label counts as Unknown."""
    if not label:
        return SOURCE_PRIORITY['Unknown']
    return SOURCE_PRIORITY.get(label, DEFAULT_RANK)


def should_upgrade(producer_label: Optional[str], existing_label: Optional[str]) -> bool:
    """True iff the producer strictly outranks the stored label."""
    return source_rank(producer_label) > source_rank(existing_label)
