"""AI headline and description synthesis for topics."""

from typing import List

from pydantic import BaseModel, ValidationError, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from newsweave.core.errors import MalformedResponseError
from newsweave.core.logging import get_logger
from newsweave.core.models import Item
from newsweave.core.repositories import get_topic, recent_topic_members, update_topic_display
from newsweave.core.settings import get_settings
from newsweave.llm.provider import CompletionProvider, extract_json

logger = get_logger(__name__)

SYNTHESIS_MAX_ITEMS = 20
SUMMARY_SNIPPET_CHARS = 200
MAX_ITEM_TAGS = 5


class SynthesizedTopic(BaseModel):
    """Strict shape of the synthesis answer; all fields required and non-blank."""
    title: str
    title_localized: str
    description: str
    description_localized: str

    @field_validator("*")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


def build_synthesis_prompt(items: List[Item], language: str) -> str:
    lines = []
    for i, item in enumerate(items, 1):
        title = item.title_localized or item.title
        summary = (item.summary or "")[:SUMMARY_SNIPPET_CHARS]
        tags = ", ".join((item.tags or [])[:MAX_ITEM_TAGS])
        lines.append(f"{i}. {title}\n   Summary: {summary}\n   Tags: {tags}\n   Source: {item.source or 'Unknown'}")

    return (
        "The following news items all cover the same story. Write a neutral headline and a "
        "2-3 sentence description of the story as a whole.\n"
        'Respond with ONLY a JSON object: {"title": "...", "title_localized": "...", '
        '"description": "...", "description_localized": "..."} '
        f"where the *_localized fields are written in {language}.\n\n" + "\n".join(lines)
    )


async def synthesize_topic_summary(session: AsyncSession, topic_id: int, provider: CompletionProvider) -> bool:
    """
    Regenerate a topic's display fields from its most recent members.

    The topic is only written when the answer passes validation; any call
    or parse failure leaves it untouched.

    Returns:
        True if the topic was updated
    """
    topic = await get_topic(session, topic_id)
    if topic is None:
        logger.warning(f"Topic {topic_id} not found for synthesis")
        return False

    members = await recent_topic_members(session, topic_id, limit=SYNTHESIS_MAX_ITEMS)
    if not members:
        return False

    prompt = build_synthesis_prompt(members, get_settings().target_language)
    text = await provider.complete(prompt, max_tokens=500, temperature=0.3)

    try:
        result = SynthesizedTopic(**extract_json(text))
    except (MalformedResponseError, ValidationError, TypeError) as e:
        logger.warning(f"Topic {topic_id} synthesis unusable: {e}")
        return False

    await update_topic_display(session, topic_id, result.model_dump())
    logger.info(f"Synthesized topic {topic_id}: {result.title}", extra={"members": len(members)})
    return True
