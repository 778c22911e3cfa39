"""AI analysis, translation and discussion summaries for items.

Every call here degrades to a deterministic result built from the item's
own fields when the completion service is missing or answers with
something that does not parse. Enrichment never blocks on an LLM
formatting slip.
"""

from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from newsweave.core.errors import MalformedResponseError
from newsweave.core.logging import get_logger
from newsweave.core.settings import get_settings
from newsweave.llm.provider import CompletionProvider, extract_json

logger = get_logger(__name__)

MAX_TAGS = 5
MAX_KEYWORDS = 8
ANALYSIS_INPUT_CHARS = 4000
TRANSLATION_INPUT_CHARS = 12000
# Content at or below this length is not worth translating
MIN_TRANSLATE_CHARS = 100


class AnalysisResult(BaseModel):
    """Shape-checked output of the analysis prompt."""
    tags: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    title_localized: str
    summary: str
    summary_localized: str = ""
    title_en: str = ""
    category: str = "Other"
    fallback: bool = False

    @field_validator("tags", "keywords", mode="before")
    @classmethod
    def clean_terms(cls, v):
        if not isinstance(v, list):
            return []
        return list(dict.fromkeys(str(term).strip() for term in v if str(term).strip()))

    @field_validator("tags")
    @classmethod
    def cap_tags(cls, v: List[str]) -> List[str]:
        return v[:MAX_TAGS]

    @field_validator("keywords")
    @classmethod
    def cap_keywords(cls, v: List[str]) -> List[str]:
        return v[:MAX_KEYWORDS]

    @field_validator("title_localized", "summary")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


def fallback_analysis(title: str, summary: Optional[str]) -> AnalysisResult:
    """Deterministic analysis derived from the item itself."""
    title = title or ""
    fallback_summary = summary or (title[:100] + "...")
    return AnalysisResult(
        tags=["Other"],
        keywords=title.split()[:5],
        title_localized=title or fallback_summary,
        summary=fallback_summary,
        summary_localized=fallback_summary,
        title_en=title,
        category="Other",
        fallback=True,
    )


def build_analysis_prompt(title: str, summary: str, content: str, language: str, hint: str = "") -> str:
    body = (content or summary or "")[:ANALYSIS_INPUT_CHARS]
    return (
        "Analyze the following item and respond with ONLY a JSON object with keys:\n"
        '  "tags": up to 5 short topical tags in English,\n'
        '  "keywords": up to 8 search keywords,\n'
        '  "category": one broad category in English,\n'
        f'  "title_localized": the title translated into {language},\n'
        '  "title_en": the title in English,\n'
        '  "summary": a 2-3 sentence English summary,\n'
        f'  "summary_localized": the same summary in {language}.\n'
        f"{hint}\n"
        f"Title: {title}\n"
        f"Summary: {summary or ''}\n"
        f"Content:\n{body}"
    )


async def analyze_item(
    provider: CompletionProvider,
    title: str,
    summary: Optional[str] = None,
    content: Optional[str] = None,
    hint: str = "",
) -> AnalysisResult:
    """
    Tag, summarize and translate one item.

    Args:
        provider: Completion service
        title: Item title
        summary: Existing summary, if any
        content: Body text, if any
        hint: Platform-specific instructions appended to the prompt

    Returns:
        AnalysisResult (fallback=True when the model output was unusable)
    """
    language = get_settings().target_language
    prompt = build_analysis_prompt(title, summary or "", content or "", language, hint)

    text = await provider.complete(prompt, max_tokens=1200)
    try:
        data = extract_json(text)
        return AnalysisResult(**{k: v for k, v in data.items() if k != "fallback"})
    except (MalformedResponseError, ValidationError, TypeError) as e:
        logger.warning(f"Analysis output unusable, using fallback: {e}", extra={"title": title[:80]})
        return fallback_analysis(title, summary)


async def translate_text(provider: CompletionProvider, text: str) -> Optional[str]:
    """
    Translate long-form text into the target language.

    Returns:
        Translation, or None when the service gave nothing usable
    """
    language = get_settings().target_language
    prompt = (
        f"Translate the following text into {language}. Keep paragraph breaks and "
        "markdown formatting. Respond with the translation only.\n\n"
        f"{text[:TRANSLATION_INPUT_CHARS]}"
    )
    result = await provider.complete(prompt, max_tokens=4000)
    if not result or not result.strip():
        return None
    return result.strip()


async def summarize_discussion(
    provider: CompletionProvider,
    title: str,
    comments: List[Dict[str, Any]],
) -> Optional[Dict[str, str]]:
    """
    Summarize a comment thread.

    Returns:
        {'summary', 'summary_localized'} or None
    """
    if not comments:
        return None

    language = get_settings().target_language
    lines = "\n".join(f"- {c.get('author') or 'anon'}: {c['text'][:300]}" for c in comments)
    prompt = (
        f'Summarize the main viewpoints of this discussion about "{title}". '
        'Respond with ONLY a JSON object {"summary": "...", "summary_localized": "..."} '
        f"where summary_localized is written in {language}.\n\n{lines}"
    )
    try:
        data = extract_json(await provider.complete(prompt, max_tokens=800))
    except MalformedResponseError as e:
        logger.warning(f"Discussion summary unusable: {e}")
        return None

    summary = str(data.get("summary") or "").strip()
    if not summary:
        return None
    return {"summary": summary, "summary_localized": str(data.get("summary_localized") or "").strip()}
