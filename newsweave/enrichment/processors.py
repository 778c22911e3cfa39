"""Per-platform item processors.

A closed set of variants behind `ItemProcessor.process(item)`:
default, web, twitter, hackernews and youtube. Each returns the fields
to write (only fields that are still empty on the item, so a re-run
after a crash never stacks results) plus an `enrichments` bag that is
merged into platform_metadata.

Items are passed as plain dict snapshots of the row.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Type

from newsweave.core.logging import get_logger
from newsweave.core.time import iso, utcnow
from newsweave.enrichment.analysis import AnalysisResult, analyze_item, translate_text, summarize_discussion
from newsweave.ingestor.extractor import ContentExtractor, flatten_comments, HN_ITEM_URL
from newsweave.ingestor.normalizer import detect_platform
from newsweave.llm.provider import CompletionProvider

logger = get_logger(__name__)

URL_PATTERN = re.compile(r'https?://[^\s<>"]+')
TWEET_ARTICLE_MIN_CHARS = 500
MAX_DISCUSSION_COMMENTS = 40


@dataclass
class ProcessorResult:
    """Partial item update plus platform enrichments."""
    update_data: Dict[str, Any] = field(default_factory=dict)
    enrichments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'update_data': self.update_data, 'enrichments': self.enrichments}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessorResult":
        return cls(update_data=dict(data.get('update_data') or {}), enrichments=dict(data.get('enrichments') or {}))


def is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def fill_empty(item: Dict[str, Any], candidates: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only candidate values for fields that are empty on the item."""
    return {
        key: value
        for key, value in candidates.items()
        if not is_empty(value) and is_empty(item.get(key))
    }


def merge_tags(*groups: List[str]) -> List[str]:
    merged: List[str] = []
    for group in groups:
        for tag in group or []:
            if tag and tag not in merged:
                merged.append(tag)
    return merged


def platform_data(item: Dict[str, Any]) -> Dict[str, Any]:
    metadata = item.get('platform_metadata') or {}
    return metadata.get('data') or {}


def merge_platform_metadata(
    existing: Optional[Dict[str, Any]],
    enrichments: Dict[str, Any],
    platform: str,
) -> Dict[str, Any]:
    """Merge an enrichments bag into the platform metadata envelope."""
    metadata = dict(existing or {'type': platform, 'data': {}})
    merged = dict(metadata.get('enrichments') or {})
    merged.update(enrichments)
    merged['processedAt'] = iso(utcnow())
    metadata['enrichments'] = merged
    return metadata


class ItemProcessor(ABC):
    """Platform-specific AI enrichment."""

    name = "default"
    platform_tag: Optional[str] = None
    analysis_hint = ""

    def __init__(self, provider: CompletionProvider, extractor: ContentExtractor):
        self.provider = provider
        self.extractor = extractor

    @abstractmethod
    async def process(self, item: Dict[str, Any]) -> ProcessorResult:
        pass

    async def analyze(self, title: str, summary: Optional[str], content: Optional[str]) -> AnalysisResult:
        return await analyze_item(self.provider, title, summary, content, hint=self.analysis_hint)

    def analysis_update(self, item: Dict[str, Any], analysis: AnalysisResult) -> Dict[str, Any]:
        """Fields derived from an analysis, restricted to those still empty."""
        tags = merge_tags(analysis.tags, [analysis.category], [self.platform_tag] if self.platform_tag else [])
        update = fill_empty(item, {
            'tags': tags,
            'keywords': analysis.keywords,
            'title_localized': analysis.title_localized,
            'summary': analysis.summary,
            'summary_localized': analysis.summary_localized,
        })
        # English title replaces a foreign-language original on first enrichment
        if is_empty(item.get('title_localized')) and analysis.title_en and not analysis.fallback:
            update['title'] = analysis.title_en
        return update


class DefaultProcessor(ItemProcessor):
    """Articles from feeds and anything without a dedicated processor."""

    name = "default"

    async def process(self, item: Dict[str, Any]) -> ProcessorResult:
        analysis = await self.analyze(item.get('title', ''), item.get('summary'), item.get('content'))
        return ProcessorResult(update_data=self.analysis_update(item, analysis))


class WebProcessor(DefaultProcessor):
    """Manually submitted pages; backfills body text when the row has none."""

    name = "web"

    async def process(self, item: Dict[str, Any]) -> ProcessorResult:
        item = dict(item)
        extra: Dict[str, Any] = {}
        if is_empty(item.get('content')):
            try:
                extracted = await self.extractor.extract(item['url'])
            except Exception as e:
                logger.warning(f"Content backfill failed for {item['url']}: {e}")
            else:
                extra = fill_empty(item, {'content': extracted.content, 'og_image_url': extracted.og_image})
                item.update(extra)

        result = await super().process(item)
        result.update_data = {**extra, **result.update_data}
        return result


class TwitterProcessor(ItemProcessor):
    """
    Tweets come in three shapes:

    - long-form posts/articles: analysed like an article
    - short posts pointing at an external link: the linked page is analysed
    - regular posts: translated as-is
    """

    name = "twitter"
    platform_tag = "Twitter"
    analysis_hint = "The item is a social media post; keep the summary close to the author's words."

    async def process(self, item: Dict[str, Any]) -> ProcessorResult:
        text = platform_data(item).get('text') or item.get('content') or item.get('summary') or item.get('title', '')

        if len(text) >= TWEET_ARTICLE_MIN_CHARS:
            analysis = await self.analyze(item.get('title', ''), item.get('summary'), text)
            return ProcessorResult(
                update_data=self.analysis_update(item, analysis),
                enrichments={'tweetKind': 'article'},
            )

        linked_url = self._external_link(text)
        if linked_url:
            try:
                linked = await self.extractor.extract(linked_url)
            except Exception as e:
                logger.warning(f"Linked page extraction failed for {linked_url}: {e}")
                linked = None
            if linked and linked.content:
                analysis = await self.analyze(linked.title or item.get('title', ''), text, linked.content)
                return ProcessorResult(
                    update_data=self.analysis_update(item, analysis),
                    enrichments={'tweetKind': 'link', 'linkedUrl': linked_url, 'linkedTitle': linked.title},
                )

        translation = await translate_text(self.provider, text)
        update = fill_empty(item, {
            'summary': text,
            'title_localized': translation or text,
            'summary_localized': translation or text,
            'tags': [self.platform_tag],
            'keywords': item.get('title', '').split()[:5],
        })
        return ProcessorResult(update_data=update, enrichments={'tweetKind': 'post'})

    def _external_link(self, text: str) -> Optional[str]:
        for url in URL_PATTERN.findall(text or ''):
            if detect_platform(url) != 'twitter' and 't.co/' not in url:
                return url.rstrip('.,)')
        return None


class HackerNewsProcessor(ItemProcessor):
    """Story analysis plus a summary of the HN comment thread."""

    name = "hackernews"
    platform_tag = "HackerNews"

    async def process(self, item: Dict[str, Any]) -> ProcessorResult:
        item = dict(item)
        data = platform_data(item)
        item_id = data.get('itemId')
        enrichments: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}

        if item_id:
            enrichments['hnUrl'] = data.get('hnUrl') or HN_ITEM_URL.format(item_id=item_id)
        external_url = data.get('externalUrl') or item.get('url')
        enrichments['externalUrl'] = external_url
        if data.get('text'):
            enrichments['hnText'] = data['text']

        if item_id:
            discussion = await self.extractor.hn_discussion(str(item_id))
            comments = flatten_comments((discussion or {}).get('children') or [], limit=MAX_DISCUSSION_COMMENTS)
            summary = await summarize_discussion(self.provider, item.get('title', ''), comments)
            if summary:
                enrichments['discussionSummary'] = summary['summary']
                enrichments['discussionSummaryLocalized'] = summary['summary_localized']
            enrichments['commentCount'] = len(comments)

        if is_empty(item.get('content')) and external_url and detect_platform(external_url) == 'web':
            try:
                extracted = await self.extractor.extract(external_url)
            except Exception as e:
                logger.warning(f"HN linked page extraction failed for {external_url}: {e}")
            else:
                extra = fill_empty(item, {'content': extracted.content, 'og_image_url': extracted.og_image})
                item.update(extra)

        analysis = await self.analyze(item.get('title', ''), item.get('summary') or data.get('text'), item.get('content'))
        return ProcessorResult(update_data={**extra, **self.analysis_update(item, analysis)}, enrichments=enrichments)


class YouTubeProcessor(ItemProcessor):
    """Videos: analysed from title, description and transcript opening."""

    name = "youtube"
    platform_tag = "YouTube"
    analysis_hint = "The item is a video; summarize what the video covers."

    async def process(self, item: Dict[str, Any]) -> ProcessorResult:
        data = platform_data(item)
        transcript = data.get('transcript') or ''
        analysis = await self.analyze(
            item.get('title', ''),
            item.get('summary'),
            item.get('content') or transcript,
        )
        enrichments = {k: data[k] for k in ('videoId', 'channel') if data.get(k)}
        return ProcessorResult(update_data=self.analysis_update(item, analysis), enrichments=enrichments)


PROCESSORS: Dict[str, Type[ItemProcessor]] = {
    'default': DefaultProcessor,
    'rss': DefaultProcessor,
    'web': WebProcessor,
    'twitter': TwitterProcessor,
    'hackernews': HackerNewsProcessor,
    'youtube': YouTubeProcessor,
}


def get_processor(source_type: str, provider: CompletionProvider, extractor: ContentExtractor) -> ItemProcessor:
    """Processor for a source type; unknown types use the default processor."""
    processor_class = PROCESSORS.get(source_type)
    if processor_class is None:
        logger.warning(f"No processor for source type '{source_type}', using default")
        processor_class = DefaultProcessor
    return processor_class(provider, extractor)
