"""Tests for per-platform processors and AI analysis helpers."""

import pytest

from newsweave.enrichment.analysis import analyze_item, fallback_analysis, AnalysisResult
from newsweave.enrichment.embedding import build_embedding_text, l2_normalize
from newsweave.enrichment.highlights import transcript_text
from newsweave.enrichment.processors import (
    get_processor, fill_empty, merge_platform_metadata, ProcessorResult,
    DefaultProcessor, WebProcessor, TwitterProcessor, HackerNewsProcessor,
)
from newsweave.ingestor.extractor import ExtractedContent

from tests.conftest import FakeProvider, FakeExtractor, ANALYSIS_JSON, smart_responder

ARTICLE_BODY = "Body text of the linked article. " * 10


def item(**fields):
    base = {
        'id': 1, 'url': 'https://example.com/a', 'title': 'Original title', 'title_localized': None,
        'summary': None, 'summary_localized': None, 'content': None, 'tags': [], 'keywords': [],
        'platform_metadata': None,
    }
    base.update(fields)
    return base


class TestAnalysis:

    @pytest.mark.asyncio
    async def test_valid_answer(self):
        result = await analyze_item(FakeProvider(lambda p: ANALYSIS_JSON), "Title")
        assert result.fallback is False
        assert result.tags == ["AI", "Chips"]
        assert result.title_en == "English Title"

    @pytest.mark.asyncio
    async def test_malformed_answer_falls_back(self):
        result = await analyze_item(FakeProvider(lambda p: '{"tags": "oops"'), "Some long title", "A summary")
        assert result.fallback is True
        assert result.tags == ["Other"]
        assert result.summary == "A summary"
        assert result.title_localized == "Some long title"

    def test_terms_are_deduplicated_and_capped(self):
        result = AnalysisResult(
            tags=["a", "b", "a", "c", "d", "e", "f", " "],
            keywords=[str(i) for i in range(12)],
            title_localized="t", summary="s",
        )
        assert result.tags == ["a", "b", "c", "d", "e"]
        assert len(result.keywords) == 8

    def test_fallback_without_summary(self):
        assert fallback_analysis("Headline", None).summary == "Headline..."


class TestHelpers:

    def test_fill_empty_only_touches_empty_fields(self):
        current = {'summary': 'kept', 'tags': [], 'title_localized': None}
        update = fill_empty(current, {'summary': 'new', 'tags': ['x'], 'title_localized': '', 'keywords': ['k']})
        assert update == {'tags': ['x'], 'keywords': ['k']}

    def test_merge_platform_metadata(self):
        existing = {'type': 'youtube', 'data': {'videoId': 'v'}, 'enrichments': {'a': 1}}
        merged = merge_platform_metadata(existing, {'b': 2}, 'youtube')
        processed_at = merged['enrichments'].pop('processedAt')
        assert processed_at
        assert merged['enrichments'] == {'a': 1, 'b': 2}
        assert merged['data'] == {'videoId': 'v'}
        assert 'processedAt' not in merged
        assert existing['enrichments'] == {'a': 1}

        fresh = merge_platform_metadata(None, {'b': 2}, 'web')
        assert fresh['type'] == 'web'

    def test_processor_result_round_trip(self):
        result = ProcessorResult(update_data={'summary': 's'}, enrichments={'k': 1})
        assert ProcessorResult.from_dict(result.to_dict()) == result

    def test_embedding_text_and_normalization(self):
        text = build_embedding_text({'title': 'T', 'summary': ' S ', 'tags': ['a', 'b'], 'keywords': None})
        assert text == "T S a b"
        assert l2_normalize([3.0, 4.0]) == pytest.approx([0.6, 0.8])
        assert l2_normalize([0.0, 0.0]) == [0.0, 0.0]

    def test_transcript_text(self):
        segments = [{'start': 1.7, 'text': 'hello'}, {'text': 'world'}, 'junk']
        assert transcript_text(segments) == "[1s] hello\nworld"
        assert transcript_text(None) == ""


class TestRegistry:

    @pytest.mark.parametrize("source_type,cls", [
        ('rss', DefaultProcessor),
        ('web', WebProcessor),
        ('twitter', TwitterProcessor),
        ('hackernews', HackerNewsProcessor),
        ('telegram', DefaultProcessor),
        ('default', DefaultProcessor),
    ])
    def test_get_processor(self, source_type, cls):
        assert type(get_processor(source_type, FakeProvider(), FakeExtractor())) is cls


class TestTwitterProcessor:

    @pytest.mark.asyncio
    async def test_short_post_is_translated(self):
        provider = FakeProvider(smart_responder)
        processor = TwitterProcessor(provider, FakeExtractor())
        tweet = item(platform_metadata={'type': 'twitter', 'data': {'text': 'Just shipped v2!'}})

        result = await processor.process(tweet)

        assert result.enrichments == {'tweetKind': 'post'}
        assert result.update_data['title_localized'] == "翻译后的内容"
        assert result.update_data['summary'] == "Just shipped v2!"
        assert result.update_data['tags'] == ["Twitter"]

    @pytest.mark.asyncio
    async def test_post_with_link_analyses_linked_page(self):
        extractor = FakeExtractor(pages={
            'https://blog.example.com/post': ExtractedContent(title="Linked", content=ARTICLE_BODY),
        })
        provider = FakeProvider(smart_responder)
        tweet = item(platform_metadata={'data': {'text': 'Read this https://blog.example.com/post.'}})

        result = await TwitterProcessor(provider, extractor).process(tweet)

        assert result.enrichments['tweetKind'] == 'link'
        assert result.enrichments['linkedUrl'] == 'https://blog.example.com/post'
        assert "Twitter" in result.update_data['tags']
        assert ARTICLE_BODY[:50] in provider.prompts[0]

    @pytest.mark.asyncio
    async def test_long_post_is_an_article(self):
        provider = FakeProvider(smart_responder)
        tweet = item(content="x" * 600)

        result = await TwitterProcessor(provider, FakeExtractor()).process(tweet)

        assert result.enrichments == {'tweetKind': 'article'}
        assert result.update_data['title'] == "English Title"


class TestHackerNewsProcessor:

    @pytest.mark.asyncio
    async def test_discussion_summary_and_links(self):
        discussion = {'children': [
            {'author': 'pg', 'text': '<p>Great point</p>', 'children': [{'author': 'dang', 'text': 'Agreed'}]},
            {'author': 'x', 'text': ''},
        ]}
        extractor = FakeExtractor(
            pages={'https://example.com/story': ExtractedContent(content=ARTICLE_BODY, og_image="https://img")},
            discussions={'42': discussion},
        )
        hn_item = item(
            url='https://example.com/story',
            platform_metadata={'type': 'hackernews', 'data': {'itemId': '42', 'text': 'Ask HN text'}},
        )

        result = await HackerNewsProcessor(FakeProvider(smart_responder), extractor).process(hn_item)

        enrichments = result.enrichments
        assert enrichments['hnUrl'] == "https://news.ycombinator.com/item?id=42"
        assert enrichments['externalUrl'] == 'https://example.com/story'
        assert enrichments['hnText'] == 'Ask HN text'
        assert enrichments['commentCount'] == 2
        assert enrichments['discussionSummary'] == "Commenters disagree."
        assert result.update_data['content'] == ARTICLE_BODY
        assert result.update_data['og_image_url'] == "https://img"
        assert "HackerNews" in result.update_data['tags']


class TestWebProcessor:

    @pytest.mark.asyncio
    async def test_backfills_missing_content(self):
        extractor = FakeExtractor(pages={'https://example.com/a': ExtractedContent(content=ARTICLE_BODY)})

        result = await WebProcessor(FakeProvider(smart_responder), extractor).process(item())

        assert result.update_data['content'] == ARTICLE_BODY
        assert result.update_data['title_localized'] == "本地化标题"

    @pytest.mark.asyncio
    async def test_scrape_failure_still_analyses(self):
        result = await WebProcessor(FakeProvider(smart_responder), FakeExtractor()).process(item())

        assert 'content' not in result.update_data
        assert result.update_data['summary'] == "A short summary."
