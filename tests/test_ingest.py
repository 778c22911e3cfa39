"""Tests for producer-side deduplication, insertion and source upgrades."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from newsweave.core.repositories import find_existing_by_urls, get_item, get_item_by_url
from newsweave.ingestor.extractor import build_platform_metadata
from newsweave.ingestor.normalizer import RawEntry
from newsweave.ingestor.pipeline import ingest_entries, dedupe_batch, resolve_source_type, run_ingest
from newsweave.ingestor.priority import should_upgrade, source_rank
from newsweave.ingestor.rss import FetchResult
from newsweave.workflow.messages import ItemProcessMessage
from newsweave.workflow.queue import InMemoryQueue

from tests.conftest import FakeExtractor, make_item


def entry(url, title="Title", comments_url=None):
    return RawEntry(url=url, title=title, summary="Summary", comments_url=comments_url)


def hn_metadata(url, comments_url):
    if comments_url and "ycombinator" in comments_url:
        return build_platform_metadata('hackernews', {'itemId': '42', 'externalUrl': url})
    return None


@pytest.fixture
def queue():
    return InMemoryQueue()


class TestPriority:

    def test_ranks(self):
        assert source_rank("Twitter") == 0
        assert source_rank(None) == 0
        assert source_rank("Telegram") == 1
        assert source_rank("Ars Technica") == 10

    def test_strictly_greater_only(self):
        assert should_upgrade("Ars Technica", "Twitter")
        assert should_upgrade("Telegram", "Unknown")
        assert not should_upgrade("Twitter", "Unknown")
        assert not should_upgrade("Ars Technica", "The Verge")
        assert not should_upgrade("Twitter", "Ars Technica")


class TestDedupeBatch:

    def test_keeps_first_per_normalized_url(self):
        entries = [
            entry("https://example.com/a?utm_source=x", title="first"),
            entry("https://EXAMPLE.com/a", title="second"),
            entry("https://example.com/b"),
        ]
        unique = dedupe_batch(entries)
        assert [e.title for e in unique] == ["first", "Title"]
        assert unique[0].url == "https://example.com/a"

    def test_resolve_source_type(self):
        meta = build_platform_metadata('youtube', {})
        assert resolve_source_type("https://example.com/v", meta, 'rss') == 'youtube'
        assert resolve_source_type("https://x.com/a/status/1", None, 'rss') == 'twitter'
        assert resolve_source_type("https://example.com/a", None, 'rss') == 'rss'


class TestIngestEntries:

    @pytest.mark.asyncio
    async def test_inserts_new_items_once_and_enqueues_each(self, session_factory, queue):
        entries = [
            entry("https://example.com/a"),
            entry("https://example.com/a?utm_medium=feed"),
            entry("https://example.com/b"),
        ]

        stats = await ingest_entries(entries, "Ars Technica", queue=queue, extractor=FakeExtractor(),
                                     session_factory=session_factory)

        assert stats.inserted == 2
        assert stats.duplicates == 1
        assert len(queue.sent) == 2
        assert all(isinstance(m, ItemProcessMessage) for m in queue.sent)
        assert sorted(m.item_id for m in queue.sent) == sorted(stats.item_ids)
        assert {m.source_type for m in queue.sent} == {'rss'}

    @pytest.mark.asyncio
    async def test_existing_items_are_not_reinserted_or_requeued(self, session_factory, queue):
        existing_id = await make_item(session_factory, url="https://example.com/known", source="The Verge")

        stats = await ingest_entries([entry("https://example.com/known")], "Ars Technica",
                                     queue=queue, extractor=FakeExtractor(), session_factory=session_factory)

        assert stats.inserted == 0
        assert stats.duplicates == 1
        assert stats.upgraded == 0
        assert queue.sent == []
        async with session_factory() as session:
            item = await get_item(session, existing_id)
        assert item.source == "The Verge"

    @pytest.mark.asyncio
    async def test_one_failing_item_does_not_abort_batch(self, session_factory, queue):
        def metadata(url, comments):
            if url.endswith("/bad"):
                raise RuntimeError("metadata service down")
            return None

        entries = [entry("https://example.com/good"), entry("https://example.com/bad")]
        stats = await ingest_entries(entries, "Feed", queue=queue, extractor=FakeExtractor(metadata=metadata),
                                     session_factory=session_factory)

        assert stats.inserted == 1
        assert stats.failed == 1
        assert "https://example.com/bad" in stats.errors[0]
        assert len(queue.sent) == 1

    @pytest.mark.asyncio
    async def test_hn_comment_link_marks_item_hackernews(self, session_factory, queue):
        entries = [entry("https://example.com/story", comments_url="https://news.ycombinator.com/item?id=42")]

        stats = await ingest_entries(entries, "Hacker News", queue=queue,
                                     extractor=FakeExtractor(metadata=hn_metadata),
                                     session_factory=session_factory)

        assert queue.sent[0].source_type == 'hackernews'
        async with session_factory() as session:
            item = await get_item(session, stats.item_ids[0])
        assert item.source_type == 'hackernews'
        assert item.platform_metadata['data']['itemId'] == '42'


class TestSourceUpgrade:

    @pytest.mark.asyncio
    async def test_upgrade_from_low_priority_label(self, session_factory, queue):
        item_id = await make_item(session_factory, url="https://example.com/s", source="Twitter")

        stats = await ingest_entries([entry("https://example.com/s")], "Ars Technica", queue=queue,
                                     extractor=FakeExtractor(), session_factory=session_factory)

        assert stats.upgraded == 1
        assert queue.sent == []
        async with session_factory() as session:
            assert (await get_item(session, item_id)).source == "Ars Technica"

    @pytest.mark.asyncio
    async def test_upgrade_is_monotone_and_idempotent(self, session_factory, queue):
        item_id = await make_item(session_factory, url="https://example.com/m", source="Unknown")
        extractor = FakeExtractor()

        first = await ingest_entries([entry("https://example.com/m")], "Telegram", queue=queue,
                                     extractor=extractor, session_factory=session_factory)
        again = await ingest_entries([entry("https://example.com/m")], "Telegram", queue=queue,
                                     extractor=extractor, session_factory=session_factory)
        lower = await ingest_entries([entry("https://example.com/m")], "Twitter", queue=queue,
                                     extractor=extractor, session_factory=session_factory)

        assert (first.upgraded, again.upgraded, lower.upgraded) == (1, 0, 0)
        async with session_factory() as session:
            assert (await get_item(session, item_id)).source == "Telegram"

    @pytest.mark.asyncio
    async def test_upgrade_with_hn_discussion_switches_source_type(self, session_factory, queue):
        item_id = await make_item(session_factory, url="https://example.com/hn", source="Twitter",
                                  source_type="twitter")

        await ingest_entries(
            [entry("https://example.com/hn", comments_url="https://news.ycombinator.com/item?id=42")],
            "Hacker News", queue=queue, extractor=FakeExtractor(metadata=hn_metadata),
            session_factory=session_factory,
        )

        async with session_factory() as session:
            item = await get_item(session, item_id)
        assert item.source == "Hacker News"
        assert item.source_type == 'hackernews'
        assert item.platform_metadata['type'] == 'hackernews'


@pytest.mark.asyncio
async def test_existence_check_spans_chunks(session_factory):
    urls = [f"https://example.com/chunk/{i}" for i in range(7)]
    for url in urls[:5]:
        await make_item(session_factory, url=url)

    async with session_factory() as session:
        existing = await find_existing_by_urls(session, urls, chunk_size=2)

    assert set(existing) == set(urls[:5])
    assert all(source == "Example Feed" for _, source in existing.values())


@pytest.mark.asyncio
async def test_run_ingest_polls_configured_feeds(session_factory, tmp_path):
    config = tmp_path / "feeds.yaml"
    config.write_text(
        "feeds:\n"
        "  - name: Fresh\n    url: https://feeds.example.com/fresh.xml\n    label: Fresh Feed\n"
        "  - name: Stale\n    url: https://feeds.example.com/stale.xml\n"
        "  - name: Broken\n    url: https://feeds.example.com/broken.xml\n"
    )
    parsed = SimpleNamespace(entries=[
        {"link": "https://example.com/one", "title": "One"},
        {"link": "https://example.com/two", "title": "Two"},
    ])

    async def fake_fetch(url, etag=None, last_modified=None):
        if "fresh" in url:
            return FetchResult(status_code=200, feed=parsed, etag='"v1"')
        if "stale" in url:
            return FetchResult(status_code=304)
        return FetchResult(status_code=500, error="HTTP 500")

    fetcher = SimpleNamespace(fetch=AsyncMock(side_effect=fake_fetch), aclose=AsyncMock())
    queue = InMemoryQueue()

    stats = await run_ingest(queue=queue, extractor=FakeExtractor(), fetcher=fetcher,
                             session_factory=session_factory, config_path=str(config))

    assert (stats['feeds_ok'], stats['feeds_304'], stats['feeds_error']) == (1, 1, 1)
    assert stats['items']['inserted'] == 2
    assert len(queue.sent) == 2
    fetcher.aclose.assert_not_awaited()

    async with session_factory() as session:
        item = await get_item_by_url(session, "https://example.com/one")
    assert item.source == "Fresh Feed"
