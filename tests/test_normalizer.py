"""Tests for URL and feed entry normalization."""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from newsweave.ingestor.normalizer import (
    normalize_url,
    normalize_entry,
    batch_normalize_entries,
    detect_platform,
    is_hn_discussion,
    hn_item_id,
    clean_text,
    parse_datetime_guess,
)


class TestNormalizeUrl:
    """Tests for the item identity key."""

    def test_strips_tracking_params(self):
        url = "https://example.com/a?utm_source=rss&id=7&fbclid=xyz&ref=social"
        assert normalize_url(url) == "https://example.com/a?id=7"

    def test_strips_cache_busters_case_insensitively(self):
        url = "https://example.com/a?NoCache=1&_T=123&page=2"
        assert normalize_url(url) == "https://example.com/a?page=2"

    def test_sorts_remaining_params(self):
        assert normalize_url("https://example.com/a?b=2&a=1") == "https://example.com/a?a=1&b=2"

    def test_lowercases_scheme_and_host_but_not_path(self):
        assert normalize_url("HTTPS://Example.COM/Some/Path") == "https://example.com/Some/Path"

    def test_drops_fragment(self):
        assert normalize_url("https://example.com/a#comments") == "https://example.com/a"

    def test_keeps_blank_values(self):
        assert normalize_url("https://example.com/a?flag=") == "https://example.com/a?flag="

    @pytest.mark.parametrize("url", [
        "https://example.com/a?utm_source=x&b=2&a=1#frag",
        "HTTP://WWW.Example.com/path?_=123",
        "https://news.ycombinator.com/item?id=123",
        "https://example.com/",
    ])
    def test_idempotent(self, url):
        once = normalize_url(url)
        assert normalize_url(once) == once

    def test_non_url_passthrough(self):
        assert normalize_url("  not-a-url  ") == "not-a-url"
        assert normalize_url("") == ""


class TestPlatformDetection:

    @pytest.mark.parametrize("url,platform", [
        ("https://twitter.com/user/status/1", "twitter"),
        ("https://x.com/user/status/1", "twitter"),
        ("https://www.youtube.com/watch?v=abc", "youtube"),
        ("https://youtu.be/abc", "youtube"),
        ("https://news.ycombinator.com/item?id=1", "hackernews"),
        ("https://example.com/post", "web"),
    ])
    def test_detect_platform(self, url, platform):
        assert detect_platform(url) == platform

    def test_hn_discussion_links(self):
        assert is_hn_discussion("https://news.ycombinator.com/item?id=42")
        assert not is_hn_discussion("https://news.ycombinator.com/")
        assert not is_hn_discussion(None)
        assert hn_item_id("https://news.ycombinator.com/item?id=42") == "42"
        assert hn_item_id("https://news.ycombinator.com/item?id=abc") is None


class TestNormalizeEntry:
    """Tests for RSS entry normalization."""

    @pytest.fixture
    def detailed_entry(self):
        entry = SimpleNamespace()
        entry.title = "  <b>Breaking</b>   News  "
        entry.link = "https://Example.com/article/456?utm_source=rss&ref=social"
        entry.summary = "<p>This is a <strong>detailed</strong> summary.</p><script>x()</script>"
        entry.published = "2024-01-01T15:30:00Z"
        entry.author = "Jane Doe"
        entry.comments = "https://news.ycombinator.com/item?id=99"
        entry.content = [{"value": "<div>Full content here.</div>"}]
        return entry

    def test_normalize_entry_detailed(self, detailed_entry):
        raw = normalize_entry(detailed_entry)

        assert raw is not None
        assert raw.url == "https://example.com/article/456"
        assert raw.title == "Breaking News"
        assert raw.summary == "This is a detailed summary."
        assert raw.content == "Full content here."
        assert raw.published_at == datetime(2024, 1, 1, 15, 30, tzinfo=timezone.utc)
        assert raw.comments_url == "https://news.ycombinator.com/item?id=99"
        assert raw.payload["author"] == "Jane Doe"

    def test_entry_without_link_is_dropped(self):
        entry = SimpleNamespace(title="No link", link=None, summary="x")
        assert normalize_entry(entry) is None

    def test_title_falls_back_to_url(self):
        raw = normalize_entry({"link": "https://example.com/x", "title": ""})
        assert raw.title == "https://example.com/x"

    def test_batch_limit_and_skips(self):
        entries = [{"link": f"https://example.com/{i}", "title": str(i)} for i in range(5)]
        entries.insert(1, {"link": "", "title": "broken"})

        normalized = batch_normalize_entries(entries, limit=4)

        assert [r.title for r in normalized] == ["0", "1", "2"]


class TestHelpers:

    def test_clean_text(self):
        assert clean_text("<style>p{}</style><p>a\n\n b</p>") == "a b"
        assert clean_text("") == ""

    def test_parse_datetime_guess(self):
        parsed = parse_datetime_guess("Wed, 01 Jan 2024 12:00:00 GMT")
        assert parsed == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

        fallback = parse_datetime_guess("not a date")
        assert fallback.tzinfo is not None
