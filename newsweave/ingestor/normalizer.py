"""Feed entry and URL normalization helpers.

Normalized URLs are the identity key for items: every producer passes
URLs through `normalize_url` before the existence check.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode

from bs4 import BeautifulSoup
from dateutil import parser as date_parser

from newsweave.core.logging import get_logger
from newsweave.core.time import to_utc, utcnow

logger = get_logger(__name__)

# Tracking, auth and cache-busting query parameters dropped from item URLs
STRIP_PARAMS = frozenset(p.lower() for p in (
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_content', 'utm_term',
    'ref', 'fbclid', 'gclid', 'mc_eid', 'mc_cid',
    'access_token', 'token', 'auth_token', 'api_key',
    '_', '__', 'nc', 'cachebust', 'noCache', 'cache', 'rand', 'random',
    '_rnd', '_refresh', '_t', '_ts', '_dc', '_q', '_nocache',
    'timestamp', 'ts', 'time', 'cb', 'r', 'sid', 'ttl', 'vfff', 'ttt',
))

PLATFORM_HOSTS = {
    'twitter': ('twitter.com', 'x.com', 'mobile.twitter.com'),
    'youtube': ('youtube.com', 'youtu.be', 'm.youtube.com'),
    'hackernews': ('news.ycombinator.com',),
}


@dataclass
class RawEntry:
    """One producer record awaiting deduplication."""
    url: str
    title: str
    summary: str = ""
    content: str = ""
    published_at: Optional[datetime] = None
    comments_url: Optional[str] = None
    image_url: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


def clean_text(html_or_text: str) -> str:
    """
    Clean HTML/text content by stripping script/style tags and normalizing whitespace.

    Args:
        html_or_text: Raw HTML or text content

    Returns:
        Cleaned text with normalized whitespace
    """
    if not html_or_text:
        return ""

    soup = BeautifulSoup(html_or_text, 'html.parser')
    for tag in soup(["script", "style"]):
        tag.decompose()

    return re.sub(r'\s+', ' ', soup.get_text()).strip()


def parse_datetime_guess(value) -> datetime:
    """
    Parse datetime from various formats with fallback to current UTC.

    Args:
        value: String, datetime, or other value to parse

    Returns:
        Aware UTC datetime; now if parsing fails
    """
    if not value:
        return utcnow()

    if isinstance(value, datetime):
        return to_utc(value)

    if isinstance(value, str):
        try:
            return to_utc(date_parser.parse(value))
        except (ValueError, TypeError, OverflowError) as e:
            logger.warning(f"Failed to parse datetime '{value}': {e}")

    return utcnow()


def normalize_url(url: str) -> str:
    """
    Canonicalize a URL for identity comparison.

    Lowercases scheme and host, drops the fragment and every STRIP_PARAMS
    query parameter, and sorts what remains. Idempotent.

    Args:
        url: Original URL string

    Returns:
        Normalized URL string
    """
    if not url:
        return ""

    raw = url.strip()
    parsed = urlparse(raw)
    if not parsed.scheme or not parsed.netloc:
        return raw

    params = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if key.lower() not in STRIP_PARAMS
    ]
    query = urlencode(sorted(params)) if params else ''

    return urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        parsed.path,
        parsed.params,
        query,
        '',
    ))


def url_host(url: str) -> str:
    """Host of a URL without a leading www."""
    host = (urlparse(url).hostname or '').lower()
    return host[4:] if host.startswith('www.') else host


def detect_platform(url: str) -> str:
    """
    Map a URL to the platform that should process it.

    Returns:
        One of twitter, youtube, hackernews or web
    """
    host = url_host(url)
    for platform, hosts in PLATFORM_HOSTS.items():
        if host in hosts:
            return platform
    return 'web'


def is_hn_discussion(url: Optional[str]) -> bool:
    """True for news.ycombinator.com item links."""
    return bool(url) and detect_platform(url) == 'hackernews' and 'id=' in url


def hn_item_id(url: str) -> Optional[str]:
    """Extract the numeric item id from a Hacker News discussion link."""
    for key, value in parse_qsl(urlparse(url).query):
        if key == 'id' and value.isdigit():
            return value
    return None


def _get_field(obj, name, default=None):
    if hasattr(obj, 'get'):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _entry_image(entry) -> Optional[str]:
    for key in ('media_thumbnail', 'media_content'):
        media = _get_field(entry, key)
        if media and isinstance(media, list) and isinstance(media[0], dict) and media[0].get('url'):
            return media[0]['url']
    for enclosure in _get_field(entry, 'enclosures', None) or []:
        if isinstance(enclosure, dict) and str(enclosure.get('type', '')).startswith('image/'):
            return enclosure.get('href') or enclosure.get('url')
    return None


def normalize_entry(entry: Any) -> Optional[RawEntry]:
    """
    Normalize an RSS/Atom entry (feedparser dict or namespace) to a RawEntry.

    Returns:
        RawEntry, or None when the entry has no usable link
    """
    link = _get_field(entry, 'link', '') or _get_field(entry, 'url', '')
    url = normalize_url(link)
    if not url.startswith(('http://', 'https://')):
        logger.debug(f"Skipping entry without usable link: {link!r}")
        return None

    title = clean_text(_get_field(entry, 'title', '') or '')
    summary = clean_text(_get_field(entry, 'summary', '') or _get_field(entry, 'description', '') or '')

    content = ''
    content_list = _get_field(entry, 'content')
    if isinstance(content_list, list) and content_list:
        first = content_list[0]
        content = clean_text(first.get('value', '') if isinstance(first, dict) else str(first))

    published_raw = (
        _get_field(entry, 'published') or
        _get_field(entry, 'updated') or
        _get_field(entry, 'created') or
        _get_field(entry, 'pubDate')
    )

    return RawEntry(
        url=url,
        title=title or url,
        summary=summary,
        content=content,
        published_at=parse_datetime_guess(published_raw),
        comments_url=_get_field(entry, 'comments') or None,
        image_url=_entry_image(entry),
        payload={'id': _get_field(entry, 'id'), 'author': _get_field(entry, 'author')},
    )


def batch_normalize_entries(entries: List[Any], limit: Optional[int] = None) -> List[RawEntry]:
    """
    Normalize a batch of feed entries, dropping unusable ones.

    Args:
        entries: Raw feedparser entries
        limit: Keep at most this many entries (feed order)

    Returns:
        List of RawEntry
    """
    normalized: List[RawEntry] = []

    for i, entry in enumerate(entries[:limit] if limit else entries):
        try:
            raw = normalize_entry(entry)
        except Exception as e:
            logger.error(f"Error normalizing entry {i}: {e}")
            continue
        if raw is not None:
            normalized.append(raw)

    return normalized
