"""Content extraction collaborators.

`ContentExtractor` is the seam between the core and platform-specific
scraping. `WebExtractor` is the bundled default: plain httpx fetches,
BeautifulSoup for Open Graph tags and body text, and public JSON
endpoints (Algolia HN, oEmbed) for platform metadata.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List

import httpx
from bs4 import BeautifulSoup
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from newsweave.core.errors import TransientIOError, ContentValidationError
from newsweave.core.logging import get_logger
from newsweave.core.time import iso, utcnow
from newsweave.ingestor.normalizer import (
    clean_text, detect_platform, hn_item_id, is_hn_discussion, parse_datetime_guess
)

logger = get_logger(__name__)

HN_ITEM_API = "https://hn.algolia.com/api/v1/items/{item_id}"
HN_ITEM_URL = "https://news.ycombinator.com/item?id={item_id}"
YOUTUBE_OEMBED = "https://www.youtube.com/oembed"
TWITTER_OEMBED = "https://publish.twitter.com/oembed"
MAX_CONTENT_CHARS = 50000


@dataclass
class ExtractedContent:
    """What an extractor could learn about one URL."""
    title: str = ""
    content: str = ""
    summary: str = ""
    og_image: Optional[str] = None
    site_name: Optional[str] = None
    published_at: Optional[datetime] = None
    platform_metadata: Optional[Dict[str, Any]] = None


def build_platform_metadata(platform: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Tagged platform metadata envelope stored on items."""
    return {
        'type': platform,
        'fetchedAt': iso(utcnow()),
        'data': data,
        'enrichments': {},
    }


class ContentExtractor(ABC):
    """Abstract content extraction service."""

    @abstractmethod
    async def extract(self, url: str) -> ExtractedContent:
        """Scrape a URL. Raises on failure."""
        pass

    @abstractmethod
    async def platform_metadata(self, url: str, comments_url: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Platform metadata for a URL, or None when the platform has none."""
        pass

    async def hn_discussion(self, item_id: str) -> Optional[Dict[str, Any]]:
        """Hacker News item with its comment tree, or None."""
        return None

    async def aclose(self) -> None:
        pass


class WebExtractor(ContentExtractor):
    """Default extractor over plain HTTP."""

    def __init__(self, timeout: float = 15.0, client: Optional[httpx.AsyncClient] = None):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": "Newsweave/0.1 (+content extractor)"},
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
        retry=retry_if_exception_type(TransientIOError),
        reraise=True
    )
    async def _get(self, url: str, params: Optional[Dict[str, str]] = None) -> httpx.Response:
        try:
            response = await self.client.get(url, params=params)
        except httpx.RequestError as e:
            raise TransientIOError(f"Request error for {url}: {e}")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIOError(f"HTTP {response.status_code} for {url}")
        return response

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Optional[Dict[str, Any]]:
        response = await self._get(url, params=params)
        if response.status_code != 200:
            logger.warning(f"HTTP {response.status_code} fetching {url}")
            return None
        return response.json()

    async def extract(self, url: str) -> ExtractedContent:
        response = await self._get(url)
        if response.status_code != 200:
            raise ContentValidationError(f"HTTP {response.status_code} for {url}")

        extracted = parse_html(response.text)
        extracted.platform_metadata = await self.platform_metadata(url)
        return extracted

    async def platform_metadata(self, url: str, comments_url: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Fetch platform metadata for Hacker News, YouTube and Twitter URLs.

        A Hacker News discussion link in `comments_url` takes precedence
        over the item URL's own platform.
        """
        if is_hn_discussion(comments_url):
            return await self._hn_metadata(hn_item_id(comments_url), external_url=url)

        platform = detect_platform(url)
        if platform == 'hackernews':
            item_id = hn_item_id(url)
            return await self._hn_metadata(item_id, external_url=None) if item_id else None
        if platform == 'youtube':
            data = await self._get_json(YOUTUBE_OEMBED, params={'url': url, 'format': 'json'})
            if not data:
                return None
            return build_platform_metadata('youtube', {
                'videoId': youtube_video_id(url),
                'title': data.get('title'),
                'channel': data.get('author_name'),
                'thumbnail': data.get('thumbnail_url'),
            })
        if platform == 'twitter':
            data = await self._get_json(TWITTER_OEMBED, params={'url': url, 'omit_script': 'true'})
            if not data:
                return None
            return build_platform_metadata('twitter', {
                'author': data.get('author_name'),
                'authorUrl': data.get('author_url'),
                'text': clean_text(data.get('html', '')),
            })
        return None

    async def hn_discussion(self, item_id: str) -> Optional[Dict[str, Any]]:
        return await self._get_json(HN_ITEM_API.format(item_id=item_id))

    async def _hn_metadata(self, item_id: Optional[str], external_url: Optional[str]) -> Optional[Dict[str, Any]]:
        if not item_id:
            return None
        data = await self.hn_discussion(item_id)
        if not data:
            return None
        return build_platform_metadata('hackernews', {
            'itemId': item_id,
            'hnUrl': HN_ITEM_URL.format(item_id=item_id),
            'externalUrl': external_url or data.get('url'),
            'title': data.get('title'),
            'author': data.get('author'),
            'points': data.get('points'),
            'commentCount': count_comments(data.get('children') or []),
            'text': clean_text(data.get('text') or ''),
        })


def parse_html(html: str) -> ExtractedContent:
    """Pull Open Graph fields and readable body text out of an HTML page."""
    soup = BeautifulSoup(html, 'html.parser')

    def meta(*names: str) -> Optional[str]:
        for name in names:
            tag = soup.find('meta', attrs={'property': name}) or soup.find('meta', attrs={'name': name})
            if tag and tag.get('content'):
                return tag['content'].strip()
        return None

    for tag in soup(['script', 'style', 'nav', 'footer', 'header', 'aside', 'form']):
        tag.decompose()

    container = soup.find('article') or soup.find('main') or soup.body or soup
    paragraphs = [clean_text(p.get_text(' ')) for p in container.find_all(['p', 'h2', 'h3', 'li'])]
    content = '\n\n'.join(p for p in paragraphs if p)
    if not content:
        content = clean_text(container.get_text(' '))

    title = meta('og:title', 'twitter:title') or (clean_text(soup.title.get_text()) if soup.title else '')
    published = meta('article:published_time', 'og:published_time', 'date')

    return ExtractedContent(
        title=title,
        content=content[:MAX_CONTENT_CHARS],
        summary=meta('og:description', 'description', 'twitter:description') or '',
        og_image=meta('og:image', 'twitter:image'),
        site_name=meta('og:site_name'),
        published_at=parse_datetime_guess(published) if published else None,
    )


def youtube_video_id(url: str) -> Optional[str]:
    match = re.search(r'(?:v=|youtu\.be/|/shorts/|/embed/)([A-Za-z0-9_-]{11})', url)
    return match.group(1) if match else None


def count_comments(children: List[Dict[str, Any]]) -> int:
    return sum(1 + count_comments(child.get('children') or []) for child in children)


def flatten_comments(children: List[Dict[str, Any]], limit: int = 50, depth: int = 0) -> List[Dict[str, Any]]:
    """Depth-first list of {author, text, depth} for the first `limit` comments."""
    flat: List[Dict[str, Any]] = []
    for child in children:
        if len(flat) >= limit:
            break
        text = clean_text(child.get('text') or '')
        if text:
            flat.append({'author': child.get('author'), 'text': text, 'depth': depth})
        flat.extend(flatten_comments(child.get('children') or [], limit - len(flat), depth + 1))
    return flat[:limit]
