"""Shared fixtures: a throwaway SQLite database and fake collaborators."""

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from newsweave.core.db import build_engine, build_session_factory, create_all
from newsweave.core.repositories import insert_item
from newsweave.enrichment.embedding import EmbeddingProvider
from newsweave.ingestor.extractor import ContentExtractor, ExtractedContent
from newsweave.llm.provider import CompletionProvider

DIM = 1024
NOW = datetime.now(timezone.utc)


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions get their own connections."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'newsweave.db'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


async def no_sleep(_seconds):
    return None


# ---------------------------------------------------------------------------
# Vectors
# ---------------------------------------------------------------------------

def basis(i: int) -> List[float]:
    v = [0.0] * DIM
    v[i] = 1.0
    return v


def blend(*parts) -> List[float]:
    """Sum of (weight, vector) pairs."""
    v = [0.0] * DIM
    for weight, vec in parts:
        for i, x in enumerate(vec):
            if x:
                v[i] += weight * x
    return v


def with_similarity(sim: float, anchor: int = 0, other: int = 1) -> List[float]:
    """Unit vector whose cosine similarity to basis(anchor) is `sim`."""
    return blend((sim, basis(anchor)), (math.sqrt(1 - sim * sim), basis(other)))


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

_counter = {'n': 0}


async def make_item(session_factory, **fields) -> int:
    """Insert an item with sensible defaults and return its id."""
    _counter['n'] += 1
    record = {
        'url': f"https://example.com/story/{_counter['n']}",
        'title': f"Story {_counter['n']}",
        'source': 'Example Feed',
        'source_type': 'rss',
        'tags': [],
        'keywords': [],
        'published_at': NOW,
        'ingested_at': NOW,
    }
    record.update(fields)
    async with session_factory() as session:
        _, item = await insert_item(session, record)
    return item.id


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeProvider(CompletionProvider):
    """Completion provider answering from a callable and recording prompts."""

    def __init__(self, responder: Optional[Callable[[str], Optional[str]]] = None, available: bool = True):
        self.responder = responder or (lambda prompt: None)
        self._available = available
        self.prompts: List[str] = []
        self.calls: List[Dict[str, Any]] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    @property
    def available(self) -> bool:
        return self._available

    async def complete(self, prompt, *, system=None, max_tokens=None, temperature=0.3):
        self.prompts.append(prompt)
        self.calls.append({'max_tokens': max_tokens, 'temperature': temperature})
        return self.responder(prompt)


ANALYSIS_JSON = (
    '{"tags": ["AI", "Chips"], "keywords": ["nvidia", "gpu"], "category": "Technology", '
    '"title_localized": "本地化标题", "title_en": "English Title", '
    '"summary": "A short summary.", "summary_localized": "简短摘要。"}'
)

SYNTHESIS_JSON = (
    '{"title": "Topic headline", "title_localized": "话题标题", '
    '"description": "What happened.", "description_localized": "发生了什么。"}'
)


def smart_responder(prompt: str) -> Optional[str]:
    """Route prompts by their opening instruction to canned answers."""
    if prompt.startswith("Translate"):
        return "翻译后的内容"
    if prompt.startswith("The following news items"):
        return SYNTHESIS_JSON
    if prompt.startswith("Identify up to"):
        return '{"highlights": [{"time": "0:30", "title": "Intro", "title_localized": "介绍"}]}'
    if prompt.startswith("Summarize the main viewpoints"):
        return '{"summary": "Commenters disagree.", "summary_localized": "评论者意见不一。"}'
    return ANALYSIS_JSON


class FakeEmbedder(EmbeddingProvider):
    """Returns vectors keyed by a marker found in the embedding text."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default: Optional[List[float]] = None):
        self.vectors = vectors or {}
        self.default = default
        self.texts: List[str] = []

    async def embed(self, text: str):
        self.texts.append(text)
        for marker, vector in self.vectors.items():
            if marker in text:
                return list(vector)
        return list(self.default) if self.default else None


class FakeExtractor(ContentExtractor):
    """Serves canned pages and metadata; unknown URLs raise."""

    def __init__(
        self,
        pages: Optional[Dict[str, ExtractedContent]] = None,
        metadata: Optional[Callable[[str, Optional[str]], Optional[Dict[str, Any]]]] = None,
        discussions: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.pages = pages or {}
        self.metadata_fn = metadata or (lambda url, comments: None)
        self.discussions = discussions or {}
        self.extract_calls: List[str] = []
        self.metadata_calls: List[str] = []

    async def extract(self, url: str) -> ExtractedContent:
        self.extract_calls.append(url)
        if url not in self.pages:
            raise RuntimeError(f"cannot fetch {url}")
        return self.pages[url]

    async def platform_metadata(self, url, comments_url=None):
        self.metadata_calls.append(url)
        return self.metadata_fn(url, comments_url)

    async def hn_discussion(self, item_id):
        return self.discussions.get(item_id)
