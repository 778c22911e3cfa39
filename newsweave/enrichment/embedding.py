"""Embedding service clients and text preparation."""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

import httpx
import numpy as np
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from newsweave.core.errors import TransientIOError
from newsweave.core.logging import get_logger
from newsweave.core.settings import Settings, get_settings

logger = get_logger(__name__)

EMBEDDING_DIM = 1024
MAX_EMBEDDING_TEXT = 8000


def build_embedding_text(item: Dict[str, Any]) -> str:
    """Concatenate titles, summaries, tags and keywords; clipped to MAX_EMBEDDING_TEXT."""
    parts = [
        item.get('title'),
        item.get('title_localized'),
        item.get('summary'),
        item.get('summary_localized'),
        ' '.join(item.get('tags') or []),
        ' '.join(item.get('keywords') or []),
    ]
    return ' '.join(p.strip() for p in parts if p and p.strip())[:MAX_EMBEDDING_TEXT]


def l2_normalize(vector: List[float]) -> List[float]:
    """Scale to unit length; a zero vector is returned unchanged."""
    arr = np.asarray(vector, dtype=float)
    norm = np.linalg.norm(arr)
    if norm == 0:
        return arr.tolist()
    return (arr / norm).tolist()


class EmbeddingProvider(ABC):
    """Abstract embedding service."""

    @abstractmethod
    async def embed(self, text: str) -> Optional[List[float]]:
        """Embedding for `text`, or None when unavailable."""
        pass

    async def aclose(self) -> None:
        pass


class HttpEmbeddingProvider(EmbeddingProvider):
    """OpenAI-compatible /embeddings endpoint (e.g. a hosted bge-m3)."""

    def __init__(
        self,
        url: str,
        model: str = "bge-m3",
        api_key: str = "",
        dimensions: int = EMBEDDING_DIM,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.model = model
        self.api_key = api_key
        self.dimensions = dimensions
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _post(self, text: str) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            response = await self.client.post(self.url, json={"model": self.model, "input": text}, headers=headers)
        except httpx.RequestError as e:
            raise TransientIOError(f"Embedding request error: {e}")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIOError(f"Embedding HTTP {response.status_code}")
        response.raise_for_status()
        return response.json()

    async def embed(self, text: str) -> Optional[List[float]]:
        if not text:
            return None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(3),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
                retry=retry_if_exception_type(TransientIOError),
                reraise=True,
            ):
                with attempt:
                    data = await self._post(text)
            vector = data["data"][0]["embedding"]
        except Exception as e:
            logger.error(f"Embedding failed: {e}", extra={"model": self.model})
            return None

        if len(vector) != self.dimensions:
            logger.error(f"Embedding has {len(vector)} dimensions, expected {self.dimensions}")
            return None
        return [float(x) for x in vector]


class NoEmbeddingProvider(EmbeddingProvider):
    """Used when no embedding service is configured."""

    async def embed(self, text: str) -> Optional[List[float]]:
        return None


def build_embedding_provider(settings: Optional[Settings] = None) -> EmbeddingProvider:
    settings = settings or get_settings()
    if not settings.embedding_url:
        logger.warning("EMBEDDING_URL not set; items will not be clustered")
        return NoEmbeddingProvider()
    return HttpEmbeddingProvider(
        url=settings.embedding_url,
        model=settings.embedding_model,
        api_key=settings.embedding_api_key,
    )
