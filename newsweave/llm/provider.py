"""
Completion provider interface and implementations.

Providers return the completion text, or None on any failure: callers
treat a missing answer as a MalformedResponse and fall back to defaults.
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, List

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from newsweave.core.errors import MalformedResponseError, TransientIOError
from newsweave.core.logging import get_logger
from newsweave.core.settings import Settings, get_settings

logger = get_logger(__name__)

DEFAULT_TEMPERATURE = 0.3


class CompletionProvider(ABC):
    """Abstract base class for completion providers."""

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> Optional[str]:
        """
        Run one chat completion.

        Args:
            prompt: User message
            system: Optional system message
            max_tokens: Completion length cap
            temperature: Sampling temperature

        Returns:
            Completion text, or None on failure
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identification name."""
        pass

    @property
    def available(self) -> bool:
        """Whether a credential is configured."""
        return True

    async def aclose(self) -> None:
        pass


class OpenRouterProvider(CompletionProvider):
    """OpenAI-compatible chat completions over OpenRouter."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1/chat/completions",
        timeout: float = 60.0,
        max_attempts: int = 3,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_attempts = max_attempts
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @property
    def provider_name(self) -> str:
        return "openrouter"

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.client.post(
                self.base_url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.RequestError as e:
            raise TransientIOError(f"OpenRouter request error: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIOError(f"OpenRouter HTTP {response.status_code}")
        response.raise_for_status()
        return response.json()

    async def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> Optional[str]:
        if not self.available:
            return None

        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        payload: Dict[str, Any] = {"model": self.model, "messages": messages, "temperature": temperature}
        if max_tokens:
            payload["max_tokens"] = max_tokens

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=8),
                retry=retry_if_exception_type(TransientIOError),
                reraise=True,
            ):
                with attempt:
                    data = await self._post(payload)
        except Exception as e:
            logger.error(f"Completion failed: {e}", extra={"model": self.model})
            return None

        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            logger.warning("Completion response missing choices", extra={"model": self.model})
            return None


class NoCompletionProvider(CompletionProvider):
    """Provider used when no completion service is configured."""

    @property
    def provider_name(self) -> str:
        return "none"

    @property
    def available(self) -> bool:
        return False

    async def complete(self, prompt: str, **kwargs) -> Optional[str]:
        return None


def build_completion_provider(settings: Optional[Settings] = None) -> CompletionProvider:
    """OpenRouter when OPENROUTER_API_KEY is set, otherwise the null provider."""
    settings = settings or get_settings()
    if not settings.openrouter_api_key:
        logger.warning("OPENROUTER_API_KEY not set; AI enrichment falls back to defaults")
        return NoCompletionProvider()
    return OpenRouterProvider(
        api_key=settings.openrouter_api_key,
        model=settings.openrouter_model,
        base_url=settings.openrouter_base_url,
        timeout=settings.llm_timeout_seconds,
    )


_JSON_OBJECT = re.compile(r'\{[\s\S]*\}')


def extract_json(text: Optional[str]) -> Dict[str, Any]:
    """
    Parse the first-to-last brace span of a completion as a JSON object.

    Raises:
        MalformedResponseError: no object found or it does not parse
    """
    if not text:
        raise MalformedResponseError("Empty completion")

    match = _JSON_OBJECT.search(text)
    if not match:
        raise MalformedResponseError("No JSON object in completion")

    try:
        value = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Invalid JSON in completion: {e}")

    if not isinstance(value, dict):
        raise MalformedResponseError("Completion JSON is not an object")
    return value
