"""Manual URL submission.

Validates and rate-limits a submission, then takes every URL through the
fast path: normalize, look up, scrape, store, enqueue. Enrichment runs
later in the workflow; the caller gets per-URL results immediately.
"""

import asyncio
import hmac
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from newsweave.api.ratelimit import RateLimiter, rate_limit_key
from newsweave.api.schemas import SubmitRequest, SubmitResult, SubmitResponse, MAX_BATCH_SIZE
from newsweave.core.db import AsyncSessionLocal
from newsweave.core.errors import NewsweaveError
from newsweave.core.logging import get_logger
from newsweave.core.repositories import get_item_by_url, insert_item
from newsweave.core.settings import Settings, get_settings
from newsweave.core.time import utcnow
from newsweave.ingestor.extractor import ContentExtractor
from newsweave.ingestor.normalizer import normalize_url, detect_platform
from newsweave.ingestor.pipeline import resolve_source_type
from newsweave.workflow.messages import ItemProcessMessage
from newsweave.workflow.queue import MessageQueue

logger = get_logger(__name__)

MIN_CONTENT_CHARS = 50
SHORT_CONTENT_PLATFORMS = ('youtube', 'twitter')
DEFAULT_SOURCE_LABEL = "External"


class ApiError(NewsweaveError):
    """Error surfaced to HTTP clients as {success: false, error: {code, message}}."""

    def __init__(self, status_code: int, code: str, message: str, headers: Optional[Dict[str, str]] = None):
        super().__init__(message, code)
        self.status_code = status_code
        self.headers = headers or {}


def check_internal_token(expected: str, x_internal_token: Optional[str], authorization: Optional[str]) -> None:
    """
    Enforce the internal token when one is configured.

    Accepts `x-internal-token: <token>` or `Authorization: Bearer <token>`.
    """
    if not expected:
        return
    provided = x_internal_token
    if not provided and authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise ApiError(401, "UNAUTHORIZED", "Missing or invalid internal token")


def workflow_instance_id(item_id: int, source_type: str) -> str:
    return f"item-{item_id}-{source_type}"


class SubmitService:
    """Admission control plus the per-URL fast path."""

    def __init__(
        self,
        *,
        extractor: ContentExtractor,
        queue: MessageQueue,
        limiter: RateLimiter,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[Settings] = None,
    ):
        self.extractor = extractor
        self.queue = queue
        self.limiter = limiter
        self.session_factory = session_factory or AsyncSessionLocal
        self.settings = settings or get_settings()

    async def submit(self, request: SubmitRequest, client_ip: Optional[str] = None) -> SubmitResponse:
        """
        Validate, admit and process a submission.

        Raises:
            ApiError: 400 invalid/oversized, 429 rate limited, 500 datastore
        """
        urls = request.url_list()
        if not urls:
            raise ApiError(400, "INVALID_REQUEST", "Provide 'url' or a non-empty 'urls' list")
        if len(urls) > MAX_BATCH_SIZE:
            raise ApiError(400, "BATCH_TOO_LARGE", f"At most {MAX_BATCH_SIZE} URLs per request")

        key = rate_limit_key(request.user_id, client_ip)
        verdict = self.limiter.hit(
            key,
            self.settings.submit_rate_limit_max,
            self.settings.submit_rate_limit_window_sec,
            cost=len(urls),
        )
        if verdict.limited:
            logger.info(f"Submission rate limited for {key}", extra={"cost": len(urls)})
            raise ApiError(
                429,
                "RATE_LIMITED",
                f"Too many submissions; retry in {verdict.retry_after_seconds}s",
                headers={"Retry-After": str(verdict.retry_after_seconds)},
            )

        unique = list(dict.fromkeys(urls))
        try:
            outcomes = await asyncio.gather(*[self.process_url(u) for u in unique])
        except SQLAlchemyError as e:
            logger.error(f"Datastore error during submission: {e}")
            raise ApiError(500, "DB_ERROR", "Datastore error")

        by_url = dict(zip(unique, outcomes))
        results = [by_url[u] for u in urls]
        return SubmitResponse(success=any(r.error is None for r in results), results=results)

    async def process_url(self, raw_url: str) -> SubmitResult:
        """Fast path for one URL; per-URL failures become result errors."""
        url = normalize_url(raw_url)
        if not url.startswith(("http://", "https://")):
            return SubmitResult(url=raw_url, error="Invalid URL")

        async with self.session_factory() as session:
            existing = await get_item_by_url(session, url)
        if existing is not None:
            if not existing.title_localized:
                await self.queue.send(ItemProcessMessage(item_id=existing.id, source_type=existing.source_type))
                logger.info(f"Re-queued unprocessed item {existing.id}: {url}")
            return SubmitResult(
                url=raw_url,
                item_id=existing.id,
                instance_id=workflow_instance_id(existing.id, existing.source_type),
                title=existing.title_localized or existing.title,
                already_exists=True,
            )

        platform = detect_platform(url)
        try:
            extracted = await self.extractor.extract(url)
        except Exception as e:
            logger.warning(f"Scrape failed for {url}: {e}")
            return SubmitResult(url=raw_url, error="Scrape failed")

        if len(extracted.content or "") < MIN_CONTENT_CHARS and platform not in SHORT_CONTENT_PLATFORMS:
            return SubmitResult(url=raw_url, error="Content too short")

        source_type = resolve_source_type(url, extracted.platform_metadata, 'web')
        now = utcnow()
        record = {
            'url': url,
            'title': (extracted.title or url)[:800],
            'source': extracted.site_name or DEFAULT_SOURCE_LABEL,
            'source_type': source_type,
            'summary': extracted.summary or None,
            'content': extracted.content or None,
            'tags': [],
            'keywords': [],
            'og_image_url': extracted.og_image,
            'platform_metadata': extracted.platform_metadata,
            'published_at': extracted.published_at or now,
            'ingested_at': now,
        }

        try:
            async with self.session_factory() as session:
                created, item = await insert_item(session, record)
        except SQLAlchemyError as e:
            logger.error(f"Insert failed for {url}: {e}")
            return SubmitResult(url=raw_url, error="DB insert failed")

        if created:
            await self.queue.send(ItemProcessMessage(item_id=item.id, source_type=item.source_type))

        return SubmitResult(
            url=raw_url,
            item_id=item.id,
            instance_id=workflow_instance_id(item.id, item.source_type),
            title=item.title,
            already_exists=not created,
        )
