"""Wiring of collaborators shared by the API, the consumer and the CLI."""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from newsweave.api.ratelimit import RateLimiter
from newsweave.api.submit import SubmitService
from newsweave.core.db import AsyncSessionLocal
from newsweave.core.logging import get_logger
from newsweave.core.settings import Settings, get_settings
from newsweave.enrichment.embedding import EmbeddingProvider, build_embedding_provider
from newsweave.ingestor.extractor import ContentExtractor, WebExtractor
from newsweave.llm.provider import CompletionProvider, build_completion_provider
from newsweave.workflow.checkpoints import CheckpointStore, build_checkpoint_store
from newsweave.workflow.orchestrator import ItemWorkflow, WorkflowDispatcher
from newsweave.workflow.queue import MessageQueue, build_queue

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    session_factory: async_sessionmaker
    queue: MessageQueue
    provider: CompletionProvider
    embedder: EmbeddingProvider
    extractor: ContentExtractor
    checkpoints: CheckpointStore
    limiter: RateLimiter
    workflow: ItemWorkflow
    dispatcher: WorkflowDispatcher
    submit: SubmitService
    _stop: asyncio.Event = field(default_factory=asyncio.Event)
    _consumer: Optional[asyncio.Task] = None

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        *,
        session_factory: Optional[async_sessionmaker] = None,
        queue: Optional[MessageQueue] = None,
        provider: Optional[CompletionProvider] = None,
        embedder: Optional[EmbeddingProvider] = None,
        extractor: Optional[ContentExtractor] = None,
        checkpoints: Optional[CheckpointStore] = None,
        limiter: Optional[RateLimiter] = None,
        sleep=asyncio.sleep,
    ) -> "Services":
        """Build every collaborator from settings; any of them can be passed in instead."""
        settings = settings or get_settings()
        session_factory = session_factory or AsyncSessionLocal
        queue = queue or build_queue(settings)
        provider = provider or build_completion_provider(settings)
        embedder = embedder or build_embedding_provider(settings)
        extractor = extractor or WebExtractor()
        checkpoints = checkpoints or build_checkpoint_store(settings, session_factory)
        limiter = limiter or RateLimiter()

        workflow = ItemWorkflow(
            checkpoints=checkpoints,
            provider=provider,
            embedder=embedder,
            extractor=extractor,
            session_factory=session_factory,
            sleep=sleep,
        )
        return cls(
            settings=settings,
            session_factory=session_factory,
            queue=queue,
            provider=provider,
            embedder=embedder,
            extractor=extractor,
            checkpoints=checkpoints,
            limiter=limiter,
            workflow=workflow,
            dispatcher=WorkflowDispatcher(workflow, session_factory),
            submit=SubmitService(
                extractor=extractor,
                queue=queue,
                limiter=limiter,
                session_factory=session_factory,
                settings=settings,
            ),
        )

    def start_consumer(self) -> None:
        if self._consumer is None:
            self._stop.clear()
            self._consumer = asyncio.create_task(self.dispatcher.consume(self.queue, self._stop))

    async def aclose(self) -> None:
        """Stop the consumer, let running workflows finish, close clients."""
        if self._consumer is not None:
            self._stop.set()
            await self._consumer
            self._consumer = None
        await self.dispatcher.drain()
        for closeable in (self.queue, self.provider, self.embedder, self.extractor):
            try:
                await closeable.aclose()
            except Exception as e:
                logger.warning(f"Error closing {type(closeable).__name__}: {e}")
