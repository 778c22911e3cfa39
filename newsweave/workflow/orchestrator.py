"""Item enrichment workflow.

One instance drives one item through nine steps, strictly in order:

    fetch-item -> ai-analysis -> translate-content -> update-store
    -> generate-highlights -> generate-embedding -> save-embedding
    -> assign-topic -> synthesize-topic

Each step runs through StepRunner, so a re-invoked instance replays the
checkpoints it already has and resumes at the first unfinished step.
`WorkflowDispatcher` turns queue messages into instances and tracks
their status in the workflow_runs table.
"""

import asyncio
import time
import uuid
from typing import Dict, Any, Optional, Set, Union

from sqlalchemy.ext.asyncio import async_sessionmaker

from newsweave.core.db import AsyncSessionLocal
from newsweave.core.errors import NotFoundError, StepFailedError, TransientIOError, TERMINAL_ERRORS
from newsweave.core.logging import get_logger
from newsweave.core.models import Item
from newsweave.core.repositories import (
    get_item,
    update_item_fields,
    source_types_for_ids,
    get_or_create_workflow_run,
    get_workflow_run,
    set_workflow_status,
)
from newsweave.core.time import iso
from newsweave.enrichment.analysis import translate_text, MIN_TRANSLATE_CHARS
from newsweave.enrichment.embedding import EmbeddingProvider, build_embedding_text, l2_normalize
from newsweave.enrichment.highlights import generate_highlights
from newsweave.enrichment.processors import (
    ProcessorResult, get_processor, merge_platform_metadata, platform_data
)
from newsweave.ingestor.extractor import ContentExtractor
from newsweave.llm.provider import CompletionProvider
from newsweave.topics.clustering import assign_topic
from newsweave.topics.synthesis import synthesize_topic_summary
from newsweave.workflow.checkpoints import CheckpointStore
from newsweave.workflow.engine import StepPolicy, StepRunner
from newsweave.workflow.messages import ItemProcessMessage, BatchProcessMessage

logger = get_logger(__name__)

STEP_POLICIES: Dict[str, StepPolicy] = {
    'fetch-item': StepPolicy(retries=3, delay=5, timeout=30),
    'ai-analysis': StepPolicy(retries=3, delay=10, timeout=180),
    'translate-content': StepPolicy(retries=2, delay=10, timeout=180),
    'update-store': StepPolicy(retries=3, delay=5, timeout=30),
    'generate-highlights': StepPolicy(retries=2, delay=10, timeout=60),
    'generate-embedding': StepPolicy(retries=3, delay=5, timeout=30),
    'save-embedding': StepPolicy(retries=3, delay=5, timeout=30),
    'assign-topic': StepPolicy(retries=2, delay=5, timeout=30),
    'synthesize-topic': StepPolicy(retries=2, delay=5, timeout=60),
}
STEP_ORDER = list(STEP_POLICIES)

# WorkflowRun.status values
QUEUED = "queued"
RUNNING = "running"
COMPLETE = "complete"
ERRORED = "errored"
TERMINATED = "terminated"
FINISHED = (COMPLETE, TERMINATED)

ITEM_FIELDS = (
    'id', 'url', 'source_type', 'source', 'title', 'title_localized', 'summary',
    'summary_localized', 'content', 'content_localized', 'tags', 'keywords',
    'og_image_url', 'platform_metadata', 'topic_id',
)


def item_snapshot(item: Item) -> Dict[str, Any]:
    """JSON-safe view of an item row (embedding omitted)."""
    snapshot = {name: getattr(item, name) for name in ITEM_FIELDS}
    snapshot['has_embedding'] = bool(item.embedding)
    snapshot['published_at'] = iso(item.published_at)
    snapshot['ingested_at'] = iso(item.ingested_at)
    return snapshot


class ItemWorkflow:
    """The enrichment state machine for a single item."""

    def __init__(
        self,
        *,
        checkpoints: CheckpointStore,
        provider: CompletionProvider,
        embedder: EmbeddingProvider,
        extractor: ContentExtractor,
        session_factory: Optional[async_sessionmaker] = None,
        sleep=asyncio.sleep,
    ):
        self.checkpoints = checkpoints
        self.provider = provider
        self.embedder = embedder
        self.extractor = extractor
        self.session_factory = session_factory or AsyncSessionLocal
        self.sleep = sleep

    async def run(self, instance_id: str, item_id: int, source_type: str) -> Dict[str, Any]:
        """
        Execute (or resume) one instance.

        Returns:
            Output dict; {'reason': 'not_found'} when the item vanished

        Raises:
            NotFoundError: item missing (caller marks the instance terminated)
            StepFailedError: a fatal step exhausted its retries
        """
        runner = StepRunner(instance_id, self.checkpoints, sleep=self.sleep)
        started = time.time()

        async def do(name, fn):
            return await runner.do(name, STEP_POLICIES[name], fn)

        # 1. fetch-item
        item = await do('fetch-item', lambda: self._fetch_item(item_id))

        # 2. ai-analysis
        analysis = ProcessorResult.from_dict(
            await do('ai-analysis', lambda: self._analyze(item, source_type))
        )

        # 3. translate-content
        translation = await do('translate-content', lambda: self._translate(item))

        # 4. update-store
        merged_fields = {**analysis.update_data, **(translation.get('fields') or {})}
        await do('update-store', lambda: self._update_store(item_id, source_type, merged_fields, analysis.enrichments))
        enriched = {**item, **merged_fields}

        # 5. generate-highlights (non-fatal)
        try:
            await do('generate-highlights', lambda: self._highlights(item_id, enriched, source_type))
        except StepFailedError as e:
            logger.warning(f"[{instance_id}] highlights skipped: {e}")

        # 6. generate-embedding (fail-soft)
        try:
            vector = await do('generate-embedding', lambda: self._embed(enriched))
        except StepFailedError as e:
            logger.warning(f"[{instance_id}] embedding unavailable: {e}")
            vector = None

        # 7. save-embedding
        saved = await do('save-embedding', lambda: self._save_embedding(item_id, vector))

        # 8. assign-topic
        assignment = await do('assign-topic', lambda: self._assign_topic(item_id, saved['saved']))

        # 9. synthesize-topic (non-fatal)
        synthesized = False
        try:
            synthesis = await do('synthesize-topic', lambda: self._synthesize(assignment))
            synthesized = bool(synthesis.get('synthesized'))
        except StepFailedError as e:
            logger.warning(f"[{instance_id}] topic synthesis failed, keeping previous title: {e}")

        runtime = round(time.time() - started, 2)
        logger.info(
            f"[{instance_id}] workflow complete in {runtime}s",
            extra={"item_id": item_id, "source_type": source_type, "steps_run": runner.executed}
        )
        return {
            'item_id': item_id,
            'source_type': source_type,
            'updated_fields': sorted(merged_fields),
            'embedding_saved': saved['saved'],
            'topic': assignment,
            'synthesized': synthesized,
        }

    # -- step bodies -------------------------------------------------------

    async def _fetch_item(self, item_id: int) -> Dict[str, Any]:
        async with self.session_factory() as session:
            item = await get_item(session, item_id)
        if item is None:
            raise NotFoundError(f"Item {item_id} not found")
        return item_snapshot(item)

    async def _analyze(self, item: Dict[str, Any], source_type: str) -> Dict[str, Any]:
        processor = get_processor(source_type, self.provider, self.extractor)
        result = await processor.process(item)
        return result.to_dict()

    async def _translate(self, item: Dict[str, Any]) -> Dict[str, Any]:
        content = item.get('content') or ''
        if len(content) <= MIN_TRANSLATE_CHARS or item.get('content_localized'):
            return {'skipped': True}
        if not self.provider.available:
            return {'skipped': True, 'reason': 'no_provider'}

        translated = await translate_text(self.provider, content)
        if not translated:
            raise TransientIOError("Translation returned nothing")
        return {'skipped': False, 'fields': {'content_localized': translated}}

    async def _update_store(
        self,
        item_id: int,
        source_type: str,
        fields: Dict[str, Any],
        enrichments: Dict[str, Any],
    ) -> Dict[str, Any]:
        if not fields and not enrichments:
            return {'skipped': True}

        async with self.session_factory() as session:
            if fields:
                updated = await update_item_fields(session, item_id, fields)
                if not updated:
                    raise NotFoundError(f"Item {item_id} disappeared before update")
            if enrichments:
                current = await get_item(session, item_id)
                metadata = merge_platform_metadata(
                    current.platform_metadata if current else None, enrichments, source_type
                )
                await update_item_fields(session, item_id, {'platform_metadata': metadata})

        return {'skipped': False, 'fields': sorted(fields), 'enrichments': sorted(enrichments)}

    async def _highlights(self, item_id: int, item: Dict[str, Any], source_type: str) -> Dict[str, Any]:
        if source_type != 'youtube':
            return {'skipped': True}
        transcript = platform_data(item).get('transcript')
        if not transcript:
            return {'skipped': True, 'reason': 'no_transcript'}

        async with self.session_factory() as session:
            current = await get_item(session, item_id)
            metadata = (current.platform_metadata if current else None) or {}
            if (metadata.get('enrichments') or {}).get('highlights'):
                return {'skipped': True, 'reason': 'exists'}

            highlights = await generate_highlights(self.provider, item.get('title', ''), transcript)
            if not highlights:
                raise TransientIOError("No highlights generated")

            merged = merge_platform_metadata(metadata, {'highlights': highlights}, source_type)
            await update_item_fields(session, item_id, {'platform_metadata': merged})
        return {'skipped': False, 'count': len(highlights)}

    async def _embed(self, item: Dict[str, Any]) -> Optional[list]:
        text = build_embedding_text(item)
        if not text:
            return None
        vector = await self.embedder.embed(text)
        return l2_normalize(vector) if vector else None

    async def _save_embedding(self, item_id: int, vector: Optional[list]) -> Dict[str, Any]:
        if not vector:
            return {'saved': False}
        async with self.session_factory() as session:
            updated = await update_item_fields(session, item_id, {'embedding': vector})
        if not updated:
            raise NotFoundError(f"Item {item_id} disappeared before embedding save")
        return {'saved': True}

    async def _assign_topic(self, item_id: int, embedding_saved: bool) -> Dict[str, Any]:
        if not embedding_saved:
            return {'topic_id': None, 'is_new_topic': False, 'member_count': 0, 'needs_synthesis': False}
        async with self.session_factory() as session:
            assignment = await assign_topic(session, item_id)
        return assignment.to_dict()

    async def _synthesize(self, assignment: Dict[str, Any]) -> Dict[str, Any]:
        topic_id = assignment.get('topic_id')
        if not assignment.get('needs_synthesis') or not topic_id:
            return {'synthesized': False}
        if not self.provider.available:
            return {'synthesized': False, 'reason': 'no_provider'}

        async with self.session_factory() as session:
            ok = await synthesize_topic_summary(session, topic_id, self.provider)
        if not ok:
            raise TransientIOError(f"Synthesis failed for topic {topic_id}")
        return {'synthesized': True, 'topic_id': topic_id}


Message = Union[ItemProcessMessage, BatchProcessMessage]


class WorkflowDispatcher:
    """Turns queue messages into workflow instances and records their status."""

    def __init__(
        self,
        workflow: ItemWorkflow,
        session_factory: Optional[async_sessionmaker] = None,
        max_concurrency: int = 8,
    ):
        self.workflow = workflow
        self.session_factory = session_factory or AsyncSessionLocal
        self.semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._in_flight: Set[str] = set()

    async def handle_message(self, message: Message) -> list:
        """
        Start instances for a message.

        Returns:
            Instance ids started (or resumed)
        """
        if isinstance(message, ItemProcessMessage):
            instance_id = f"item-{message.item_id}-{message.source_type}"
            return [await self.start(message.item_id, message.source_type, instance_id)]

        async with self.session_factory() as session:
            source_types = await source_types_for_ids(session, message.item_ids)

        batch_key = uuid.uuid4().hex[:8]
        started = []
        for item_id in message.item_ids:
            source_type = source_types.get(item_id, 'default')
            instance_id = f"{message.triggered_by}-{batch_key}-{item_id}-{source_type}"
            started.append(await self.start(item_id, source_type, instance_id))

        logger.info(f"Batch from {message.triggered_by}: started {len(started)} workflows")
        return started

    async def start(self, item_id: int, source_type: str, instance_id: Optional[str] = None) -> str:
        """Register an instance and run it in the background; duplicates of a live instance are ignored."""
        instance_id = instance_id or f"item-{item_id}-{source_type}"
        if instance_id in self._in_flight:
            logger.info(f"[{instance_id}] already running; ignoring duplicate delivery")
            return instance_id

        # Claimed before the first await so concurrent deliveries see it
        self._in_flight.add(instance_id)
        try:
            async with self.session_factory() as session:
                created, run = await get_or_create_workflow_run(session, instance_id, item_id, source_type)
        except Exception:
            self._in_flight.discard(instance_id)
            raise

        if not created and run.status in FINISHED:
            self._in_flight.discard(instance_id)
            logger.info(f"[{instance_id}] already {run.status}; ignoring redelivery")
            return instance_id

        task = asyncio.create_task(self.execute(instance_id, item_id, source_type))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda _: self._in_flight.discard(instance_id))
        return instance_id

    async def execute(self, instance_id: str, item_id: int, source_type: str) -> str:
        """Run one instance to completion and persist its final status."""
        async with self.semaphore:
            await self._set_status(instance_id, RUNNING)
            try:
                output = await self.workflow.run(instance_id, item_id, source_type)
            except NotFoundError:
                logger.warning(f"[{instance_id}] item {item_id} not found; terminating")
                await self._set_status(instance_id, TERMINATED, output={'reason': 'not_found'})
                return TERMINATED
            except TERMINAL_ERRORS as e:
                await self._set_status(instance_id, TERMINATED, error=str(e))
                return TERMINATED
            except Exception as e:
                logger.error(f"[{instance_id}] workflow errored: {e}")
                await self._set_status(instance_id, ERRORED, error=str(e))
                return ERRORED

            await self._set_status(instance_id, COMPLETE, output=output)
            return COMPLETE

    async def _set_status(self, instance_id: str, status: str, output=None, error=None) -> None:
        async with self.session_factory() as session:
            await set_workflow_status(session, instance_id, status, output=output, error=error)

    async def drain(self) -> None:
        """Wait for every running instance."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def consume(self, queue, stop: asyncio.Event, poll_timeout: float = 1.0) -> None:
        """Pull messages until `stop` is set; a bad message never stops the loop."""
        logger.info("Workflow consumer started")
        while not stop.is_set():
            message = await queue.receive(timeout=poll_timeout)
            if message is None:
                continue
            try:
                await self.handle_message(message)
            except Exception as e:
                logger.error(f"Failed to dispatch {message.kind} message: {e}")
        logger.info("Workflow consumer stopped")


async def get_instance_status(instance_id: str, session_factory: Optional[async_sessionmaker] = None) -> Optional[Dict[str, Any]]:
    """
    Status of a workflow instance.

    Returns:
        {'status': ..., 'item': {...}} with `item` only once complete,
        or None for an unknown instance
    """
    session_factory = session_factory or AsyncSessionLocal
    async with session_factory() as session:
        run = await get_workflow_run(session, instance_id)
        if run is None:
            return None
        status: Dict[str, Any] = {'status': run.status}
        if run.status == COMPLETE:
            item = await get_item(session, run.item_id)
            if item is not None:
                status['item'] = item_snapshot(item)
    return status
