"""Tests for the item enrichment workflow and its dispatcher."""

import asyncio
import re

import pytest

from newsweave.core.errors import NotFoundError
from newsweave.core.repositories import get_item, get_workflow_run, get_topic
from newsweave.workflow.checkpoints import SqlCheckpointStore, DONE, FAILED
from newsweave.workflow.messages import ItemProcessMessage, BatchProcessMessage
from newsweave.workflow.queue import InMemoryQueue
from newsweave.workflow.sweep import sweep_incomplete_items
from newsweave.workflow.orchestrator import (
    ItemWorkflow, WorkflowDispatcher, get_instance_status, STEP_ORDER,
    COMPLETE, ERRORED, TERMINATED,
)

from tests.conftest import (
    FakeProvider, FakeEmbedder, FakeExtractor, ANALYSIS_JSON,
    smart_responder, no_sleep, make_item, basis, with_similarity,
)

LONG_CONTENT = "Chipmakers reported record quarterly revenue as demand for accelerators kept growing. " * 3


def build_workflow(session_factory, provider=None, embedder=None, extractor=None):
    return ItemWorkflow(
        checkpoints=SqlCheckpointStore(session_factory),
        provider=provider or FakeProvider(smart_responder),
        embedder=embedder or FakeEmbedder(default=[2.0] + [0.0] * 1023),
        extractor=extractor or FakeExtractor(),
        session_factory=session_factory,
        sleep=no_sleep,
    )


async def run_status(session_factory, instance_id):
    async with session_factory() as session:
        return await get_workflow_run(session, instance_id)


class TestItemWorkflow:

    @pytest.mark.asyncio
    async def test_runs_all_steps_in_order(self, session_factory):
        item_id = await make_item(session_factory, title="Chip news", content=LONG_CONTENT)
        store = SqlCheckpointStore(session_factory)
        workflow = build_workflow(session_factory)
        workflow.checkpoints = store

        output = await workflow.run(f"item-{item_id}-rss", item_id, "rss")

        checkpoints = await store.all(f"item-{item_id}-rss")
        assert list(checkpoints) == STEP_ORDER
        assert all(cp.status == DONE for cp in checkpoints.values())

        async with session_factory() as session:
            item = await get_item(session, item_id)
        assert item.title == "English Title"
        assert item.title_localized == "本地化标题"
        assert item.summary == "A short summary."
        assert item.content_localized == "翻译后的内容"
        assert item.tags == ["AI", "Chips", "Technology"]
        assert item.embedding[0] == pytest.approx(1.0)
        assert item.topic_id is None

        assert output['embedding_saved'] is True
        assert output['topic']['topic_id'] is None
        assert output['synthesized'] is False

    @pytest.mark.asyncio
    async def test_short_content_is_not_translated(self, session_factory):
        item_id = await make_item(session_factory, content="Too short to translate.")
        provider = FakeProvider(smart_responder)

        await build_workflow(session_factory, provider=provider).run(f"item-{item_id}-rss", item_id, "rss")

        assert not any(p.startswith("Translate") for p in provider.prompts)

    @pytest.mark.asyncio
    async def test_finished_item_with_short_content_is_not_swept(self, session_factory):
        item_id = await make_item(session_factory, content="Short body text.")
        await build_workflow(session_factory).run(f"item-{item_id}-rss", item_id, "rss")
        queue = InMemoryQueue()

        stats = await sweep_incomplete_items(queue, session_factory)

        assert stats == {'items': 0, 'batches': 0}
        assert queue.sent == []

    @pytest.mark.asyncio
    async def test_existing_fields_are_not_overwritten(self, session_factory):
        item_id = await make_item(session_factory, title="Original", summary="Editor summary",
                                  title_localized="已有标题", tags=["Kept"])

        await build_workflow(session_factory).run(f"item-{item_id}-rss", item_id, "rss")

        async with session_factory() as session:
            item = await get_item(session, item_id)
        assert item.title == "Original"
        assert item.title_localized == "已有标题"
        assert item.summary == "Editor summary"
        assert item.tags == ["Kept"]
        assert item.summary_localized == "简短摘要。"

    @pytest.mark.asyncio
    async def test_unparseable_analysis_uses_fallback(self, session_factory):
        item_id = await make_item(session_factory, title="Plain title words here", summary=None)
        provider = FakeProvider(lambda prompt: "Sorry, I cannot help with that.")

        await build_workflow(session_factory, provider=provider).run(f"item-{item_id}-rss", item_id, "rss")

        async with session_factory() as session:
            item = await get_item(session, item_id)
        assert item.title == "Plain title words here"
        assert item.title_localized == "Plain title words here"
        assert "Other" in item.tags

    @pytest.mark.asyncio
    async def test_missing_item_raises_not_found(self, session_factory):
        with pytest.raises(NotFoundError):
            await build_workflow(session_factory).run("item-424242-rss", 424242, "rss")

    @pytest.mark.asyncio
    async def test_youtube_highlights_are_stored(self, session_factory):
        item_id = await make_item(
            session_factory,
            url="https://www.youtube.com/watch?v=abc",
            source_type="youtube",
            platform_metadata={
                'type': 'youtube',
                'data': {'videoId': 'abc', 'channel': 'Chan', 'transcript': 'Welcome to the show.'},
                'enrichments': {},
            },
        )

        await build_workflow(session_factory).run(f"item-{item_id}-youtube", item_id, "youtube")

        async with session_factory() as session:
            item = await get_item(session, item_id)
        enrichments = item.platform_metadata['enrichments']
        assert enrichments['videoId'] == 'abc'
        assert enrichments['highlights'][0]['title'] == "Intro"
        assert "YouTube" in item.tags
        assert enrichments['processedAt']
        assert 'processedAt' not in item.platform_metadata

    @pytest.mark.asyncio
    async def test_embedding_failure_is_soft(self, session_factory):
        item_id = await make_item(session_factory)
        embedder = FakeEmbedder()  # always None

        output = await build_workflow(session_factory, embedder=embedder).run(
            f"item-{item_id}-rss", item_id, "rss")

        assert output['embedding_saved'] is False
        assert output['topic']['topic_id'] is None

    @pytest.mark.asyncio
    async def test_synthesis_failure_does_not_fail_workflow(self, session_factory):
        neighbour_id = await make_item(session_factory, embedding=basis(0))
        item_id = await make_item(session_factory)

        def responder(prompt):
            if prompt.startswith("The following news items"):
                return "not json at all"
            return smart_responder(prompt)

        workflow = build_workflow(
            session_factory,
            provider=FakeProvider(responder),
            embedder=FakeEmbedder(default=with_similarity(0.9)),
        )
        output = await workflow.run(f"item-{item_id}-rss", item_id, "rss")

        topic = output['topic']
        assert topic['is_new_topic'] is True
        assert topic['member_count'] == 2
        assert output['synthesized'] is False

        async with session_factory() as session:
            stored = await get_topic(session, topic['topic_id'])
            neighbour = await get_item(session, neighbour_id)
        assert neighbour.topic_id == stored.id
        assert stored.description is None


class TestWorkflowDispatcher:

    @pytest.mark.asyncio
    async def test_crash_resumes_from_last_checkpoint(self, session_factory):
        item_id = await make_item(session_factory, content=LONG_CONTENT)
        instance_id = f"item-{item_id}-rss"
        store = SqlCheckpointStore(session_factory)

        # Translation keeps answering nothing: translate-content exhausts its retries
        broken = FakeProvider(lambda p: None if p.startswith("Translate") else ANALYSIS_JSON)
        workflow = build_workflow(session_factory, provider=broken)
        dispatcher = WorkflowDispatcher(workflow, session_factory, max_concurrency=1)

        await dispatcher.handle_message(ItemProcessMessage(item_id=item_id, source_type="rss"))
        await dispatcher.drain()

        assert (await run_status(session_factory, instance_id)).status == ERRORED
        checkpoints = await store.all(instance_id)
        assert checkpoints['ai-analysis'].status == DONE
        assert checkpoints['translate-content'].status == FAILED
        assert checkpoints['translate-content'].attempts == 3
        assert 'update-store' not in checkpoints

        # Redelivery resumes with a healthy provider
        healthy = FakeProvider(smart_responder)
        dispatcher = WorkflowDispatcher(build_workflow(session_factory, provider=healthy), session_factory)
        await dispatcher.handle_message(ItemProcessMessage(item_id=item_id, source_type="rss"))
        await dispatcher.drain()

        assert (await run_status(session_factory, instance_id)).status == COMPLETE
        assert not any(p.startswith("Analyze") for p in healthy.prompts)
        assert sum(p.startswith("Translate") for p in healthy.prompts) == 1

        async with session_factory() as session:
            item = await get_item(session, item_id)
        assert item.title_localized == "本地化标题"
        assert item.content_localized == "翻译后的内容"

    @pytest.mark.asyncio
    async def test_finished_instances_ignore_redelivery(self, session_factory):
        item_id = await make_item(session_factory)
        provider = FakeProvider(smart_responder)
        dispatcher = WorkflowDispatcher(build_workflow(session_factory, provider=provider), session_factory)
        message = ItemProcessMessage(item_id=item_id, source_type="rss")

        await dispatcher.handle_message(message)
        await dispatcher.drain()
        calls = len(provider.prompts)

        await dispatcher.handle_message(message)
        await dispatcher.drain()

        assert len(provider.prompts) == calls

    @pytest.mark.asyncio
    async def test_duplicate_delivery_while_running_is_ignored(self, session_factory):
        item_id = await make_item(session_factory)
        provider = FakeProvider(smart_responder)
        dispatcher = WorkflowDispatcher(build_workflow(session_factory, provider=provider), session_factory)
        message = ItemProcessMessage(item_id=item_id, source_type="rss")

        first, second = await asyncio.gather(
            dispatcher.handle_message(message), dispatcher.handle_message(message))
        third = await dispatcher.handle_message(message)
        await dispatcher.drain()

        assert first == second == third == [f"item-{item_id}-rss"]
        assert sum(p.startswith("Analyze") for p in provider.prompts) == 1
        assert (await run_status(session_factory, first[0])).status == COMPLETE

    @pytest.mark.asyncio
    async def test_missing_item_terminates_instance(self, session_factory):
        dispatcher = WorkflowDispatcher(build_workflow(session_factory), session_factory)

        [instance_id] = await dispatcher.handle_message(ItemProcessMessage(item_id=777777, source_type="rss"))
        await dispatcher.drain()

        run = await run_status(session_factory, instance_id)
        assert instance_id == "item-777777-rss"
        assert run.status == TERMINATED
        assert run.output == {'reason': 'not_found'}

    @pytest.mark.asyncio
    async def test_batch_fans_out_with_resolved_source_types(self, session_factory):
        rss_id = await make_item(session_factory)
        tweet_id = await make_item(session_factory, url="https://x.com/a/status/1", source_type="twitter",
                                   content="Short post")
        dispatcher = WorkflowDispatcher(build_workflow(session_factory), session_factory, max_concurrency=1)

        started = await dispatcher.handle_message(
            BatchProcessMessage(item_ids=[rss_id, tweet_id, 999999, rss_id], triggered_by="retry_sweep")
        )
        await dispatcher.drain()

        assert len(started) == 3
        pattern = re.compile(r"^retry_sweep-[0-9a-f]{8}-(\d+)-(\w+)$")
        parsed = [pattern.match(i).groups() for i in started]
        assert parsed == [(str(rss_id), "rss"), (str(tweet_id), "twitter"), ("999999", "default")]
        assert len({i.split("-")[1] for i in started}) == 1

        statuses = [(await run_status(session_factory, i)).status for i in started]
        assert statuses == [COMPLETE, COMPLETE, TERMINATED]


@pytest.mark.asyncio
async def test_instance_status_query(session_factory):
    item_id = await make_item(session_factory)
    dispatcher = WorkflowDispatcher(build_workflow(session_factory), session_factory)

    assert await get_instance_status("item-0-nothing", session_factory) is None

    [instance_id] = await dispatcher.handle_message(ItemProcessMessage(item_id=item_id, source_type="rss"))
    await dispatcher.drain()

    status = await get_instance_status(instance_id, session_factory)
    assert status['status'] == COMPLETE
    assert status['item']['id'] == item_id
    assert status['item']['title_localized'] == "本地化标题"
    assert status['item']['has_embedding'] is True
