"""Message queue backends.

Producers call `send`; the workflow consumer pulls with `receive`.
The in-memory backend lives for the lifetime of the process; the Redis
backend is a list used as a FIFO (LPUSH / BRPOP).
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Union

import redis.asyncio as redis_asyncio
from pydantic import ValidationError

from newsweave.core.logging import get_logger
from newsweave.core.settings import Settings, get_settings
from newsweave.workflow.messages import ItemProcessMessage, BatchProcessMessage, parse_message

logger = get_logger(__name__)

Message = Union[ItemProcessMessage, BatchProcessMessage]


class MessageQueue(ABC):
    """Abstract queue of workflow messages."""

    @abstractmethod
    async def send(self, message: Message) -> None:
        pass

    async def send_batch(self, messages: Iterable[Message]) -> int:
        count = 0
        for message in messages:
            await self.send(message)
            count += 1
        return count

    @abstractmethod
    async def receive(self, timeout: float = 1.0) -> Optional[Message]:
        """Next valid message, or None if none arrived within `timeout`."""
        pass

    async def aclose(self) -> None:
        pass


class InMemoryQueue(MessageQueue):
    """Process-local queue on asyncio.Queue."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.sent: List[Message] = []

    async def send(self, message: Message) -> None:
        self.sent.append(message)
        await self._queue.put(message)

    async def receive(self, timeout: float = 1.0) -> Optional[Message]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()


class RedisQueue(MessageQueue):
    """Redis list backed queue; messages travel as JSON."""

    def __init__(self, client: "redis_asyncio.Redis", name: str):
        self.client = client
        self.name = name

    @classmethod
    def from_url(cls, url: str, name: str) -> "RedisQueue":
        return cls(redis_asyncio.from_url(url, decode_responses=True), name)

    async def send(self, message: Message) -> None:
        await self.client.lpush(self.name, message.model_dump_json())

    async def receive(self, timeout: float = 1.0) -> Optional[Message]:
        popped = await self.client.brpop([self.name], timeout=max(1, int(timeout)))
        if not popped:
            return None
        _, payload = popped
        try:
            return parse_message(payload)
        except ValidationError as e:
            # Acked by virtue of being popped
            logger.warning(f"Dropping invalid queue message: {e}", extra={"payload": str(payload)[:500]})
            return None

    async def aclose(self) -> None:
        await self.client.aclose()


def build_queue(settings: Optional[Settings] = None) -> MessageQueue:
    """Create the queue backend selected by QUEUE_BACKEND."""
    settings = settings or get_settings()
    backend = settings.queue_backend.lower()
    if backend == "redis":
        logger.info(f"Using Redis queue '{settings.queue_name}'")
        return RedisQueue.from_url(settings.redis_url, settings.queue_name)
    if backend != "memory":
        logger.warning(f"Unknown queue backend '{backend}', using in-memory queue")
    return InMemoryQueue()
