"""Redis transport for cross-process dispatch."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Iterable, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import EnrollmentDispatch
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawDispatch = Tuple[str, str]


class RedisTransport(BaseTransport[RawDispatch]):
    """Redis list based queue; ``LPUSH`` to publish, ``BRPOP`` to consume."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "crmflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: EnrollmentDispatch) -> None:
        """Publish message to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue(topic), message.to_json())

    async def publish_many(self, topic: str, messages: Iterable[EnrollmentDispatch]) -> int:
        """Push a whole batch with one ``LPUSH``; consumers still see publish order."""
        payloads = [m.to_json() for m in messages]
        if not payloads:
            return 0
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue(topic), *payloads)
        return len(payloads)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawDispatch, EnrollmentDispatch]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            result = await self._redis.brpop(queue_name, timeout=1)
            if not result:
                continue
            _, message_json = result
            try:
                message = EnrollmentDispatch.from_json(message_json)
            except ValidationError as e:
                logger.error(f"Dropping malformed dispatch on {queue_name}: {e}")
                continue
            yield (queue_name, message_json), message

    async def ack(self, raw_message: RawDispatch) -> None:
        """No-op acknowledgment (message already popped)."""
        pass

    async def nack(self, raw_message: RawDispatch, requeue: bool = True) -> None:
        if requeue:
            queue_name, message_json = raw_message
            await self._redis.rpush(queue_name, message_json)
