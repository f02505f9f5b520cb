"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import EnrollmentDispatch
from .base import BaseTransport

RawDispatch = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawDispatch]):
    """In-process queues keyed by topic."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawDispatch]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def publish(self, topic: str, message: EnrollmentDispatch) -> None:
        """Publish message to in-memory queue."""
        async with self._lock:
            self._queues[topic].append((topic, message.to_json()))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawDispatch, EnrollmentDispatch]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            raw_message = None
            async with self._lock:
                if self._queues[topic]:
                    raw_message = self._queues[topic].popleft()
            if raw_message is not None:
                yield raw_message, EnrollmentDispatch.from_json(raw_message[1])
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: RawDispatch) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawDispatch, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].append(raw_message)
