"""Queue contract between the scheduler (producer) and enrollment workers."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Iterable, Optional, Tuple, TypeVar

from ..contracts import EnrollmentDispatch

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Carries :class:`EnrollmentDispatch` messages between processes.

    ``RawMessageT`` is whatever handle the backend needs to settle a
    delivery later through :meth:`ack` or :meth:`nack`. Transports are
    usable as async context managers; ``async with transport:`` brackets
    :meth:`connect` and :meth:`disconnect`.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, message: EnrollmentDispatch) -> None:
        """Queue one dispatch on ``topic``."""
        raise NotImplementedError

    async def publish_many(self, topic: str, messages: Iterable[EnrollmentDispatch]) -> int:
        """Queue several dispatches in order and return how many were sent."""
        count = 0
        for message in messages:
            await self.publish(topic, message)
            count += 1
        return count

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, EnrollmentDispatch]]:
        """Yield ``(raw, dispatch)`` pairs until ``lifespan`` seconds elapse (forever when None)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a delivery. Backends without redelivery simply settle it."""
        await self.ack(raw_message)
