"""Worker that advances enrollments dispatched over a transport."""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Optional

from .constants import DUE_ENROLLMENTS_TOPIC
from .contracts import EnrollmentDispatch, EnrollmentStepResult
from .errors import CrmflowError
from .service import WorkflowService
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class EnrollmentWorker:
    """Consumes dispatch messages and advances the referenced enrollments."""

    def __init__(
        self,
        transport: BaseTransport,
        service: WorkflowService,
        topic: str = DUE_ENROLLMENTS_TOPIC,
        history: int = 100,
    ) -> None:
        self._transport = transport
        self._service = service
        self._topic = topic
        # most recent results only; processed_total counts all of them
        self.processed: Deque[EnrollmentStepResult] = deque(maxlen=history)
        self.processed_total = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for dispatch messages on the topic."""
        async with self._transport as transport:
            async for raw_message, message in transport.subscribe(self._topic, lifespan=lifespan):
                try:
                    await self._handle(message)
                except CrmflowError as e:
                    logger.error(f"Dropping dispatch {message.message_id}: {e}")
                    await transport.ack(raw_message)
                except Exception:
                    logger.exception(f"Dispatch {message.message_id} failed")
                    await transport.nack(raw_message, requeue=False)
                else:
                    await transport.ack(raw_message)

    async def _handle(self, message: EnrollmentDispatch) -> None:
        result = await self._service.advance_enrollment(message.enrollment_id)
        self.processed.append(result)
        self.processed_total += 1
        logger.info(
            f"Worker advanced enrollment {message.enrollment_id}: {result.outcome}"
        )
