"""Polls the durable queue and feeds each delivery to the queue consumer."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from src.config import settings
from src.database import async_session
from src.handlers.queue_consumer import QueueConsumer
from src.services.durable_queue import DurableQueue, notification_queue

logger = logging.getLogger(__name__)


class QueueWorker:
    def __init__(
        self,
        queue: DurableQueue | None = None,
        consumer: QueueConsumer | None = None,
        session_factory=async_session,
        batch_size: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self._queue = queue or notification_queue
        self._consumer = consumer or QueueConsumer()
        self._session_factory = session_factory
        self._batch_size = batch_size or settings.queue_batch_size
        self._poll_interval = poll_interval or settings.queue_poll_interval_seconds

    async def poll_once(self) -> int:
        """Deliver one batch; returns how many messages were received."""
        async with self._session_factory() as db:
            messages = await self._queue.receive(db, self._batch_size)
        if not messages:
            return 0

        # Deliveries run concurrently; queue bookkeeping happens afterwards on one session.
        results = await asyncio.gather(
            *(self._consumer.on_message(m.body) for m in messages),
            return_exceptions=True,
        )
        async with self._session_factory() as db:
            for message, result in zip(messages, results):
                if isinstance(result, BaseException):
                    logger.warning(
                        "Delivery %d of message id=%d failed: %s",
                        message.dequeue_count, message.id, result,
                    )
                    await self._queue.release(db, message, f"{type(result).__name__}: {result}")
                else:
                    await self._queue.ack(db, message.id)
        return len(messages)

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("Queue worker started on %s", self._queue.name)
        while not stop.is_set():
            try:
                received = await self.poll_once()
            except Exception:
                logger.exception("Queue poll failed")
                received = 0
            if received:
                continue
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self._poll_interval)
        logger.info("Queue worker stopped")
