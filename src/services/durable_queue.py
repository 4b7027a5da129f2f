"""SQL-backed queue with at-least-once delivery and dead-lettering.

Receiving a message leases it: the row stays in the table but is hidden
until ``visible_at``. A consumer that crashes without acking simply lets the
lease run out and the message is delivered again. After
``max_dequeue_count`` failed deliveries the message is dead-lettered.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.database import utcnow
from src.models.queue_message import QueueMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceivedMessage:
    id: int
    body: str
    dequeue_count: int


class DurableQueue:
    def __init__(
        self,
        name: str | None = None,
        max_dequeue_count: int | None = None,
        visibility_timeout: float | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self.name = name or settings.queue_name
        self.max_dequeue_count = max_dequeue_count or settings.queue_max_dequeue_count
        self.visibility_timeout = (
            settings.queue_visibility_timeout_seconds if visibility_timeout is None else visibility_timeout
        )
        self.retry_delay = settings.queue_retry_delay_seconds if retry_delay is None else retry_delay

    async def enqueue(self, db: AsyncSession, payloads: list[dict]) -> int:
        """Write every payload as its own message in a single transaction."""
        if not payloads:
            return 0
        now = utcnow()
        for payload in payloads:
            db.add(QueueMessage(
                queue_name=self.name,
                body=json.dumps(payload, default=str),
                visible_at=now,
                enqueued_at=now,
            ))
        await db.commit()
        logger.info("Enqueued %d message(s) on %s", len(payloads), self.name)
        return len(payloads)

    async def receive(self, db: AsyncSession, limit: int = 16) -> list[ReceivedMessage]:
        """Lease up to ``limit`` visible messages."""
        now = utcnow()
        rows = (await db.execute(
            select(QueueMessage.id, QueueMessage.body, QueueMessage.dequeue_count)
            .where(
                QueueMessage.queue_name == self.name,
                QueueMessage.dead_lettered.is_(False),
                QueueMessage.visible_at <= now,
            )
            .order_by(QueueMessage.id)
            .limit(limit)
        )).all()

        lease_until = now + timedelta(seconds=self.visibility_timeout)
        claimed: list[ReceivedMessage] = []
        for row in rows:
            # Conditional update: a competing poller that got here first wins.
            result = await db.execute(
                update(QueueMessage)
                .where(
                    QueueMessage.id == row.id,
                    QueueMessage.dequeue_count == row.dequeue_count,
                )
                .values(dequeue_count=row.dequeue_count + 1, visible_at=lease_until)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed.append(ReceivedMessage(row.id, row.body, row.dequeue_count + 1))
        await db.commit()
        return claimed

    async def ack(self, db: AsyncSession, message_id: int) -> None:
        await db.execute(delete(QueueMessage).where(QueueMessage.id == message_id))
        await db.commit()

    async def release(self, db: AsyncSession, message: ReceivedMessage, error: str) -> bool:
        """Return a failed message to the queue. True when it was dead-lettered."""
        dead = message.dequeue_count >= self.max_dequeue_count
        values: dict = {"last_error": error[:1000]}
        if dead:
            values["dead_lettered"] = True
        else:
            values["visible_at"] = utcnow() + timedelta(seconds=self.retry_delay)
        await db.execute(
            update(QueueMessage)
            .where(QueueMessage.id == message.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if dead:
            logger.error(
                "Dead-lettered message id=%d after %d deliveries: %s",
                message.id, message.dequeue_count, error,
            )
        return dead

    async def dead_letters(self, db: AsyncSession) -> list[QueueMessage]:
        result = await db.execute(
            select(QueueMessage)
            .where(QueueMessage.queue_name == self.name, QueueMessage.dead_lettered.is_(True))
            .order_by(QueueMessage.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())


notification_queue = DurableQueue()
