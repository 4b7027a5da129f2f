"""Handles one queue delivery: dedup, then dispatch.

Deliveries are at-least-once. A duplicate within the dedup TTL is a normal
return, not an error. Raising from ``on_message`` makes the queue redeliver
the message, so dispatch failures clear the dedup mark before re-raising.
"""

from __future__ import annotations

import json
import logging
from enum import Enum

from pydantic import ValidationError

from src.handlers import dispatcher
from src.schemas.notifications import NotificationMessage
from src.services.caches import DedupCache, dedup_cache

logger = logging.getLogger(__name__)


class MalformedMessageError(ValueError):
    pass


class ConsumeOutcome(str, Enum):
    DISPATCHED = "dispatched"
    DUPLICATE = "duplicate"


def parse_message(raw: str | bytes | dict) -> NotificationMessage:
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON in queue message: %s", exc)
            raise MalformedMessageError("Invalid JSON in queue message") from exc
    if not isinstance(raw, dict):
        raise MalformedMessageError("Queue message must be a JSON object")
    try:
        return NotificationMessage.model_validate(raw)
    except ValidationError as exc:
        logger.error(
            "Missing IDs in queue message: userId=%s meetingId=%s transcriptId=%s",
            raw.get("userId"), raw.get("meetingId"), raw.get("transcriptId"),
        )
        raise MalformedMessageError("Missing required IDs in queue message") from exc


class QueueConsumer:
    def __init__(self, cache: DedupCache | None = None) -> None:
        self._cache = cache or dedup_cache

    async def on_message(self, raw: str | bytes | dict) -> ConsumeOutcome:
        message = parse_message(raw)
        work_key = message.work_key

        # Check and mark happen without yielding to the event loop, so only
        # the first of two concurrent deliveries gets past this point.
        if not self._cache.mark(work_key):
            logger.info("SKIP: duplicate notification for %s", work_key)
            return ConsumeOutcome.DUPLICATE

        params = {
            "GRAPH_USER_ID": message.user_id,
            "GRAPH_MEETING_ID": message.meeting_id,
            "GRAPH_TRANSCRIPT_ID": message.transcript_id,
        }
        try:
            execution_id = await dispatcher.dispatch_job(work_key, params)
        except Exception:
            self._cache.unmark(work_key)
            logger.warning("Dispatch failed for %s; cleared dedup mark for redelivery", work_key)
            raise

        logger.info("Dispatched %s as execution_id=%s", work_key, execution_id)
        return ConsumeOutcome.DISPATCHED
