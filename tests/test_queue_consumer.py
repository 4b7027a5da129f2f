"""Tests for dedup-then-dispatch queue consumption."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from src.handlers.queue_consumer import ConsumeOutcome, MalformedMessageError, QueueConsumer
from src.schemas.notifications import WorkKey
from src.services.caches import dedup_cache

BODY = json.dumps({
    "userId": "u1",
    "meetingId": "m1",
    "transcriptId": "t1",
    "timestamp": "2026-10-17T09:00:00Z",
})


async def test_duplicate_delivery_dispatches_once():
    dispatch = AsyncMock(return_value="m1-t1-1")
    consumer = QueueConsumer()

    with patch("src.handlers.dispatcher.dispatch_job", dispatch):
        first = await consumer.on_message(BODY)
        second = await consumer.on_message(BODY)

    assert first is ConsumeOutcome.DISPATCHED
    assert second is ConsumeOutcome.DUPLICATE
    assert dispatch.await_count == 1
    work_key, params = dispatch.await_args.args
    assert work_key == WorkKey("m1", "t1")
    assert params == {
        "GRAPH_USER_ID": "u1",
        "GRAPH_MEETING_ID": "m1",
        "GRAPH_TRANSCRIPT_ID": "t1",
    }


async def test_concurrent_deliveries_only_one_reaches_dispatcher():
    async def slow_dispatch(work_key, params):
        await asyncio.sleep(0.05)
        return f"{work_key}-1"

    dispatch = AsyncMock(side_effect=slow_dispatch)
    consumer = QueueConsumer()

    with patch("src.handlers.dispatcher.dispatch_job", dispatch):
        outcomes = await asyncio.gather(consumer.on_message(BODY), consumer.on_message(BODY))

    assert sorted(o.value for o in outcomes) == ["dispatched", "duplicate"]
    assert dispatch.await_count == 1


async def test_dispatch_failure_clears_mark_and_reraises():
    dispatch = AsyncMock(side_effect=RuntimeError("platform unavailable"))
    consumer = QueueConsumer()

    with patch("src.handlers.dispatcher.dispatch_job", dispatch):
        with pytest.raises(RuntimeError, match="platform unavailable"):
            await consumer.on_message(BODY)

    assert dedup_cache.check(WorkKey("m1", "t1")) is False


async def test_redelivery_after_failure_dispatches_again():
    dispatch = AsyncMock(side_effect=[RuntimeError("boom"), "m1-t1-2"])
    consumer = QueueConsumer()

    with patch("src.handlers.dispatcher.dispatch_job", dispatch):
        with pytest.raises(RuntimeError):
            await consumer.on_message(BODY)
        outcome = await consumer.on_message(BODY)

    assert outcome is ConsumeOutcome.DISPATCHED
    assert dispatch.await_count == 2


async def test_distinct_transcripts_are_not_duplicates():
    dispatch = AsyncMock(return_value="x")
    consumer = QueueConsumer()
    other = json.dumps({"userId": "u1", "meetingId": "m1", "transcriptId": "t2"})

    with patch("src.handlers.dispatcher.dispatch_job", dispatch):
        await consumer.on_message(BODY)
        await consumer.on_message(other)

    assert dispatch.await_count == 2


async def test_invalid_json_raises_malformed():
    with pytest.raises(MalformedMessageError):
        await QueueConsumer().on_message("{oops")


async def test_missing_ids_raise_malformed():
    dispatch = AsyncMock()
    with patch("src.handlers.dispatcher.dispatch_job", dispatch):
        with pytest.raises(MalformedMessageError):
            await QueueConsumer().on_message({"userId": "u1", "meetingId": "m1"})
        with pytest.raises(MalformedMessageError):
            await QueueConsumer().on_message({"userId": "u1", "meetingId": "", "transcriptId": "t1"})

    assert dispatch.await_count == 0
