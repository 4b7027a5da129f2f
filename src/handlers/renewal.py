"""Keeps the Graph change-notification subscription alive.

``renew_subscription`` is the timer tick. It never raises: a failed renewal
is logged with attempt count and duration so an alert can fire well before
the subscription lapses.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from datetime import datetime, timedelta, timezone
from enum import Enum

import httpx

from src.clients.graph_client import GraphClient
from src.clients.identity import GRAPH_SCOPE, IdentityClient
from src.clients.retry import RequestFailedError, RetryPolicy, Sleep
from src.config import settings

logger = logging.getLogger(__name__)


class RenewalOutcome(str, Enum):
    SKIPPED = "skipped"
    RENEWED = "renewed"
    FAILED = "failed"


async def renew_subscription(
    client: httpx.AsyncClient | None = None,
    policy: RetryPolicy | None = None,
    sleep: Sleep | None = None,
) -> RenewalOutcome:
    subscription_id = settings.graph_subscription_id
    if not subscription_id:
        logger.info("[Renew] SKIP: subscription ID not configured")
        return RenewalOutcome.SKIPPED

    sub_short = subscription_id[:8]
    started = time.monotonic()
    identity = graph = None
    try:
        identity = IdentityClient(client=client, policy=policy, sleep=sleep)
        token = await identity.acquire_token(GRAPH_SCOPE)

        expires_at = datetime.now(timezone.utc) + timedelta(hours=settings.renewal_window_hours)
        graph = GraphClient(client=client, policy=policy, sleep=sleep)
        result = await graph.renew_subscription(subscription_id, expires_at, token)
        logger.info(
            "[Renew] SUCCESS: expires=%s sub=%s req=%s attempts=%d duration=%.1fs",
            result.get("expirationDateTime", expires_at.isoformat()),
            sub_short,
            result.get("requestId", "N/A"),
            result.get("attempts", 1),
            time.monotonic() - started,
        )
        return RenewalOutcome.RENEWED
    except RequestFailedError as exc:
        logger.error(
            "[Renew] ERROR: %s failed sub=%s attempts=%d duration=%.1fs status=%s retryable=%s detail=%s",
            exc.operation, sub_short, exc.attempts, exc.duration,
            exc.status_code, exc.retryable, exc.detail,
        )
    except Exception as exc:
        logger.error(
            "[Renew] ERROR: %s sub=%s duration=%.1fs",
            exc, sub_short, time.monotonic() - started,
        )
    finally:
        for owned in (identity, graph):
            if owned is not None:
                with suppress(Exception):
                    await owned.close()
    return RenewalOutcome.FAILED


async def run_renewal_loop(stop: asyncio.Event, interval: float | None = None) -> None:
    """Renew now, then every ``interval`` seconds until ``stop`` is set."""
    interval = interval or settings.renewal_interval_seconds
    while not stop.is_set():
        await renew_subscription()
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)
