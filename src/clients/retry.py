"""Bounded retries with backoff for outbound HTTP calls.

429 and 5xx responses, timeouts and transport errors are retried up to the
attempt budget. A ``Retry-After`` hint from the server is honoured; without
one the delay grows exponentially with random jitter, capped at
``max_delay``. Any other HTTP error aborts immediately.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable

import httpx

from src.config import settings

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    timeout: float = 30.0
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.renewal_max_attempts,
            timeout=settings.renewal_timeout_seconds,
            base_delay=settings.renewal_backoff_base_seconds,
            max_delay=settings.renewal_backoff_max_seconds,
        )

    def backoff_delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay after failed ``attempt`` (1-based).

        The jittered delay for attempt n lies in [b*2^(n-1), b*2^n), so
        successive delays never shrink before reaching the cap.
        """
        step = self.base_delay * (2 ** (attempt - 1))
        return min(self.max_delay, step + step * rng())


class RequestFailedError(Exception):
    def __init__(
        self,
        operation: str,
        attempts: int,
        duration: float,
        *,
        status_code: int | None = None,
        retryable: bool,
        detail: str = "",
    ) -> None:
        self.operation = operation
        self.attempts = attempts
        self.duration = duration
        self.status_code = status_code
        self.retryable = retryable
        self.detail = detail
        super().__init__(
            f"{operation} failed after {attempts} attempt(s) in {duration:.1f}s "
            f"(status={status_code or 'n/a'}, retryable={retryable}): {detail}"
        )


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


async def send_with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    policy: RetryPolicy,
    *,
    operation: str,
    sleep: Sleep = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> httpx.Response:
    """Run ``send`` until it returns a 2xx response or the policy gives up.

    Each attempt is bounded by ``policy.timeout``. A successful response
    carries its attempt number in ``response.extensions["retry_attempts"]``;
    giving up raises ``RequestFailedError`` with attempt count and elapsed time.
    """
    started = time.monotonic()
    last_status: int | None = None
    detail = ""

    for attempt in range(1, policy.max_attempts + 1):
        retry_hint: float | None = None
        try:
            response = await asyncio.wait_for(send(), timeout=policy.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            detail = f"timed out after {policy.timeout:.0f}s"
            logger.warning("%s attempt %d/%d %s", operation, attempt, policy.max_attempts, detail)
        except httpx.TransportError as exc:
            detail = f"transport error: {exc}"
            logger.warning("%s attempt %d/%d %s", operation, attempt, policy.max_attempts, detail)
        else:
            if response.is_success:
                response.extensions["retry_attempts"] = attempt
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d", operation, attempt)
                return response
            last_status = response.status_code
            detail = response.text[:500]
            if not is_retryable_status(response.status_code):
                raise RequestFailedError(
                    operation,
                    attempt,
                    time.monotonic() - started,
                    status_code=last_status,
                    retryable=False,
                    detail=detail,
                )
            retry_hint = parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(
                "%s attempt %d/%d returned %d",
                operation, attempt, policy.max_attempts, response.status_code,
            )

        if attempt == policy.max_attempts:
            break
        delay = policy.backoff_delay(attempt, rng) if retry_hint is None else min(retry_hint, policy.max_delay)
        logger.info("%s retrying in %.1fs", operation, delay)
        await sleep(delay)

    raise RequestFailedError(
        operation,
        policy.max_attempts,
        time.monotonic() - started,
        status_code=last_status,
        retryable=True,
        detail=detail,
    )
