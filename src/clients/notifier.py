"""Outbound chat notifications via a workflow webhook."""

from __future__ import annotations

import logging

import httpx

from src.config import settings

logger = logging.getLogger(__name__)


class NotifierClient:
    """POST JSON notification payloads to the configured workflow URL."""

    def __init__(self) -> None:
        if not settings.notify_webhook_url:
            raise RuntimeError("Notifier not configured: set DISPATCH_NOTIFY_WEBHOOK_URL")
        self._url = settings.notify_webhook_url
        self._client = httpx.AsyncClient(timeout=10.0)

    async def send(self, payload: dict) -> None:
        resp = await self._client.post(self._url, json=payload)
        resp.raise_for_status()
        logger.info("Notification sent: type=%s", payload.get("notificationType", "?"))

    async def close(self) -> None:
        await self._client.aclose()
