"""Microsoft Graph client for change-notification subscriptions."""

from __future__ import annotations

import logging
from datetime import datetime

import httpx

from src.clients.retry import RetryPolicy, Sleep, send_with_retry
from src.config import settings

logger = logging.getLogger(__name__)


class GraphClient:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._base_url = settings.graph_base_url.rstrip("/")
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self._policy = policy or RetryPolicy.from_settings()
        self._sleep = sleep

    async def renew_subscription(
        self, subscription_id: str, expires_at: datetime, access_token: str
    ) -> dict:
        """PATCH the subscription's expiry. Returns the updated subscription."""
        url = f"{self._base_url}/subscriptions/{subscription_id}"
        payload = {"expirationDateTime": expires_at.isoformat().replace("+00:00", "Z")}
        headers = {"Authorization": f"Bearer {access_token}"}
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        resp = await send_with_retry(
            lambda: self._client.patch(url, json=payload, headers=headers),
            self._policy,
            operation="renew",
            **kwargs,
        )
        data = resp.json()
        data.setdefault("requestId", resp.headers.get("request-id", "N/A"))
        data["attempts"] = resp.extensions.get("retry_attempts", 1)
        return data

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
