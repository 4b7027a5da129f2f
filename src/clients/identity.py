"""OAuth2 client-credentials tokens from Microsoft Entra ID."""

from __future__ import annotations

import logging
import time

import httpx

from src.clients.retry import RetryPolicy, Sleep, send_with_retry
from src.config import settings

logger = logging.getLogger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
MANAGEMENT_SCOPE = "https://management.azure.com/.default"

# scope -> (access token, monotonic expiry)
_token_cache: dict[str, tuple[str, float]] = {}
_EXPIRY_MARGIN_SECONDS = 300


def clear_token_cache() -> None:
    _token_cache.clear()


class IdentityClient:
    """Acquire app-only access tokens, retrying transient failures."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        missing = [
            name
            for name, value in (
                ("DISPATCH_AZURE_TENANT_ID", settings.azure_tenant_id),
                ("DISPATCH_AZURE_CLIENT_ID", settings.azure_client_id),
                ("DISPATCH_AZURE_CLIENT_SECRET", settings.azure_client_secret),
            )
            if not value
        ]
        if missing:
            raise RuntimeError(f"Identity not configured: set {', '.join(missing)}")
        self._token_url = (
            f"{settings.login_base_url.rstrip('/')}/{settings.azure_tenant_id}/oauth2/v2.0/token"
        )
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self._policy = policy or RetryPolicy.from_settings()
        self._sleep = sleep

    async def acquire_token(self, scope: str) -> str:
        cached = _token_cache.get(scope)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        form = {
            "client_id": settings.azure_client_id,
            "client_secret": settings.azure_client_secret,
            "scope": scope,
            "grant_type": "client_credentials",
        }
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        resp = await send_with_retry(
            lambda: self._client.post(self._token_url, data=form),
            self._policy,
            operation="token",
            **kwargs,
        )
        data = resp.json()
        token = data["access_token"]
        lifetime = float(data.get("expires_in", 3600))
        _token_cache[scope] = (token, time.monotonic() + max(0.0, lifetime - _EXPIRY_MARGIN_SECONDS))
        logger.debug("Acquired token for %s (expires_in=%ss)", scope, int(lifetime))
        return token

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
