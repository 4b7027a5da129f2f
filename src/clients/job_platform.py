"""Azure Container Apps jobs REST client (management plane)."""

from __future__ import annotations

import logging

import httpx

from src.clients.identity import MANAGEMENT_SCOPE, IdentityClient
from src.config import settings

logger = logging.getLogger(__name__)

RUNNING_STATES = frozenset({"Running", "Processing"})


def is_running(status: str | None) -> bool:
    return status in RUNNING_STATES


class JobPlatformClient:
    """Start, inspect, list and stop executions of a Container Apps job.

    ``start`` sends a template override. The platform replaces the
    container's env array with the one given, so callers pass every variable
    the job needs on every start.
    """

    def __init__(
        self,
        subscription_id: str | None = None,
        resource_group: str | None = None,
        client: httpx.AsyncClient | None = None,
        identity: IdentityClient | None = None,
    ) -> None:
        self._subscription_id = subscription_id or settings.job_subscription_id
        self.resource_group = resource_group or settings.job_resource_group
        if not self._subscription_id or not self.resource_group:
            raise RuntimeError(
                "Job platform not configured: set DISPATCH_JOB_SUBSCRIPTION_ID and DISPATCH_JOB_RESOURCE_GROUP"
            )
        self._base_url = settings.job_platform_base_url.rstrip("/")
        self._api_version = settings.job_platform_api_version
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._identity = identity or IdentityClient(client=self._client)

    def _job_url(self, job_name: str, suffix: str = "") -> str:
        return (
            f"{self._base_url}/subscriptions/{self._subscription_id}"
            f"/resourceGroups/{self.resource_group}/providers/Microsoft.App/jobs/{job_name}{suffix}"
        )

    async def _request(self, method: str, url: str, json: dict | None = None) -> httpx.Response:
        token = await self._identity.acquire_token(MANAGEMENT_SCOPE)
        resp = await self._client.request(
            method,
            url,
            params={"api-version": self._api_version},
            json=json,
            headers={"Authorization": f"Bearer {token}"},
        )
        resp.raise_for_status()
        return resp

    async def start(self, job_name: str, template: dict) -> str:
        """Start an execution and return its name once the platform accepts it."""
        resp = await self._request("POST", self._job_url(job_name, "/start"), json={"template": template})
        data = resp.json() if resp.content else {}
        execution_name = data.get("name") or "unknown"
        logger.info("Job %s accepted execution %s", job_name, execution_name)
        return execution_name

    async def get_status(self, job_name: str, execution_name: str) -> str | None:
        resp = await self._request("GET", self._job_url(job_name, f"/executions/{execution_name}"))
        return (resp.json().get("properties") or {}).get("status")

    async def stop(self, job_name: str, execution_name: str) -> None:
        await self._request("POST", self._job_url(job_name, f"/executions/{execution_name}/stop"))
        logger.info("Stop requested for %s/%s", job_name, execution_name)

    async def list_executions(self, job_name: str) -> list[dict]:
        """Return ``[{"name", "status"}]`` for every known execution of the job."""
        resp = await self._request("GET", self._job_url(job_name, "/executions"))
        return [
            {"name": item.get("name"), "status": (item.get("properties") or {}).get("status")}
            for item in resp.json().get("value", [])
        ]

    async def close(self) -> None:
        await self._client.aclose()
