"""Starts one platform job per unit of work and records it for cancellation.

Dispatch returns as soon as the platform accepts the execution; job
completion is never awaited here. Platform errors propagate unchanged so the
queue consumer can let the message be redelivered.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import suppress
from urllib.parse import urlencode

from src.clients.job_platform import JobPlatformClient
from src.config import settings
from src.schemas.notifications import WorkKey
from src.services.caches import ExecutionRecord, JobHandle, execution_tracker

logger = logging.getLogger(__name__)


class MissingConfigurationError(RuntimeError):
    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Missing required environment variables: {', '.join(missing)}")


_last_stamp_ms = 0
_stamp_lock = threading.Lock()


def new_execution_id(work_key: WorkKey) -> str:
    """``{meeting}-{transcript}-{epoch ms}``, unique within this process."""
    global _last_stamp_ms
    with _stamp_lock:
        stamp = max(int(time.time() * 1000), _last_stamp_ms + 1)
        _last_stamp_ms = stamp
    return f"{work_key}-{stamp}"


def _require_job_settings() -> None:
    required = {
        "DISPATCH_JOB_SUBSCRIPTION_ID": settings.job_subscription_id,
        "DISPATCH_JOB_RESOURCE_GROUP": settings.job_resource_group,
        "DISPATCH_JOB_NAME": settings.job_name,
        "DISPATCH_JOB_IMAGE": settings.job_image,
        "DISPATCH_AZURE_TENANT_ID": settings.azure_tenant_id,
        "DISPATCH_AZURE_CLIENT_ID": settings.azure_client_id,
        "DISPATCH_AZURE_CLIENT_SECRET": settings.azure_client_secret,
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        logger.error("Cannot dispatch, missing configuration: %s", ", ".join(missing))
        raise MissingConfigurationError(missing)


def cancel_endpoint() -> str:
    if settings.cancel_url:
        return settings.cancel_url.rstrip("/")
    if settings.public_hostname:
        return f"https://{settings.public_hostname}{settings.api_prefix}/cancel"
    return ""


def build_cancel_urls(execution_id: str) -> tuple[str, str]:
    """Return (cancel URL, cancellation-check URL); empty when not configured."""
    endpoint = cancel_endpoint()
    if not endpoint:
        return "", ""
    cancel_query = urlencode({
        "executionId": execution_id,
        "jobName": settings.job_name,
        "resourceGroup": settings.job_resource_group,
    })
    check_endpoint = endpoint.rsplit("/", 1)[0] + "/check-cancelled"
    return f"{endpoint}?{cancel_query}", f"{check_endpoint}?{urlencode({'executionId': execution_id})}"


def build_job_env(params: dict[str, str], execution_id: str, cancel_url: str, check_url: str) -> list[dict]:
    """The complete env array for the job container.

    The start override replaces the job's env wholesale, so static values and
    secret references are repeated on every dispatch.
    """
    env = [{"name": name, "value": value} for name, value in params.items()]
    env += [
        {"name": "JOB_EXECUTION_ID", "value": execution_id},
        {"name": "CANCEL_URL", "value": cancel_url},
        {"name": "CANCEL_CHECK_URL", "value": check_url},
    ]
    env += [{"name": name, "value": value} for name, value in settings.job_static_env.items()]
    env += [{"name": name, "secretRef": ref} for name, ref in settings.job_secret_refs.items()]
    return env


async def dispatch_job(work_key: WorkKey, params: dict[str, str]) -> str:
    """Start a job execution for ``work_key``; returns its execution ID."""
    _require_job_settings()

    execution_id = new_execution_id(work_key)
    cancel_url, check_url = build_cancel_urls(execution_id)
    template = {
        "containers": [
            {
                "name": settings.job_container_name,
                "image": settings.job_image,
                "env": build_job_env(params, execution_id, cancel_url, check_url),
            }
        ]
    }

    logger.info("Starting job %s for %s (execution_id=%s)", settings.job_name, work_key, execution_id)
    platform = JobPlatformClient()
    try:
        execution_name = await platform.start(settings.job_name, template)
    except Exception as exc:
        logger.error("Job start failed for %s (job=%s): %s", work_key, settings.job_name, exc)
        raise
    finally:
        with suppress(Exception):
            await platform.close()

    execution_tracker.record(ExecutionRecord(
        execution_id=execution_id,
        job=JobHandle(
            resource_group=settings.job_resource_group,
            job_name=settings.job_name,
            execution_name=execution_name,
        ),
    ))
    logger.info(
        "Job started: job=%s execution_name=%s execution_id=%s cancel_url=%s",
        settings.job_name, execution_name, execution_id, cancel_url or "(not configured)",
    )
    return execution_id
