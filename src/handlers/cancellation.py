"""Stops a dispatched job execution on request.

Cancellation is advisory. The job may finish between the lookup and the stop
call, so live status is re-read right before stopping and "already
completed" counts as a normal outcome. When the execution ID is unknown to
this instance the running executions of the job are listed; with more than
one running there is no way to tell which the caller meant, so nothing is
stopped and a conflict is reported.

Every request leaves a cancellation mark for the execution ID, whatever the
outcome, so a job polling its own status can stop itself.
"""

from __future__ import annotations

import logging
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum

from src.clients.job_platform import JobPlatformClient, is_running
from src.clients.notifier import NotifierClient
from src.config import settings
from src.services.caches import cancellation_marks, execution_tracker
from src.templates.notification_templates import build_cancelled_notification

logger = logging.getLogger(__name__)


class CancelOutcome(str, Enum):
    STOPPED = "stopped"
    ALREADY_COMPLETED = "already_completed"
    NOTHING_TO_CANCEL = "nothing_to_cancel"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass
class CancelResult:
    execution_id: str
    outcome: CancelOutcome
    reason: str
    execution_name: str | None = None

    @property
    def stopped(self) -> bool:
        return self.outcome is CancelOutcome.STOPPED


async def _stop_if_running(platform: JobPlatformClient, job_name: str, execution_name: str) -> CancelOutcome:
    status = await platform.get_status(job_name, execution_name)
    if not is_running(status):
        logger.info("Job already completed: execution_name=%s status=%s", execution_name, status)
        return CancelOutcome.ALREADY_COMPLETED
    await platform.stop(job_name, execution_name)
    logger.info("Job execution stopped: execution_name=%s previous_status=%s", execution_name, status)
    return CancelOutcome.STOPPED


async def _cancel_tracked(platform: JobPlatformClient, execution_id: str, job_name: str, execution_name: str) -> CancelResult:
    outcome = await _stop_if_running(platform, job_name, execution_name)
    reason = "cancelled" if outcome is CancelOutcome.STOPPED else "already completed"
    return CancelResult(execution_id, outcome, reason, execution_name)


async def _cancel_untracked(platform: JobPlatformClient, execution_id: str, job_name: str) -> CancelResult:
    running = [e for e in await platform.list_executions(job_name) if is_running(e.get("status"))]
    if not running:
        return CancelResult(
            execution_id,
            CancelOutcome.NOTHING_TO_CANCEL,
            "nothing to cancel — may have already completed",
        )
    if len(running) > 1:
        names = ", ".join(str(e.get("name")) for e in running)
        logger.warning(
            "Refusing to cancel execution_id=%s: %d running executions of %s (%s)",
            execution_id, len(running), job_name, names,
        )
        return CancelResult(
            execution_id,
            CancelOutcome.CONFLICT,
            f"{len(running)} executions are running; cannot tell which one to stop",
        )

    execution_name = running[0]["name"]
    outcome = await _stop_if_running(platform, job_name, execution_name)
    reason = "cancelled" if outcome is CancelOutcome.STOPPED else "already completed"
    return CancelResult(execution_id, outcome, reason, execution_name)


async def _notify_cancelled(result: CancelResult) -> None:
    if not settings.notify_webhook_url:
        logger.warning("Notify webhook not configured, skipping cancelled notification")
        return
    notifier = None
    try:
        notifier = NotifierClient()
        await notifier.send(build_cancelled_notification(result.execution_id, result.reason, result.execution_name))
    except Exception as exc:
        logger.warning("Failed to send cancelled notification for %s: %s", result.execution_id, exc)
    finally:
        if notifier is not None:
            with suppress(Exception):
                await notifier.close()


async def cancel_execution(
    execution_id: str,
    job_name: str | None = None,
    resource_group: str | None = None,
) -> CancelResult:
    record = execution_tracker.lookup(execution_id)
    if record is not None:
        job_name = record.job.job_name
        resource_group = record.job.resource_group
    job_name = job_name or settings.job_name
    resource_group = resource_group or settings.job_resource_group

    logger.info(
        "Cancel requested: execution_id=%s tracked=%s job=%s resource_group=%s",
        execution_id, record is not None, job_name, resource_group,
    )

    try:
        if not job_name:
            raise RuntimeError("job name unknown: pass jobName or set DISPATCH_JOB_NAME")
        platform = JobPlatformClient(resource_group=resource_group)
        try:
            if record is not None:
                result = await _cancel_tracked(platform, execution_id, job_name, record.job.execution_name)
            else:
                result = await _cancel_untracked(platform, execution_id, job_name)
        finally:
            with suppress(Exception):
                await platform.close()
    except Exception as exc:
        logger.error("Failed to cancel execution_id=%s: %s", execution_id, exc)
        result = CancelResult(execution_id, CancelOutcome.FAILED, f"failed to cancel: {exc}")

    if record is not None:
        execution_tracker.forget(execution_id)
    cancellation_marks.mark(execution_id)

    if result.stopped:
        await _notify_cancelled(result)

    logger.info(
        "Cancel finished: execution_id=%s outcome=%s reason=%s",
        execution_id, result.outcome.value, result.reason,
    )
    return result


def is_cancelled(execution_id: str) -> bool:
    return cancellation_marks.is_marked(execution_id)
