"""Cancellation routes, called from the Cancel button of the chat card and by jobs."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from src.handlers.cancellation import CancelOutcome, cancel_execution, is_cancelled
from src.schemas.notifications import CancelResponse, CancellationStatus

router = APIRouter(tags=["cancellation"])


@router.api_route("/cancel", methods=["GET", "POST"], response_model=CancelResponse)
async def cancel(
    execution_id: Optional[str] = Query(None, alias="executionId"),
    job_name: Optional[str] = Query(None, alias="jobName"),
    resource_group: Optional[str] = Query(None, alias="resourceGroup"),
):
    """Stop the job execution behind ``executionId``.

    The execution ID is the only credential; it reaches users solely through
    the notification that carries the cancel link. Responds 409 when several
    executions are running and none is known to this instance.
    """
    if not execution_id:
        raise HTTPException(status_code=400, detail="Missing executionId parameter")

    result = await cancel_execution(execution_id, job_name, resource_group)
    response = CancelResponse(
        stopped=result.stopped,
        outcome=result.outcome.value,
        reason=result.reason,
        execution_id=result.execution_id,
        execution_name=result.execution_name,
    )
    if result.outcome is CancelOutcome.CONFLICT:
        return JSONResponse(response.model_dump(by_alias=True), status_code=409)
    return response


@router.get("/check-cancelled", response_model=CancellationStatus)
async def check_cancelled(execution_id: str = Query(..., alias="executionId")):
    """Polled by running jobs to learn whether they were asked to stop."""
    return CancellationStatus(cancelled=is_cancelled(execution_id), execution_id=execution_id)
