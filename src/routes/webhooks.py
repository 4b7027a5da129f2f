"""Webhook route for transcript change notifications."""

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.database import get_db
from src.handlers.ingest import extract_messages
from src.schemas.notifications import WebhookAck
from src.services.durable_queue import notification_queue

router = APIRouter(tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.api_route("/webhooks/transcripts", methods=["GET", "POST"], status_code=202, response_model=WebhookAck)
async def transcript_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Receive change notifications from the event source.

    Answers the subscription validation handshake, otherwise validates each
    notification and queues the good ones. Returns 202 without waiting for
    any processing.
    """
    validation_token = request.query_params.get("validationToken")
    if validation_token:
        logger.info("Validation request, echoing token")
        return PlainTextResponse(validation_token, status_code=200)

    try:
        body = json.loads(await request.body())
    except ValueError as exc:
        logger.error("Failed to parse request body: %s", exc)
        return PlainTextResponse("Invalid JSON payload", status_code=400)
    if not isinstance(body, dict):
        return PlainTextResponse("Invalid JSON payload", status_code=400)

    if not settings.webhook_client_state:
        logger.error("Webhook client state is not configured (DISPATCH_WEBHOOK_CLIENT_STATE)")
        return JSONResponse({"message": "Server configuration error"}, status_code=500)

    result = extract_messages(body, settings.webhook_client_state, settings.webhook_resource_type)
    await notification_queue.enqueue(db, [m.to_queue_payload() for m in result.messages])

    logger.info(
        "Processed notifications: total=%d queued=%d skipped=%d",
        len(result.messages) + result.rejected, len(result.messages), result.rejected,
    )
    return WebhookAck(accepted=len(result.messages), rejected=result.rejected)
