"""Turns a batch of change notifications into queue messages.

Every entry is judged on its own; a bad entry is counted as rejected and the
rest of the batch goes through. Nothing here dispatches work.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from pydantic import ValidationError

from src.schemas.notifications import ChangeNotification, NotificationMessage

logger = logging.getLogger(__name__)

_USER_RE = re.compile(r"users\('([^']+)'\)")
_MEETING_RE = re.compile(r"onlineMeetings\('([^']+)'\)")
_TRANSCRIPT_RE = re.compile(r"transcripts\('([^']+)'\)")


@dataclass
class IngestResult:
    messages: list[NotificationMessage] = field(default_factory=list)
    rejected: int = 0


def _mask(secret: str | None) -> str:
    return f"{secret[:4]}..." if secret else "none"


def _match(pattern: re.Pattern, resource: str) -> str | None:
    found = pattern.search(resource)
    return found.group(1) if found else None


def parse_notification(
    entry: object,
    expected_client_state: str,
    expected_resource_type: str,
) -> NotificationMessage | None:
    """Validate one entry and extract its IDs; None if it must be skipped."""
    try:
        notification = ChangeNotification.model_validate(entry)
    except ValidationError as exc:
        logger.warning("SKIP: unparseable notification entry: %s", exc.errors()[:1])
        return None

    if notification.client_state != expected_client_state:
        logger.warning(
            "SKIP: invalid clientState (expected=%s got=%s)",
            _mask(expected_client_state),
            _mask(notification.client_state),
        )
        return None

    data = notification.resource_data
    odata_type = data.odata_type if data else ""
    if expected_resource_type.lower() not in odata_type.lower():
        logger.info("SKIP: not a %s notification (type=%s)", expected_resource_type, odata_type or "none")
        return None

    resource = notification.resource or ""
    user_id = _match(_USER_RE, resource) or (data.meeting_organizer_id if data else None)
    meeting_id = _match(_MEETING_RE, resource) or (data.meeting_id if data else None)
    transcript_id = _match(_TRANSCRIPT_RE, resource) or (data.id if data else None)

    if not (user_id and meeting_id and transcript_id):
        logger.error(
            "SKIP: missing IDs user_id=%s meeting_id=%s transcript_id=%s",
            user_id, meeting_id, transcript_id,
        )
        return None

    return NotificationMessage(user_id=user_id, meeting_id=meeting_id, transcript_id=transcript_id)


def extract_messages(
    payload: dict,
    expected_client_state: str,
    expected_resource_type: str,
) -> IngestResult:
    entries = payload.get("value") or []
    if not isinstance(entries, list):
        entries = [entries]

    result = IngestResult()
    for entry in entries:
        message = parse_notification(entry, expected_client_state, expected_resource_type)
        if message is None:
            result.rejected += 1
            continue
        result.messages.append(message)
        logger.info(
            "Queued user_id=%s meeting_id=%s transcript_id=%s",
            message.user_id, message.meeting_id, message.transcript_id,
        )
    return result
