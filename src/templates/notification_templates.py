"""Payload builders for outbound chat notifications."""

from __future__ import annotations


def build_cancelled_notification(
    execution_id: str,
    reason: str,
    execution_name: str | None = None,
) -> dict:
    """Payload telling meeting participants that processing was cancelled."""
    payload = {
        "notificationType": "cancelled",
        "executionId": execution_id,
        "message": "Meeting transcript processing was cancelled by user.",
        "reason": reason,
    }
    if execution_name:
        payload["executionName"] = execution_name
    return payload
