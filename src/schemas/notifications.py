"""Pydantic models for change notifications, queue messages and API responses."""

from datetime import datetime, timezone
from typing import NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field


class ResourceData(BaseModel):
    """``resourceData`` block of a Graph change notification."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    odata_type: str = Field("", alias="@odata.type")
    id: Optional[str] = None
    meeting_id: Optional[str] = Field(None, alias="meetingId")
    meeting_organizer_id: Optional[str] = Field(None, alias="meetingOrganizerId")


class ChangeNotification(BaseModel):
    """One entry of the ``value`` array posted by the event source."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    subscription_id: Optional[str] = Field(None, alias="subscriptionId")
    client_state: Optional[str] = Field(None, alias="clientState")
    change_type: Optional[str] = Field(None, alias="changeType")
    resource: str = ""
    resource_data: Optional[ResourceData] = Field(None, alias="resourceData")


class WorkKey(NamedTuple):
    meeting_id: str
    transcript_id: str

    def __str__(self) -> str:
        return f"{self.meeting_id}-{self.transcript_id}"


class NotificationMessage(BaseModel):
    """A validated transcript notification, as written to the queue."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    user_id: str = Field(alias="userId", min_length=1)
    meeting_id: str = Field(alias="meetingId", min_length=1)
    transcript_id: str = Field(alias="transcriptId", min_length=1)
    received_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="timestamp"
    )

    @property
    def work_key(self) -> WorkKey:
        return WorkKey(self.meeting_id, self.transcript_id)

    def to_queue_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class WebhookAck(BaseModel):
    message: str = "Accepted"
    accepted: int = 0
    rejected: int = 0


class CancelResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stopped: bool
    outcome: str
    reason: str
    execution_id: str = Field(serialization_alias="executionId")
    execution_name: Optional[str] = Field(None, serialization_alias="executionName")


class CancellationStatus(BaseModel):
    cancelled: bool
    execution_id: str = Field(serialization_alias="executionId")
