from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .enums import OccurrenceStatus, ReminderAction


def _epoch_millis() -> int:
    return int(datetime.now(tz=timezone.utc).timestamp() * 1000)


class NotificationAction(BaseModel):
    action: ReminderAction
    title: str


class NotificationPayload(BaseModel):
    """Body handed to the push transport; serialized with ``by_alias=True``."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    title: str
    body: str
    icon: str = "/icons/icon-192x192.png"
    badge: str = "/icons/icon-72x72.png"
    tag: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    actions: list[NotificationAction] = Field(default_factory=list)
    require_interaction: bool = Field(default=False, alias="requireInteraction")
    timestamp: int = Field(default_factory=_epoch_millis)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SubscriptionKeys(BaseModel):
    p256dh: str = Field(min_length=1)
    auth: str = Field(min_length=1)


class SubscriptionIn(BaseModel):
    endpoint: str = Field(min_length=1)
    keys: SubscriptionKeys
    expiration_time: int | None = Field(default=None, alias="expirationTime")

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def validate_endpoint(self) -> "SubscriptionIn":
        if not self.endpoint.startswith(("https://", "http://")):
            raise ValueError("endpoint must be an absolute http(s) URL")
        return self


class UnsubscribeIn(BaseModel):
    endpoint: str = Field(min_length=1)


class GenerationResult(BaseModel):
    created: int = Field(ge=0)
    dates: list[date] = Field(default_factory=list)


class SweepResult(BaseModel):
    transitioned: int = Field(ge=0)
    swept_at: datetime


class DispatchResult(BaseModel):
    enabled: bool
    occurrences: int = Field(ge=0)
    sent: int = Field(ge=0)
    failed: int = Field(ge=0)


class CleanupResult(BaseModel):
    removed: int = Field(ge=0)


class OccurrenceDTO(BaseModel):
    occurrence_id: int
    medication_id: int
    medication_name: str
    dosage: str | None = None
    scheduled_time: datetime
    status: OccurrenceStatus
    taken_time: datetime | None = None
    notes: str | None = None
