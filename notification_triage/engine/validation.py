"""
Input validation — turns a raw payload into a NotificationEvent or rejects it.
Rejected payloads never reach the orchestrator and never produce a Decision.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Mapping, Optional
import uuid

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from notification_triage.engine.errors import ValidationError
from notification_triage.engine.models import NotificationEvent


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12], min_length=1)
    user_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    channel: Literal["push", "email", "sms", "in_app"]
    message: str = ""
    title: Optional[str] = None
    source: Optional[str] = None
    priority_hint: Literal["low", "medium", "high", "critical"] = "medium"
    received_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    dedupe_key: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("channel", mode="before")
    @classmethod
    def _channel(cls, value):
        # "in-app" is accepted as an alias
        if isinstance(value, str):
            return value.strip().lower().replace("-", "_")
        return value

    @field_validator("priority_hint", mode="before")
    @classmethod
    def _priority(cls, value):
        if value is None:
            return "medium"
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("received_at", "expires_at")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _content_and_expiry(self) -> "EventPayload":
        if not (self.message or self.title):
            raise ValueError("message or title is required")
        if self.expires_at and self.received_at and self.expires_at < self.received_at:
            raise ValueError("expires_at is earlier than received_at")
        return self


def validate_event(payload: Mapping[str, Any], now: Optional[datetime] = None) -> NotificationEvent:
    """
    Validate and normalize a raw event mapping.
    Raises ValidationError with the first offending field.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("Event must be a JSON object")
    try:
        parsed = EventPayload.model_validate(dict(payload))
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ValidationError(f"{field or 'event'}: {first['msg']}", field=field) from e

    # Without an explicit received_at the event is stamped on arrival; an
    # already-past expires_at is then a stale event, not a malformed one.
    received_at = parsed.received_at or now or datetime.now(timezone.utc)
    if parsed.expires_at and parsed.expires_at < received_at and parsed.received_at is None:
        received_at = parsed.expires_at

    return NotificationEvent(
        id=parsed.id,
        user_id=parsed.user_id,
        event_type=parsed.event_type,
        channel=parsed.channel,
        message=parsed.message,
        title=parsed.title,
        source=parsed.source,
        priority_hint=parsed.priority_hint,
        received_at=received_at,
        expires_at=parsed.expires_at,
        dedupe_key=parsed.dedupe_key or None,
        metadata=parsed.metadata,
    )
