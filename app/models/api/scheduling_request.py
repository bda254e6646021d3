# app/models/api/scheduling_request.py
"""
Scheduling API request models.
Used by routes for input validation.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from app.models.domain.scheduling_domain import TimeSlot, parse_duration_minutes


class TimeRangeRequest(BaseModel):
    """A start/end pair; naive datetimes are taken as UTC."""

    start: datetime = Field(..., description="Range start (inclusive)")
    end: datetime = Field(..., description="Range end (exclusive)")

    @model_validator(mode="after")
    def _end_after_start(self):
        TimeSlot(self.start, self.end)
        return self

    def to_slot(self) -> TimeSlot:
        return TimeSlot(self.start, self.end)


class AvailabilityRequest(TimeRangeRequest):
    """Request for resolving common availability of an event's participants."""

    duration_minutes: int | str | None = Field(
        default=None,
        description="Meeting length in minutes or a legacy label such as '1 hour' "
        "(default: the event's duration)",
    )
    check_id: uuid.UUID | None = Field(
        default=None,
        description="Client-chosen id to poll progress under while the check runs "
        "(default: generated)",
    )

    @model_validator(mode="after")
    def _normalize_duration(self):
        if self.duration_minutes is not None:
            self.duration_minutes = parse_duration_minutes(self.duration_minutes)
        return self


class ConfirmSlotRequest(TimeRangeRequest):
    """Request for booking one of the offered slots."""
