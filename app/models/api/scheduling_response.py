# app/models/api/scheduling_response.py
"""
Scheduling API response models.
Used by routes for output formatting.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from app.models.domain.scheduling_results import (
    AvailabilityCheck,
    CommitResult,
    ParticipantFailure,
    RankedSlot,
)


class RankedSlotResponse(BaseModel):
    start: datetime = Field(..., description="Slot start (UTC)")
    end: datetime = Field(..., description="Slot end (UTC)")
    score: int = Field(..., description="Policy score, higher is better")
    rank: int = Field(..., description="1-based position in the offered list")

    @classmethod
    def from_domain(cls, ranked: RankedSlot) -> "RankedSlotResponse":
        return cls(
            start=ranked.slot.start, end=ranked.slot.end, score=ranked.score, rank=ranked.rank
        )


class ParticipantIssueResponse(BaseModel):
    """One participant's problem, specific enough to prompt that person to act."""

    participant_id: str
    kind: str = Field(..., description="Failure kind, e.g. unauthorized or insufficient_scope")
    message: str
    email: str | None = None
    missing_scopes: list[str] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, failure: ParticipantFailure) -> "ParticipantIssueResponse":
        return cls(**failure.to_dict())


class AvailabilityResponse(BaseModel):
    """Result of an availability check (also returned when polling)."""

    check_id: str
    event_id: str
    status: str = Field(..., description="resolving, completed or failed")
    slots: list[RankedSlotResponse] = Field(default_factory=list)
    reason: str | None = Field(None, description="Error kind when no slots are offered")
    message: str | None = None
    participant_errors: list[ParticipantIssueResponse] = Field(default_factory=list)
    degraded_participants: list[ParticipantIssueResponse] = Field(
        default_factory=list,
        description="Participants whose calendar could not be read (treated as busy)",
    )
    skipped_participants: list[str] = Field(
        default_factory=list, description="Invitees without a connected account"
    )
    token_outcomes: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_check(cls, check: AvailabilityCheck) -> "AvailabilityResponse":
        failures = check.error.failures if check.error else []
        return cls(
            check_id=check.check_id,
            event_id=check.event_id,
            status=str(check.status),
            slots=[RankedSlotResponse.from_domain(slot) for slot in check.slots],
            reason=str(check.error.kind) if check.error else None,
            message=check.error.message if check.error else None,
            participant_errors=[ParticipantIssueResponse.from_domain(f) for f in failures],
            degraded_participants=[ParticipantIssueResponse.from_domain(f) for f in check.degraded],
            skipped_participants=list(check.skipped),
            token_outcomes=dict(check.token_outcomes),
        )


class CommitResponse(BaseModel):
    """Outcome of confirm, sync or cancel."""

    success: bool
    event_id: str
    provider_event_id: str | None = None
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, event_id: str, result: CommitResult) -> "CommitResponse":
        return cls(
            success=result.ok,
            event_id=event_id,
            provider_event_id=result.provider_event_id,
            warnings=list(result.warnings),
        )
