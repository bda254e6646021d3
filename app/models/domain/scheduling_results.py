# app/models/domain/scheduling_results.py
"""
Typed outcomes for the availability core.

The gateway, token stage, resolver and commit service report expected failures
as values rather than exceptions so a single participant's problem can be
handled per participant instead of aborting the whole flow.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Generic, TypeVar

from app.models.domain.oauth_domain import ProviderCredential
from app.models.domain.scheduling_domain import TimeSlot, parse_datetime

T = TypeVar("T")


# =================================================================
# GATEWAY
# =================================================================


class GatewayErrorKind(StrEnum):
    UNAUTHORIZED = "unauthorized"
    INSUFFICIENT_SCOPE = "insufficient_scope"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    MALFORMED = "malformed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True, slots=True)
class GatewayError:
    kind: GatewayErrorKind
    message: str
    status_code: int | None = None

    @property
    def is_credential_error(self) -> bool:
        return self.kind in (GatewayErrorKind.UNAUTHORIZED, GatewayErrorKind.INSUFFICIENT_SCOPE)


@dataclass(slots=True)
class GatewayResult(Generic[T]):
    value: T | None = None
    error: GatewayError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "GatewayResult[T]":
        return cls(value=value)

    @classmethod
    def failure(
        cls, kind: GatewayErrorKind, message: str, status_code: int | None = None
    ) -> "GatewayResult[T]":
        return cls(error=GatewayError(kind=kind, message=message, status_code=status_code))


# =================================================================
# CREDENTIALS
# =================================================================


class CredentialErrorKind(StrEnum):
    UNAUTHORIZED = "unauthorized"
    INSUFFICIENT_SCOPE = "insufficient_scope"
    # Token store or token endpoint failed transiently; reconnecting will not help
    PROVIDER_UNAVAILABLE = "provider_unavailable"


class CredentialError(Exception):
    """Raised by identity providers when a usable token cannot be produced."""

    def __init__(
        self,
        message: str,
        kind: CredentialErrorKind = CredentialErrorKind.UNAUTHORIZED,
        user_id: str | None = None,
        missing_scopes: list[str] | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.user_id = user_id
        self.missing_scopes = missing_scopes or []


@dataclass(frozen=True, slots=True)
class ParticipantFailure:
    """A per-participant failure the UI can render as targeted guidance."""

    participant_id: str
    kind: str
    message: str
    email: str | None = None
    missing_scopes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "kind": self.kind,
            "message": self.message,
            "email": self.email,
            "missing_scopes": list(self.missing_scopes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParticipantFailure":
        return cls(
            participant_id=data["participant_id"],
            kind=data["kind"],
            message=data.get("message", ""),
            email=data.get("email"),
            missing_scopes=tuple(data.get("missing_scopes") or ()),
        )


@dataclass(slots=True)
class TokenOutcome:
    participant_id: str
    success: bool
    credential: ProviderCredential | None = None
    failure: ParticipantFailure | None = None


# =================================================================
# RESOLUTION
# =================================================================


@dataclass(frozen=True, slots=True)
class RankedSlot:
    slot: TimeSlot
    score: int
    rank: int

    def to_dict(self) -> dict[str, Any]:
        return {**self.slot.to_dict(), "score": self.score, "rank": self.rank}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RankedSlot":
        return cls(
            slot=TimeSlot.from_iso(data["start"], data["end"]),
            score=int(data["score"]),
            rank=int(data["rank"]),
        )


class ResolutionErrorKind(StrEnum):
    PARTICIPANT_UNAVAILABLE = "participant_unavailable"
    NO_COMMON_SLOT = "no_common_slot"
    EVENT_NOT_FOUND = "event_not_found"
    FORBIDDEN = "forbidden"
    INVALID_REQUEST = "invalid_request"
    TIMEOUT = "timeout"


@dataclass(slots=True)
class ResolutionError:
    kind: ResolutionErrorKind
    message: str
    failures: list[ParticipantFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": str(self.kind),
            "message": self.message,
            "failures": [failure.to_dict() for failure in self.failures],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResolutionError":
        return cls(
            kind=ResolutionErrorKind(data["kind"]),
            message=data.get("message", ""),
            failures=[ParticipantFailure.from_dict(item) for item in data.get("failures", [])],
        )


@dataclass(slots=True)
class ResolutionResult:
    slots: list[RankedSlot] = field(default_factory=list)
    participants: list[str] = field(default_factory=list)
    degraded: list[ParticipantFailure] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    token_outcomes: list[TokenOutcome] = field(default_factory=list)
    error: ResolutionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# =================================================================
# COMMIT
# =================================================================


class CommitErrorKind(StrEnum):
    EVENT_NOT_FOUND = "event_not_found"
    FORBIDDEN = "forbidden"
    INVALID_SLOT = "invalid_slot"
    NOT_CONFIRMED = "not_confirmed"
    CREDENTIAL_UNAVAILABLE = "credential_unavailable"
    PROVIDER_FAILED = "provider_failed"
    PERSISTENCE_FAILED = "persistence_failed"


@dataclass(slots=True)
class CommitError:
    kind: CommitErrorKind
    message: str
    provider_error: GatewayError | None = None
    failures: list[ParticipantFailure] = field(default_factory=list)
    provider_event_id: str | None = None


@dataclass(slots=True)
class CommitResult:
    provider_event_id: str | None = None
    warnings: list[str] = field(default_factory=list)
    error: CommitError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# =================================================================
# AVAILABILITY CHECK (request-scoped aggregate)
# =================================================================


class CheckStatus(StrEnum):
    RESOLVING = "resolving"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class AvailabilityCheck:
    check_id: str
    event_id: str
    requester_id: str
    window: TimeSlot
    duration_minutes: int | None
    status: CheckStatus = CheckStatus.RESOLVING
    # participant id -> "resolved" or the credential failure kind
    token_outcomes: dict[str, str] = field(default_factory=dict)
    slots: list[RankedSlot] = field(default_factory=list)
    degraded: list[ParticipantFailure] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    error: ResolutionError | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def record_outcome(self, outcome: TokenOutcome) -> None:
        if outcome.success:
            self.token_outcomes[outcome.participant_id] = "resolved"
        else:
            self.token_outcomes[outcome.participant_id] = (
                outcome.failure.kind if outcome.failure else "failed"
            )

    def apply_result(self, result: ResolutionResult) -> None:
        for outcome in result.token_outcomes:
            self.record_outcome(outcome)
        self.slots = list(result.slots)
        self.degraded = list(result.degraded)
        self.skipped = list(result.skipped)
        self.error = result.error
        # "No common time" is an answer, not a failure of the check
        answered = result.ok or result.error.kind == ResolutionErrorKind.NO_COMMON_SLOT
        self.status = CheckStatus.COMPLETED if answered else CheckStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "check_id": self.check_id,
            "event_id": self.event_id,
            "requester_id": self.requester_id,
            "window": self.window.to_dict(),
            "duration_minutes": self.duration_minutes,
            "status": str(self.status),
            "token_outcomes": dict(self.token_outcomes),
            "slots": [slot.to_dict() for slot in self.slots],
            "degraded": [failure.to_dict() for failure in self.degraded],
            "skipped": list(self.skipped),
            "error": self.error.to_dict() if self.error else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AvailabilityCheck":
        window = data["window"]
        return cls(
            check_id=data["check_id"],
            event_id=data["event_id"],
            requester_id=data["requester_id"],
            window=TimeSlot.from_iso(window["start"], window["end"]),
            duration_minutes=data.get("duration_minutes"),
            status=CheckStatus(data.get("status", CheckStatus.RESOLVING)),
            token_outcomes=dict(data.get("token_outcomes") or {}),
            slots=[RankedSlot.from_dict(item) for item in data.get("slots", [])],
            degraded=[ParticipantFailure.from_dict(item) for item in data.get("degraded", [])],
            skipped=list(data.get("skipped") or []),
            error=ResolutionError.from_dict(data["error"]) if data.get("error") else None,
            created_at=parse_datetime(data["created_at"]),
        )
