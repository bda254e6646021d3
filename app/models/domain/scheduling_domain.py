# app/models/domain/scheduling_domain.py
"""
Scheduling Domain Models
Events, contacts, participant links and the half-open TimeSlot they are scheduled into.
Used by the resolver, the commit service and the event repository.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_datetime(value: str | datetime) -> datetime:
    """Parse an ISO timestamp (accepts a trailing Z) into an aware UTC datetime."""
    if isinstance(value, datetime):
        return _as_utc(value)
    return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


@dataclass(frozen=True, slots=True, order=True)
class TimeSlot:
    """A half-open interval [start, end). Adjacent slots do not overlap."""

    start: datetime
    end: datetime

    def __post_init__(self):
        start = _as_utc(self.start)
        end = _as_utc(self.end)
        if end <= start:
            raise ValueError(f"TimeSlot end must be after start ({start} >= {end})")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @classmethod
    def from_iso(cls, start: str | datetime, end: str | datetime) -> "TimeSlot":
        return cls(parse_datetime(start), parse_datetime(end))

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def duration_minutes(self) -> int:
        return int(self.duration.total_seconds() // 60)

    def overlaps(self, other: "TimeSlot") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeSlot") -> bool:
        return self.start <= other.start and other.end <= self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


class EventStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class ContactStatus(StrEnum):
    PENDING = "pending"
    CONNECTED = "connected"
    DECLINED = "declined"


class ParticipantStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


# Location is free text unless it names one of these conferencing/physical kinds
LOCATION_KINDS = frozenset({"meet", "zoom", "skype", "physical"})

# Durations as the event form stored them before minutes became an integer
LEGACY_DURATIONS = {
    "15": 15,
    "30": 30,
    "45": 45,
    "1 hour": 60,
    "2 hours": 120,
    "3 hours": 180,
}


def parse_duration_minutes(value: int | str) -> int:
    """
    Normalize an event duration to whole minutes.

    Accepts a positive int, a numeric string, or one of the legacy labels
    ("1 hour", "2 hours", ...).

    Raises:
        ValueError: If the value is not a recognised positive duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int):
        minutes = value
    else:
        text = str(value).strip().lower()
        if text in LEGACY_DURATIONS:
            minutes = LEGACY_DURATIONS[text]
        elif text.isdigit():
            minutes = int(text)
        else:
            raise ValueError(f"Unknown duration format: {value!r}")

    if minutes <= 0:
        raise ValueError(f"Duration must be positive, got {minutes}")
    return minutes


class EventInvariantError(ValueError):
    """Raised when an event's confirmation fields disagree with its status."""


@dataclass(slots=True)
class Event:
    """A proposed meeting owned by one user."""

    id: str
    owner_id: str
    title: str
    duration_minutes: int
    description: str = ""
    location: str = ""
    status: EventStatus = EventStatus.PENDING
    timezone: str = "UTC"
    selected_slot: TimeSlot | None = None
    provider_event_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def location_kind(self) -> str:
        """One of LOCATION_KINDS, or "custom" for free text."""
        normalized = self.location.strip().lower()
        return normalized if normalized in LOCATION_KINDS else "custom"

    @property
    def is_confirmed(self) -> bool:
        return self.status == EventStatus.CONFIRMED

    def check_invariants(self) -> None:
        """selected_slot and provider_event_id are present iff the event is confirmed."""
        has_confirmation = self.selected_slot is not None and self.provider_event_id is not None
        has_any = self.selected_slot is not None or self.provider_event_id is not None

        if self.is_confirmed and not has_confirmation:
            raise EventInvariantError(
                f"Confirmed event {self.id} is missing its selected slot or provider event id"
            )
        if not self.is_confirmed and has_any:
            raise EventInvariantError(
                f"Event {self.id} in status {self.status} must not carry confirmation fields"
            )

    def mark_confirmed(self, slot: TimeSlot, provider_event_id: str) -> None:
        self.status = EventStatus.CONFIRMED
        self.selected_slot = slot
        self.provider_event_id = provider_event_id
        self.updated_at = datetime.now(UTC)

    def mark_archived(self) -> None:
        self.status = EventStatus.ARCHIVED
        self.selected_slot = None
        self.provider_event_id = None
        self.updated_at = datetime.now(UTC)


@dataclass(slots=True)
class Contact:
    """
    Directed "I invited X" relationship. Acceptance creates a reciprocal row
    owned by the other side; the two rows are updated independently.
    """

    id: str
    owner_id: str
    email: str
    status: ContactStatus = ContactStatus.PENDING
    contact_user_id: str | None = None
    full_name: str = ""

    @property
    def is_resolvable(self) -> bool:
        """True once the other side has a known user id we can fetch credentials for."""
        return self.status == ContactStatus.CONNECTED and bool(self.contact_user_id) and bool(
            self.email
        )


@dataclass(slots=True)
class EventParticipant:
    """Link between an event and an invited contact, with its own response status."""

    id: str
    event_id: str
    contact_id: str
    status: ParticipantStatus = ParticipantStatus.PENDING
    timezone: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class Participant:
    """Resolution-time identity of one person whose calendar is consulted."""

    participant_id: str
    user_id: str
    email: str
    is_owner: bool = False


@dataclass(slots=True)
class EventDraft:
    """Payload for creating or updating the external calendar event."""

    internal_event_id: str
    title: str
    slot: TimeSlot
    attendees: list[str]
    description: str = ""
    location: str = ""
    timezone: str = "UTC"


@dataclass(slots=True)
class ProviderEvent:
    """The subset of the provider's event representation the core keeps."""

    id: str
    html_link: str | None = None
    status: str = "confirmed"
    raw_data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "ProviderEvent":
        event_id = data.get("id")
        if not event_id:
            raise ValueError("Provider event payload has no id")
        return cls(
            id=event_id,
            html_link=data.get("htmlLink"),
            status=data.get("status", "confirmed"),
            raw_data=data,
        )
