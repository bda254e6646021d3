"""
Availability policies decide which candidate slots are offered and how they rank.

The resolver only depends on the AvailabilityPolicy protocol, so a working-hours
aware or per-participant timezone policy can be swapped in without touching it.
"""

from datetime import time
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.scheduling_domain import TimeSlot

logger = get_logger(__name__)

WEEKDAY_SCORE = 2
BUSINESS_HOURS_SCORE = 1


class AvailabilityPolicy(Protocol):
    timezone: ZoneInfo

    def is_candidate(self, slot: TimeSlot) -> bool:
        """Whether the slot may be offered at all."""
        ...

    def score(self, slot: TimeSlot) -> int:
        """Higher is better. Ties are broken by start time by the resolver."""
        ...

    def local_day(self, slot: TimeSlot) -> str:
        ...


def load_timezone(name: str | None) -> ZoneInfo:
    """Resolve an IANA timezone name, falling back to the configured default."""
    candidate = name or settings.DEFAULT_TIMEZONE
    try:
        return ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone, falling back", timezone=candidate)
        return ZoneInfo(settings.DEFAULT_TIMEZONE)


class BusinessHoursPolicy:
    """
    Weekdays only, between day_start and day_end local time.

    A slot qualifies when it starts and ends on the same local day, on an
    allowed weekday, and lies entirely within business hours.
    """

    def __init__(
        self,
        timezone: str | ZoneInfo | None = None,
        day_start: time | None = None,
        day_end: time | None = None,
        weekdays: frozenset[int] | None = None,
    ):
        self.timezone = timezone if isinstance(timezone, ZoneInfo) else load_timezone(timezone)
        self.day_start = day_start or time(settings.BUSINESS_DAY_START_HOUR)
        self.day_end = day_end or time(settings.BUSINESS_DAY_END_HOUR)
        self.weekdays = weekdays if weekdays is not None else frozenset(settings.BUSINESS_WEEKDAYS)

        if self.day_end <= self.day_start:
            raise ValueError("Business day must end after it starts")

    @classmethod
    def from_settings(cls, timezone: str | None = None) -> "BusinessHoursPolicy":
        return cls(timezone=timezone)

    def _is_weekday(self, slot: TimeSlot) -> bool:
        return slot.start.astimezone(self.timezone).weekday() in self.weekdays

    def _is_business_hours(self, slot: TimeSlot) -> bool:
        local_start = slot.start.astimezone(self.timezone)
        local_end = slot.end.astimezone(self.timezone)
        if local_start.date() != local_end.date():
            # Crosses local midnight
            return False
        return self.day_start <= local_start.time() and local_end.time() <= self.day_end

    def is_candidate(self, slot: TimeSlot) -> bool:
        return self._is_weekday(slot) and self._is_business_hours(slot)

    def score(self, slot: TimeSlot) -> int:
        score = 0
        if self._is_weekday(slot):
            score += WEEKDAY_SCORE
        if self._is_business_hours(slot):
            score += BUSINESS_HOURS_SCORE
        return score

    def local_day(self, slot: TimeSlot) -> str:
        return slot.start.astimezone(self.timezone).date().isoformat()
