"""
Availability resolver: who is invited, when is everyone free, which slots to offer.

Flow: participants -> token stage (fail closed) -> concurrent free/busy fetch
(gateway failure = participant busy for the whole window) -> common free time
-> policy-filtered candidates -> ranked top N.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.oauth_domain import ProviderCredential, ScopeProfile
from app.models.domain.scheduling_domain import Event, Participant, ParticipantStatus, TimeSlot
from app.models.domain.scheduling_results import (
    GatewayErrorKind,
    GatewayResult,
    ParticipantFailure,
    RankedSlot,
    ResolutionError,
    ResolutionErrorKind,
    ResolutionResult,
    TokenOutcome,
)
from app.repositories.event_repository import EventStore
from app.services.calendar.google_client import CalendarGateway
from app.services.credentials.token_resolution import ProgressCallback, TokenResolutionStage
from app.services.scheduling.intervals import common_free
from app.services.scheduling.policy import AvailabilityPolicy, BusinessHoursPolicy

logger = get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


async def collect_participants(
    store: EventStore, event: Event
) -> tuple[list[Participant], list[str]]:
    """
    Owner plus every non-declined invitee whose contact resolved to a user.

    The owner is always first. Invitees without a connected account are
    returned separately so they can be reported instead of silently dropped.

    Returns:
        (participants, skipped contact ids)
    """
    owner_email = await store.get_user_email(event.owner_id)
    participants = [
        Participant(
            participant_id=event.owner_id,
            user_id=event.owner_id,
            email=owner_email or "",
            is_owner=True,
        )
    ]
    seen_users = {event.owner_id}
    skipped: list[str] = []

    for link, contact in await store.list_invitees(event.id):
        if link.status == ParticipantStatus.DECLINED:
            continue
        if contact is None or not contact.is_resolvable:
            skipped.append(link.contact_id)
            continue
        if contact.contact_user_id in seen_users:
            continue
        seen_users.add(contact.contact_user_id)
        participants.append(
            Participant(
                participant_id=contact.id,
                user_id=contact.contact_user_id,
                email=contact.email,
            )
        )

    if skipped:
        logger.info(
            "Skipping invitees without a connected account",
            event_id=event.id,
            skipped=skipped,
        )
    return participants, skipped


class AvailabilityResolver:
    """
    Computes ranked common slots for an event's participants.

    Resolution never writes to the event store. Cancelling the awaiting task
    cancels every outstanding gateway call.
    """

    def __init__(
        self,
        store: EventStore,
        token_stage: TokenResolutionStage,
        gateway: CalendarGateway,
        policy_factory: Callable[[str], AvailabilityPolicy] = BusinessHoursPolicy.from_settings,
        granularity_minutes: int | None = None,
        max_slots: int | None = None,
        one_slot_per_day: bool | None = None,
    ):
        self.store = store
        self.token_stage = token_stage
        self.gateway = gateway
        self.policy_factory = policy_factory
        self.granularity = timedelta(
            minutes=granularity_minutes or settings.SLOT_GRANULARITY_MINUTES
        )
        self.max_slots = max_slots or settings.MAX_RANKED_SLOTS
        self.one_slot_per_day = (
            settings.ONE_SLOT_PER_DAY if one_slot_per_day is None else one_slot_per_day
        )

    async def resolve(
        self,
        event_id: str,
        window: TimeSlot,
        duration_minutes: int | None = None,
        *,
        requester_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ResolutionResult:
        """
        Find the top ranked slots in which every participant is free.

        Args:
            event_id: Event to schedule
            window: Search range
            duration_minutes: Meeting length; defaults to the event's duration
            requester_id: When given, must be the event owner
            on_progress: Called with each participant's token outcome as it lands

        Returns:
            ResolutionResult with ranked slots, or an error of kind
            EVENT_NOT_FOUND, FORBIDDEN, INVALID_REQUEST,
            PARTICIPANT_UNAVAILABLE or NO_COMMON_SLOT
        """
        event = await self.store.get_event(event_id)
        if event is None:
            return self._failed(ResolutionErrorKind.EVENT_NOT_FOUND, f"Event {event_id} not found")
        if requester_id is not None and requester_id != event.owner_id:
            return self._failed(
                ResolutionErrorKind.FORBIDDEN, "Only the event owner can check availability"
            )

        if duration_minutes is None:
            duration_minutes = event.duration_minutes
        duration = timedelta(minutes=duration_minutes)
        if duration <= timedelta(0) or duration > window.duration:
            return self._failed(
                ResolutionErrorKind.INVALID_REQUEST,
                "Duration must be positive and fit inside the search window",
            )

        participants, skipped = await collect_participants(self.store, event)

        outcomes = await self.token_stage.resolve_all(
            participants, ScopeProfile.CALENDAR_READ, on_progress=on_progress
        )
        failures = [outcome.failure for outcome in outcomes if not outcome.success]
        if failures:
            return self._failed(
                ResolutionErrorKind.PARTICIPANT_UNAVAILABLE,
                f"{len(failures)} participant(s) could not share their calendar",
                failures=failures,
                skipped=skipped,
                outcomes=outcomes,
            )

        busy_lists, degraded = await self._fetch_busy(participants, outcomes, window)

        policy = self.policy_factory(event.timezone)
        free = common_free(window, busy_lists)
        ranked = self.rank(self.candidates(free, duration, policy), policy)

        participant_ids = [participant.participant_id for participant in participants]
        if not ranked:
            result = self._failed(
                ResolutionErrorKind.NO_COMMON_SLOT,
                "No common time found in the requested window",
                skipped=skipped,
                outcomes=outcomes,
            )
            result.participants = participant_ids
            result.degraded = degraded
            return result

        logger.info(
            "Availability resolved",
            event_id=event_id,
            participants=len(participants),
            slots=len(ranked),
            degraded=len(degraded),
            skipped=len(skipped),
        )
        return ResolutionResult(
            slots=ranked,
            participants=participant_ids,
            degraded=degraded,
            skipped=skipped,
            token_outcomes=outcomes,
        )

    async def _fetch_busy(
        self,
        participants: list[Participant],
        outcomes: list[TokenOutcome],
        window: TimeSlot,
    ) -> tuple[list[list[TimeSlot]], list[ParticipantFailure]]:
        credentials: list[ProviderCredential] = [outcome.credential for outcome in outcomes]
        results = await asyncio.gather(
            *(self.gateway.get_busy_periods(credential, window) for credential in credentials),
            return_exceptions=True,
        )

        busy_lists: list[list[TimeSlot]] = []
        degraded: list[ParticipantFailure] = []
        for participant, result in zip(participants, results, strict=True):
            if isinstance(result, GatewayResult) and result.ok:
                busy_lists.append(result.value)
                continue

            if isinstance(result, GatewayResult):
                kind, message = str(result.error.kind), result.error.message
                if result.error.is_credential_error:
                    self.token_stage.invalidate(participant.user_id)
            else:
                kind, message = str(GatewayErrorKind.PROVIDER_UNAVAILABLE), str(result)

            # Unknown calendar state counts as busy for the whole window
            busy_lists.append([window])
            degraded.append(
                ParticipantFailure(
                    participant_id=participant.participant_id,
                    kind=kind,
                    message=message,
                    email=participant.email,
                )
            )
            logger.warning(
                "Free/busy unavailable; treating participant as busy",
                participant_id=participant.participant_id,
                kind=kind,
                error=message,
            )
        return busy_lists, degraded

    def candidates(
        self, free: list[TimeSlot], duration: timedelta, policy: AvailabilityPolicy
    ) -> list[TimeSlot]:
        """Grid-aligned slots of the given duration lying inside one free interval."""
        slots = []
        for interval in free:
            start = self._align(interval.start)
            while start + duration <= interval.end:
                slot = TimeSlot(start, start + duration)
                if policy.is_candidate(slot):
                    slots.append(slot)
                start += self.granularity
        return slots

    def _align(self, moment: datetime) -> datetime:
        """Round up to the next multiple of the granularity (UTC epoch grid)."""
        remainder = (moment - EPOCH) % self.granularity
        if not remainder:
            return moment
        return moment + (self.granularity - remainder)

    def rank(self, slots: list[TimeSlot], policy: AvailabilityPolicy) -> list[RankedSlot]:
        """
        Best score first, earliest first on ties; optionally one slot per local day.

        Slots reaching this point already passed policy.is_candidate. With
        BusinessHoursPolicy every such slot scores the same, so the order is
        chronological; score only separates slots under a policy that accepts
        slots it does not fully prefer.
        """
        scored = sorted(((policy.score(slot), slot) for slot in slots), key=lambda s: (-s[0], s[1]))

        chosen: list[tuple[int, TimeSlot]] = []
        days: set[str] = set()
        for score, slot in scored:
            if self.one_slot_per_day:
                day = policy.local_day(slot)
                if day in days:
                    continue
                days.add(day)
            chosen.append((score, slot))
            if len(chosen) >= self.max_slots:
                break

        return [
            RankedSlot(slot=slot, score=score, rank=index)
            for index, (score, slot) in enumerate(chosen, start=1)
        ]

    def _failed(
        self,
        kind: ResolutionErrorKind,
        message: str,
        failures: list[ParticipantFailure] | None = None,
        skipped: list[str] | None = None,
        outcomes: list[TokenOutcome] | None = None,
    ) -> ResolutionResult:
        error = ResolutionError(kind=kind, message=message, failures=failures or [])
        logger.warning(
            "Availability resolution failed",
            kind=str(kind),
            error=message,
            failed_participants=[failure.participant_id for failure in error.failures],
        )
        return ResolutionResult(
            error=error,
            skipped=skipped or [],
            token_outcomes=outcomes or [],
        )
