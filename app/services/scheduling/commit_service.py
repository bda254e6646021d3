"""
Slot selection and commit.

Writes the chosen slot through to the owner's external calendar first and
only then records the event as confirmed. Deleting is best-effort on the
provider side and always completes on ours.
"""

import asyncio

from app.config import settings
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.oauth_domain import ProviderCredential, ScopeProfile
from app.models.domain.scheduling_domain import (
    Event,
    EventDraft,
    EventStatus,
    Participant,
    ParticipantStatus,
    ProviderEvent,
    TimeSlot,
)
from app.models.domain.scheduling_results import (
    CommitError,
    CommitErrorKind,
    CommitResult,
    GatewayErrorKind,
    GatewayResult,
)
from app.repositories.event_repository import EventStore
from app.services.calendar.google_client import CalendarGateway
from app.services.credentials.token_resolution import TokenResolutionStage
from app.services.scheduling.resolver import collect_participants

logger = get_logger(__name__)

INACTIVE_STATUSES = {EventStatus.CANCELLED, EventStatus.ARCHIVED}


class SlotCommitService:
    """Confirms, re-syncs and cancels events against the external calendar."""

    def __init__(
        self,
        store: EventStore,
        token_stage: TokenResolutionStage,
        gateway: CalendarGateway,
        persist_retries: int | None = None,
        retry_delay: float = 0.1,
    ):
        self.store = store
        self.token_stage = token_stage
        self.gateway = gateway
        self.persist_retries = persist_retries or settings.COMMIT_PERSIST_RETRIES
        self.retry_delay = retry_delay

    async def confirm(
        self, event_id: str, slot: TimeSlot, *, requester_id: str | None = None
    ) -> CommitResult:
        """
        Book the chosen slot.

        Creates the external event (or updates it when the event was already
        confirmed), then persists status, slot and provider id. If the
        provider call fails nothing is persisted and the event keeps its status.
        """
        event, error = await self._load_owned(event_id, requester_id)
        if error:
            return error
        if event.status in INACTIVE_STATUSES:
            return self._failed(
                CommitErrorKind.INVALID_SLOT, f"Event is {event.status} and cannot be confirmed"
            )
        if slot.duration_minutes() != event.duration_minutes:
            return self._failed(
                CommitErrorKind.INVALID_SLOT,
                f"Slot is {slot.duration_minutes()} minutes, event needs {event.duration_minutes}",
            )

        participants, _ = await collect_participants(self.store, event)
        credential, error = await self._owner_credential(participants[0])
        if error:
            return error

        write = await self._write_through(event, slot, participants, credential)
        if not write.ok:
            return self._failed(
                CommitErrorKind.PROVIDER_FAILED,
                f"Calendar rejected the event: {write.error.message}",
                provider_error=write.error,
            )

        provider_event_id = write.value.id
        previous = (event.status, event.selected_slot, event.provider_event_id)
        event.mark_confirmed(slot, provider_event_id)
        if not await self._persist(event):
            event.status, event.selected_slot, event.provider_event_id = previous
            return self._failed(
                CommitErrorKind.PERSISTENCE_FAILED,
                "Calendar event was written but the confirmation could not be saved",
                provider_event_id=provider_event_id,
            )

        logger.info(
            "Event confirmed",
            event_id=event_id,
            provider_event_id=provider_event_id,
            start=slot.start.isoformat(),
            attendees=len(participants) - 1,
        )
        return CommitResult(provider_event_id=provider_event_id)

    async def sync_event_details(
        self, event_id: str, *, requester_id: str | None = None
    ) -> CommitResult:
        """Push edited title, description, location or attendees to the external event."""
        event, error = await self._load_owned(event_id, requester_id)
        if error:
            return error
        if not event.is_confirmed:
            return self._failed(
                CommitErrorKind.NOT_CONFIRMED, "Only confirmed events have a calendar entry"
            )

        participants, _ = await collect_participants(self.store, event)
        credential, error = await self._owner_credential(participants[0])
        if error:
            return error

        write = await self._write_through(event, event.selected_slot, participants, credential)
        if not write.ok:
            return self._failed(
                CommitErrorKind.PROVIDER_FAILED,
                f"Calendar rejected the update: {write.error.message}",
                provider_error=write.error,
            )

        if write.value.id != event.provider_event_id:
            # The external event was recreated; keep the record pointing at it
            event.mark_confirmed(event.selected_slot, write.value.id)
            if not await self._persist(event):
                return self._failed(
                    CommitErrorKind.PERSISTENCE_FAILED,
                    "Calendar event was recreated but its id could not be saved",
                    provider_event_id=write.value.id,
                )

        logger.info("Event details synced", event_id=event_id, provider_event_id=write.value.id)
        return CommitResult(provider_event_id=write.value.id)

    async def cancel_or_delete(
        self, event_id: str, *, requester_id: str | None = None, hard_delete: bool = True
    ) -> CommitResult:
        """
        Remove the event from calendars, then delete or archive our record.

        External deletion covers the owner's copy and each accepted invitee's
        copy. Each failure there becomes a warning; the internal change always
        goes ahead.
        """
        event, error = await self._load_owned(event_id, requester_id)
        if error:
            return error

        warnings: list[str] = []
        provider_event_id = event.provider_event_id
        if provider_event_id:
            warnings = await self._delete_external(event, provider_event_id)

        if hard_delete:
            persisted = await self._with_retry("delete_event", self.store.delete_event, event.id)
        else:
            event.mark_archived()
            persisted = await self._persist(event)

        if not persisted:
            result = self._failed(
                CommitErrorKind.PERSISTENCE_FAILED, "Event could not be removed from the store"
            )
            result.warnings = warnings
            return result

        logger.info(
            "Event cancelled",
            event_id=event_id,
            hard_delete=hard_delete,
            provider_event_id=provider_event_id,
            warnings=len(warnings),
        )
        return CommitResult(provider_event_id=provider_event_id, warnings=warnings)

    async def _delete_external(self, event: Event, provider_event_id: str) -> list[str]:
        targets = [
            Participant(
                participant_id=event.owner_id, user_id=event.owner_id, email="", is_owner=True
            )
        ]
        for link, contact in await self.store.list_invitees(event.id):
            if link.status == ParticipantStatus.ACCEPTED and contact and contact.is_resolvable:
                targets.append(
                    Participant(
                        participant_id=contact.id,
                        user_id=contact.contact_user_id,
                        email=contact.email,
                    )
                )

        results = await asyncio.gather(
            *(self._delete_copy(target, provider_event_id) for target in targets)
        )
        warnings = [warning for warning in results if warning]
        for warning in warnings:
            logger.warning(
                "External calendar cleanup incomplete", event_id=event.id, warning=warning
            )
        return warnings

    async def _delete_copy(self, participant: Participant, provider_event_id: str) -> str | None:
        outcome = await self.token_stage.resolve_one(participant, ScopeProfile.CALENDAR_WRITE)
        if not outcome.success:
            return (
                f"Could not remove the event from {participant.email or participant.user_id}'s "
                f"calendar: {outcome.failure.message}"
            )

        result = await self.gateway.delete_event(outcome.credential, provider_event_id)
        self._forget_rejected(outcome.credential, result)
        if not result.ok:
            return (
                f"Could not remove the event from {participant.email or participant.user_id}'s "
                f"calendar: {result.error.message}"
            )
        return None

    async def _load_owned(
        self, event_id: str, requester_id: str | None
    ) -> tuple[Event | None, CommitResult | None]:
        event = await self.store.get_event(event_id)
        if event is None:
            return None, self._failed(
                CommitErrorKind.EVENT_NOT_FOUND, f"Event {event_id} not found"
            )
        if requester_id is not None and requester_id != event.owner_id:
            return None, self._failed(
                CommitErrorKind.FORBIDDEN, "Only the event owner can change its calendar entry"
            )
        return event, None

    async def _owner_credential(
        self, owner: Participant
    ) -> tuple[ProviderCredential | None, CommitResult | None]:
        outcome = await self.token_stage.resolve_one(owner, ScopeProfile.CALENDAR_WRITE)
        if outcome.success:
            return outcome.credential, None

        result = self._failed(
            CommitErrorKind.CREDENTIAL_UNAVAILABLE,
            f"Organizer calendar unavailable: {outcome.failure.message}",
        )
        result.error.failures = [outcome.failure]
        return None, result

    async def _write_through(
        self,
        event: Event,
        slot: TimeSlot,
        participants: list[Participant],
        credential: ProviderCredential,
    ) -> GatewayResult[ProviderEvent]:
        draft = EventDraft(
            internal_event_id=event.id,
            title=event.title,
            slot=slot,
            attendees=[p.email for p in participants if not p.is_owner and p.email],
            description=event.description,
            location=event.location,
            timezone=event.timezone,
        )

        result = None
        if event.provider_event_id:
            result = await self.gateway.update_event(credential, event.provider_event_id, draft)
            if not result.ok and result.error.kind == GatewayErrorKind.NOT_FOUND:
                logger.warning(
                    "External event missing; creating a new one",
                    event_id=event.id,
                    provider_event_id=event.provider_event_id,
                )
                result = None

        if result is None:
            result = await self.gateway.create_event(credential, draft)
        self._forget_rejected(credential, result)
        return result

    def _forget_rejected(self, credential: ProviderCredential, result: GatewayResult) -> None:
        if not result.ok and result.error.is_credential_error:
            self.token_stage.invalidate(credential.user_id)

    async def _persist(self, event: Event) -> bool:
        return await self._with_retry("save_event", self.store.save_event, event)

    async def _with_retry(self, operation: str, func, *args) -> bool:
        for attempt in range(1, self.persist_retries + 1):
            try:
                await func(*args)
                return True
            except DatabaseError as e:
                logger.error(
                    "Event store write failed",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=self.persist_retries,
                    error=str(e),
                )
                if attempt < self.persist_retries:
                    await asyncio.sleep(self.retry_delay * (2 ** (attempt - 1)))
        return False

    def _failed(
        self,
        kind: CommitErrorKind,
        message: str,
        provider_error=None,
        provider_event_id: str | None = None,
    ) -> CommitResult:
        logger.warning("Commit failed", kind=str(kind), error=message)
        return CommitResult(
            provider_event_id=provider_event_id,
            error=CommitError(
                kind=kind,
                message=message,
                provider_error=provider_error,
                provider_event_id=provider_event_id,
            ),
        )
