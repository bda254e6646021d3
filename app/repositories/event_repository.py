"""
Persistence for events, their participant links and the contacts behind them.

The resolver and commit service depend on the EventStore protocol; the
Postgres implementation below is the production one.
"""

from typing import Protocol

from app.db.helpers import DatabaseError, execute_query, execute_transaction, fetch_all, fetch_one
from app.infrastructure.observability.logging import get_logger
from app.models.domain.scheduling_domain import (
    Contact,
    ContactStatus,
    Event,
    EventParticipant,
    EventStatus,
    ParticipantStatus,
    TimeSlot,
    parse_duration_minutes,
)

logger = get_logger(__name__)

Invitee = tuple[EventParticipant, Contact | None]


class EventStore(Protocol):
    async def get_event(self, event_id: str) -> Event | None: ...

    async def list_invitees(self, event_id: str) -> list[Invitee]:
        """Participant links with their contact row (None if the contact is gone)."""
        ...

    async def get_user_email(self, user_id: str) -> str | None: ...

    async def save_event(self, event: Event) -> None:
        """Persist status, confirmation fields and details. Rejects invariant violations."""
        ...

    async def delete_event(self, event_id: str) -> None:
        """Hard delete the event and its participant links."""
        ...


class EventRepositoryError(DatabaseError):
    """More specific exception for event repository failures."""


class PostgresEventStore:
    """EventStore backed by the events, event_participants, contacts and users tables."""

    EVENT_SELECT_COLUMNS = """
        id, owner_id, title, description, location, duration_minutes, status,
        timezone, selected_start, selected_end, provider_event_id, created_at, updated_at
    """

    @staticmethod
    def _row_to_event(row: dict | None) -> Event | None:
        if not row:
            return None

        selected_slot = None
        if row.get("selected_start") and row.get("selected_end"):
            selected_slot = TimeSlot(row["selected_start"], row["selected_end"])

        return Event(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            title=row["title"],
            description=row.get("description") or "",
            location=row.get("location") or "",
            duration_minutes=parse_duration_minutes(row["duration_minutes"]),
            status=EventStatus(row["status"]),
            timezone=row.get("timezone") or "UTC",
            selected_slot=selected_slot,
            provider_event_id=row.get("provider_event_id"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def get_event(self, event_id: str) -> Event | None:
        query = f"SELECT {self.EVENT_SELECT_COLUMNS} FROM events WHERE id = %s"
        row = await fetch_one(query, (event_id,))
        return self._row_to_event(row)

    async def list_invitees(self, event_id: str) -> list[Invitee]:
        query = """
            SELECT
                ep.id AS participant_id, ep.event_id, ep.contact_id,
                ep.status AS participant_status, ep.timezone, ep.updated_at,
                c.id AS contact_row_id, c.owner_id, c.email,
                c.status AS contact_status, c.contact_user_id, c.full_name
            FROM event_participants ep
            LEFT JOIN contacts c ON c.id = ep.contact_id
            WHERE ep.event_id = %s
            ORDER BY ep.id
        """
        rows = await fetch_all(query, (event_id,))

        invitees: list[Invitee] = []
        for row in rows:
            participant = EventParticipant(
                id=str(row["participant_id"]),
                event_id=str(row["event_id"]),
                contact_id=str(row["contact_id"]),
                status=ParticipantStatus(row["participant_status"]),
                timezone=row.get("timezone"),
                updated_at=row["updated_at"],
            )
            contact = None
            if row.get("contact_row_id"):
                contact = Contact(
                    id=str(row["contact_row_id"]),
                    owner_id=str(row["owner_id"]),
                    email=row["email"],
                    status=ContactStatus(row["contact_status"]),
                    contact_user_id=str(row["contact_user_id"])
                    if row.get("contact_user_id")
                    else None,
                    full_name=row.get("full_name") or "",
                )
            invitees.append((participant, contact))
        return invitees

    async def get_user_email(self, user_id: str) -> str | None:
        row = await fetch_one("SELECT email FROM users WHERE id = %s", (user_id,))
        return row["email"] if row else None

    async def save_event(self, event: Event) -> None:
        event.check_invariants()

        query = """
            UPDATE events
            SET title = %s,
                description = %s,
                location = %s,
                status = %s,
                selected_start = %s,
                selected_end = %s,
                provider_event_id = %s,
                updated_at = NOW()
            WHERE id = %s
        """
        slot = event.selected_slot
        affected = await execute_query(
            query,
            (
                event.title,
                event.description,
                event.location,
                str(event.status),
                slot.start if slot else None,
                slot.end if slot else None,
                event.provider_event_id,
                event.id,
            ),
        )
        if affected == 0:
            raise EventRepositoryError(
                f"Event {event.id} not found", operation="save_event", recoverable=False
            )

        logger.info("Event saved", event_id=event.id, status=str(event.status))

    async def delete_event(self, event_id: str) -> None:
        await execute_transaction(
            [
                ("DELETE FROM event_participants WHERE event_id = %s", (event_id,)),
                ("DELETE FROM events WHERE id = %s", (event_id,)),
            ]
        )
        logger.info("Event deleted", event_id=event_id)
