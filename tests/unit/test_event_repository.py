from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest

from app.models.domain.scheduling_domain import (
    ContactStatus,
    EventInvariantError,
    EventStatus,
    ParticipantStatus,
)
from app.repositories.event_repository import EventRepositoryError, PostgresEventStore
from tests.fakes import make_event, slot

NOW = datetime(2024, 6, 1, tzinfo=UTC)


def event_row(**overrides) -> dict:
    row = {
        "id": "event-1",
        "owner_id": "owner-1",
        "title": "Planning",
        "description": None,
        "location": "zoom",
        "duration_minutes": 30,
        "status": "pending",
        "timezone": None,
        "selected_start": None,
        "selected_end": None,
        "provider_event_id": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_get_event_maps_row():
    with patch(
        "app.repositories.event_repository.fetch_one",
        AsyncMock(return_value=event_row(duration_minutes="1 hour")),
    ):
        event = await PostgresEventStore().get_event("event-1")

    assert event.duration_minutes == 60
    assert event.status == EventStatus.PENDING
    assert event.timezone == "UTC"
    assert event.location_kind == "zoom"
    assert event.selected_slot is None


@pytest.mark.asyncio
async def test_confirmed_row_carries_selected_slot():
    row = event_row(
        status="confirmed",
        selected_start=slot(0, 10, 11).start,
        selected_end=slot(0, 10, 11).end,
        provider_event_id="gcal-1",
    )
    with patch("app.repositories.event_repository.fetch_one", AsyncMock(return_value=row)):
        event = await PostgresEventStore().get_event("event-1")

    assert event.is_confirmed
    assert event.selected_slot == slot(0, 10, 11)


@pytest.mark.asyncio
async def test_list_invitees_keeps_links_without_contact():
    rows = [
        {
            "participant_id": "p1",
            "event_id": "event-1",
            "contact_id": "c1",
            "participant_status": "accepted",
            "timezone": None,
            "updated_at": NOW,
            "contact_row_id": "c1",
            "owner_id": "owner-1",
            "email": "bob@example.com",
            "contact_status": "connected",
            "contact_user_id": "bob",
            "full_name": "Bob",
        },
        {
            "participant_id": "p2",
            "event_id": "event-1",
            "contact_id": "c-gone",
            "participant_status": "pending",
            "timezone": None,
            "updated_at": NOW,
            "contact_row_id": None,
        },
    ]
    with patch("app.repositories.event_repository.fetch_all", AsyncMock(return_value=rows)):
        invitees = await PostgresEventStore().list_invitees("event-1")

    (link, contact), (orphan, missing) = invitees
    assert link.status == ParticipantStatus.ACCEPTED
    assert contact.status == ContactStatus.CONNECTED
    assert contact.is_resolvable
    assert orphan.contact_id == "c-gone"
    assert missing is None


@pytest.mark.asyncio
async def test_save_event_rejects_half_confirmed_event():
    event = make_event(status=EventStatus.CONFIRMED)
    execute = AsyncMock(return_value=1)

    with patch("app.repositories.event_repository.execute_query", execute):
        with pytest.raises(EventInvariantError):
            await PostgresEventStore().save_event(event)

    execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_save_event_writes_confirmation_fields():
    event = make_event()
    event.mark_confirmed(slot(0, 10, 10.5), "gcal-1")
    execute = AsyncMock(return_value=1)

    with patch("app.repositories.event_repository.execute_query", execute):
        await PostgresEventStore().save_event(event)

    params = execute.await_args.args[1]
    assert params[3] == "confirmed"
    assert params[4] == slot(0, 10, 10.5).start
    assert params[6] == "gcal-1"


@pytest.mark.asyncio
async def test_save_missing_event_raises():
    with patch("app.repositories.event_repository.execute_query", AsyncMock(return_value=0)):
        with pytest.raises(EventRepositoryError):
            await PostgresEventStore().save_event(make_event())
