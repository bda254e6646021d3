"""
Tests for availability resolution: participants, fail-closed credentials,
assume-busy degradation, candidate generation and ranking.
"""

import asyncio
from zoneinfo import ZoneInfo

import pytest

from app.models.domain.scheduling_domain import ContactStatus, ParticipantStatus, TimeSlot
from app.models.domain.scheduling_results import (
    CredentialError,
    CredentialErrorKind,
    GatewayErrorKind,
    ResolutionErrorKind,
)
from app.services.credentials.credential_cache import CredentialCache
from app.services.credentials.token_resolution import TokenResolutionStage
from app.services.scheduling.intervals import overlaps_any
from app.services.scheduling.policy import BusinessHoursPolicy
from app.services.scheduling.resolver import AvailabilityResolver, collect_participants
from tests.fakes import OWNER_ID, FakeGateway, at, gateway_failure, make_event, slot

WEEK = TimeSlot(at(0, 0), at(5, 0))


@pytest.fixture
def resolver(event_store, token_stage, gateway):
    return AvailabilityResolver(
        event_store,
        token_stage,
        gateway,
        granularity_minutes=15,
        max_slots=3,
        one_slot_per_day=True,
    )


@pytest.fixture
def event(event_store):
    return event_store.add_event(make_event())


def invite_connected(event_store, identity, name: str, event_id: str = "event-1"):
    identity.connect(name)
    return event_store.invite(event_id, name, f"{name}@example.com")


@pytest.mark.asyncio
async def test_first_slot_follows_morning_busy_block(
    resolver, event, event_store, identity, gateway
):
    invite_connected(event_store, identity, "bob")
    gateway.busy["bob"] = [slot(day, 9, 12) for day in range(5)]

    result = await resolver.resolve(event.id, WEEK, 30)

    assert result.ok
    assert result.slots[0].slot == slot(0, 12, 12.5)
    assert result.slots[0].rank == 1
    assert [r.slot.start.day for r in result.slots] == [3, 4, 5]
    assert result.participants == [OWNER_ID, "contact-bob"]


@pytest.mark.asyncio
async def test_expired_token_fails_closed(resolver, event, event_store, identity, gateway):
    invite_connected(event_store, identity, "bob")
    identity.errors["bob"] = CredentialError(
        "Calendar token expired - reconnect required", kind=CredentialErrorKind.UNAUTHORIZED
    )

    result = await resolver.resolve(event.id, WEEK, 30)

    assert result.error.kind == ResolutionErrorKind.PARTICIPANT_UNAVAILABLE
    assert result.slots == []
    assert [f.participant_id for f in result.error.failures] == ["contact-bob"]
    assert result.error.failures[0].email == "bob@example.com"
    assert gateway.busy_calls == []


@pytest.mark.asyncio
async def test_busy_ending_at_candidate_start_is_accepted(resolver, event, gateway):
    gateway.busy[OWNER_ID] = [slot(0, 9, 10)]

    result = await resolver.resolve(event.id, slot(0, 9, 10.5), 30)

    assert [r.slot for r in result.slots] == [slot(0, 10, 10.5)]


@pytest.mark.asyncio
async def test_common_time_only_after_hours_is_no_common_slot(
    resolver, event, event_store, identity, gateway
):
    invite_connected(event_store, identity, "bob")
    invite_connected(event_store, identity, "carol")
    gateway.busy[OWNER_ID] = [slot(0, 9, 13)]
    gateway.busy["bob"] = [slot(0, 12, 15.5)]
    gateway.busy["carol"] = [slot(0, 15, 17)]

    result = await resolver.resolve(event.id, slot(0, 9, 19), 30)

    assert result.error.kind == ResolutionErrorKind.NO_COMMON_SLOT
    assert result.slots == []
    assert len(result.participants) == 3


@pytest.mark.asyncio
async def test_returned_slots_never_overlap_anyones_busy_time(
    resolver, event, event_store, identity, gateway
):
    invite_connected(event_store, identity, "bob")
    gateway.busy[OWNER_ID] = [slot(0, 9, 9.75), slot(1, 13, 15), slot(2, 9, 17)]
    gateway.busy["bob"] = [slot(0, 10, 11.25), slot(1, 9, 12)]

    result = await resolver.resolve(event.id, WEEK, 45)

    all_busy = gateway.busy[OWNER_ID] + gateway.busy["bob"]
    assert result.slots
    for ranked in result.slots:
        assert not overlaps_any(ranked.slot, all_busy)
        assert ranked.slot.duration_minutes() == 45
        assert ranked.slot.start.minute % 15 == 0


@pytest.mark.asyncio
async def test_resolution_is_deterministic(resolver, event, event_store, identity, gateway):
    invite_connected(event_store, identity, "bob")
    gateway.busy["bob"] = [slot(0, 10, 11), slot(1, 9, 16)]

    first = await resolver.resolve(event.id, WEEK, 30)
    second = await resolver.resolve(event.id, WEEK, 30)

    assert [(r.slot, r.score, r.rank) for r in first.slots] == [
        (r.slot, r.score, r.rank) for r in second.slots
    ]


@pytest.mark.asyncio
async def test_gateway_failure_treats_participant_as_busy(
    resolver, event, event_store, identity, gateway
):
    invite_connected(event_store, identity, "bob")
    gateway.busy_failures["bob"] = gateway_failure(GatewayErrorKind.PROVIDER_UNAVAILABLE, "503")

    result = await resolver.resolve(event.id, WEEK, 30)

    assert result.error.kind == ResolutionErrorKind.NO_COMMON_SLOT
    assert [d.participant_id for d in result.degraded] == ["contact-bob"]
    assert result.degraded[0].kind == "provider_unavailable"


@pytest.mark.asyncio
async def test_gateway_exception_is_contained(resolver, event, event_store, identity, gateway):
    invite_connected(event_store, identity, "bob")
    gateway.busy_exceptions["bob"] = RuntimeError("socket closed")

    result = await resolver.resolve(event.id, WEEK, 30)

    assert result.error.kind == ResolutionErrorKind.NO_COMMON_SLOT
    assert result.degraded[0].message == "socket closed"


@pytest.mark.asyncio
async def test_owner_only_event_uses_owner_calendar(resolver, event, gateway):
    gateway.busy[OWNER_ID] = [slot(0, 9, 17)]

    result = await resolver.resolve(event.id, WEEK, 30)

    assert result.slots[0].slot == slot(1, 9, 9.5)
    assert gateway.busy_calls == [OWNER_ID]


@pytest.mark.asyncio
async def test_unresolvable_and_declined_invitees(resolver, event, event_store, identity):
    invite_connected(event_store, identity, "bob")
    event_store.invite(event.id, None, "dana@example.com", contact_status=ContactStatus.PENDING)
    identity.connect("erin")
    event_store.invite(event.id, "erin", "erin@example.com", status=ParticipantStatus.DECLINED)

    result = await resolver.resolve(event.id, WEEK, 30)

    assert result.participants == [OWNER_ID, "contact-bob"]
    assert result.skipped == ["contact-dana"]


@pytest.mark.asyncio
async def test_duplicate_contacts_for_same_user_are_consulted_once(event_store, event, identity):
    identity.connect("bob")
    event_store.invite(event.id, "bob", "bob@example.com", contact_id="c1")
    event_store.invite(event.id, "bob", "bob@work.example.com", contact_id="c2")
    event_store.invite(event.id, OWNER_ID, "owner@example.com", contact_id="c3")

    participants, skipped = await collect_participants(event_store, event)

    assert [p.user_id for p in participants] == [OWNER_ID, "bob"]
    assert participants[0].is_owner
    assert skipped == []


@pytest.mark.asyncio
async def test_duration_defaults_to_event_duration(resolver, event_store):
    event_store.add_event(make_event(id="event-2", duration_minutes=60))

    result = await resolver.resolve("event-2", WEEK)

    assert result.slots[0].slot == slot(0, 9, 10)


@pytest.mark.asyncio
@pytest.mark.parametrize("duration", [0, -30, 60 * 24 * 6])
async def test_invalid_duration(resolver, event, duration):
    result = await resolver.resolve(event.id, WEEK, duration)

    assert result.error.kind == ResolutionErrorKind.INVALID_REQUEST


@pytest.mark.asyncio
async def test_missing_event_and_non_owner(resolver, event):
    missing = await resolver.resolve("nope", WEEK, 30)
    forbidden = await resolver.resolve(event.id, WEEK, 30, requester_id="someone-else")

    assert missing.error.kind == ResolutionErrorKind.EVENT_NOT_FOUND
    assert forbidden.error.kind == ResolutionErrorKind.FORBIDDEN


@pytest.mark.asyncio
async def test_progress_reports_each_participant(resolver, event, event_store, identity):
    invite_connected(event_store, identity, "bob")
    seen = []

    await resolver.resolve(event.id, WEEK, 30, on_progress=seen.append)

    assert sorted(o.participant_id for o in seen) == ["contact-bob", OWNER_ID]


@pytest.mark.asyncio
async def test_resolution_does_not_write_events(resolver, event, event_store):
    await resolver.resolve(event.id, WEEK, 30)

    assert event_store.saves == 0


def test_rank_prefers_score_then_start(event_store, token_stage, gateway):
    resolver = AvailabilityResolver(
        event_store, token_stage, gateway, max_slots=5, one_slot_per_day=False
    )
    policy = BusinessHoursPolicy("UTC")
    saturday = slot(5, 10, 10.5)
    tuesday = slot(1, 9, 9.5)
    monday = slot(0, 16, 16.5)

    ranked = resolver.rank([saturday, tuesday, monday], policy)

    assert [r.slot for r in ranked] == [monday, tuesday, saturday]
    assert [r.rank for r in ranked] == [1, 2, 3]


def test_candidates_align_to_granularity(event_store, token_stage, gateway):
    resolver = AvailabilityResolver(event_store, token_stage, gateway, granularity_minutes=15)
    policy = BusinessHoursPolicy("UTC")
    free = [TimeSlot(at(0, 9, 7), at(0, 10, 0))]

    candidates = resolver.candidates(free, slot(0, 0, 0.5).duration, policy)

    assert [c.start for c in candidates] == [at(0, 9, 15), at(0, 9, 30)]


class BlockingGateway(FakeGateway):
    """Free/busy calls that never answer until cancelled."""

    def __init__(self):
        super().__init__()
        self.waiting: list[str] = []
        self.cancelled: list[str] = []

    async def get_busy_periods(self, credential, window, calendar_id="primary"):
        self.waiting.append(credential.user_id)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled.append(credential.user_id)
            raise


class PreferAfternoon:
    """Accepts every slot but prefers those starting after noon."""

    timezone = ZoneInfo("UTC")

    def is_candidate(self, slot):
        return True

    def score(self, slot):
        return 1 if slot.start.hour >= 12 else 0

    def local_day(self, slot):
        return slot.start.date().isoformat()


@pytest.mark.asyncio
async def test_rejected_credential_is_fetched_again_on_next_check(event, identity, event_store):
    gateway = FakeGateway()
    resolver = AvailabilityResolver(
        event_store, TokenResolutionStage(CredentialCache(identity)), gateway
    )
    gateway.busy_failures[OWNER_ID] = gateway_failure(
        GatewayErrorKind.UNAUTHORIZED, "Invalid Credentials"
    )

    first = await resolver.resolve(event.id, WEEK, 30)
    assert first.degraded[0].kind == "unauthorized"

    # The owner reconnects their calendar
    del gateway.busy_failures[OWNER_ID]
    identity.connect(OWNER_ID)
    second = await resolver.resolve(event.id, WEEK, 30)

    assert second.ok
    assert second.degraded == []
    assert [user_id for user_id, _ in identity.calls] == [OWNER_ID, OWNER_ID]


@pytest.mark.asyncio
async def test_transient_gateway_failure_keeps_cached_credential(event, identity, event_store):
    gateway = FakeGateway()
    resolver = AvailabilityResolver(
        event_store, TokenResolutionStage(CredentialCache(identity)), gateway
    )
    gateway.busy_failures[OWNER_ID] = gateway_failure(GatewayErrorKind.PROVIDER_UNAVAILABLE)

    await resolver.resolve(event.id, WEEK, 30)
    await resolver.resolve(event.id, WEEK, 30)

    assert len(identity.calls) == 1


@pytest.mark.asyncio
async def test_cancelling_resolution_cancels_gateway_calls(
    event, event_store, identity, token_stage
):
    invite_connected(event_store, identity, "bob")
    gateway = BlockingGateway()
    resolver = AvailabilityResolver(event_store, token_stage, gateway)

    task = asyncio.create_task(resolver.resolve(event.id, WEEK, 30))
    for _ in range(100):
        if len(gateway.waiting) == 2:
            break
        await asyncio.sleep(0)
    assert sorted(gateway.waiting) == ["bob", OWNER_ID]

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert sorted(gateway.cancelled) == ["bob", OWNER_ID]
    assert event_store.saves == 0


@pytest.mark.asyncio
async def test_policy_score_orders_offered_slots(event, event_store, token_stage, gateway):
    resolver = AvailabilityResolver(
        event_store,
        token_stage,
        gateway,
        policy_factory=lambda timezone: PreferAfternoon(),
        max_slots=2,
        one_slot_per_day=False,
    )

    result = await resolver.resolve(event.id, slot(0, 11, 13), 30)

    assert [r.slot for r in result.slots] == [slot(0, 12, 12.5), slot(0, 12.25, 12.75)]
    assert [r.score for r in result.slots] == [1, 1]
