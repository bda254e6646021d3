"""
Route tests: availability checks and event commits through the FastAPI app,
with the store, identity provider and gateway replaced by in-memory fakes.
"""

import asyncio
import uuid

import httpx
import pytest
from fastapi.testclient import TestClient

from app.dependencies import get_check_store, get_commit_service, get_resolver
from app.main import app
from app.models.domain.oauth_domain import ScopeProfile
from app.models.domain.scheduling_results import CredentialError, CredentialErrorKind
from app.services.credentials.token_resolution import TokenResolutionStage
from app.services.scheduling.check_store import AvailabilityCheckStore
from app.services.scheduling.commit_service import SlotCommitService
from app.services.scheduling.resolver import AvailabilityResolver
from tests.fakes import (
    OWNER_ID,
    FakeEventStore,
    FakeGateway,
    FakeIdentityProvider,
    FakeRedis,
    gateway_failure,
    make_event,
)

WEEK = {"start": "2024-06-03T00:00:00Z", "end": "2024-06-08T00:00:00Z"}


@pytest.fixture
def world(apply_auth_override):
    store = FakeEventStore()
    store.add_event(make_event())
    identity = FakeIdentityProvider()
    identity.connect(OWNER_ID)
    identity.connect("bob")
    store.invite("event-1", "bob", "bob@example.com")
    gateway = FakeGateway()
    checks = AvailabilityCheckStore(FakeRedis())
    stage = TokenResolutionStage(identity)

    apply_auth_override(app)
    app.dependency_overrides[get_resolver] = lambda: AvailabilityResolver(store, stage, gateway)
    app.dependency_overrides[get_commit_service] = lambda: SlotCommitService(
        store, stage, gateway, retry_delay=0
    )
    app.dependency_overrides[get_check_store] = lambda: checks

    yield store, identity, gateway
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


def test_availability_returns_ranked_slots_and_is_pollable(world, client):
    response = client.post("/events/event-1/availability", json={**WEEK, "duration_minutes": 30})

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert len(data["slots"]) == 3
    assert data["slots"][0]["rank"] == 1
    assert data["token_outcomes"] == {OWNER_ID: "resolved", "contact-bob": "resolved"}

    polled = client.get(f"/availability-checks/{data['check_id']}")
    assert polled.status_code == 200
    assert polled.json()["slots"] == data["slots"]


def test_availability_accepts_legacy_duration_label(world, client):
    response = client.post(
        "/events/event-1/availability", json={**WEEK, "duration_minutes": "1 hour"}
    )

    assert response.status_code == 200
    slot = response.json()["slots"][0]
    assert slot["start"].startswith("2024-06-03T09:00:00")
    assert slot["end"].startswith("2024-06-03T10:00:00")


def test_participant_without_calendar_is_conflict(world, client):
    _, identity, _ = world
    identity.errors["bob"] = CredentialError(
        "Calendar not connected", kind=CredentialErrorKind.UNAUTHORIZED
    )

    response = client.post("/events/event-1/availability", json=WEEK)

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["reason"] == "participant_unavailable"
    assert detail["participant_errors"][0]["participant_id"] == "contact-bob"
    assert detail["slots"] == []


def test_no_common_slot_is_a_completed_answer(world, client):
    _, _, gateway = world
    gateway.busy_failures["bob"] = gateway_failure()

    response = client.post("/events/event-1/availability", json=WEEK)

    assert response.status_code == 200
    data = response.json()
    assert data["reason"] == "no_common_slot"
    assert data["slots"] == []
    assert data["degraded_participants"][0]["participant_id"] == "contact-bob"


def test_invalid_window_is_rejected(world, client):
    response = client.post(
        "/events/event-1/availability",
        json={"start": "2024-06-04T00:00:00Z", "end": "2024-06-03T00:00:00Z"},
    )

    assert response.status_code == 422


def test_unknown_event_and_check(world, client):
    assert client.post("/events/nope/availability", json=WEEK).status_code == 404
    assert client.get("/availability-checks/unknown").status_code == 404


def test_confirm_and_delete_event(world, client):
    store, _, gateway = world

    confirmed = client.post(
        "/events/event-1/confirm",
        json={"start": "2024-06-03T14:00:00Z", "end": "2024-06-03T14:30:00Z"},
    )
    assert confirmed.status_code == 200
    assert confirmed.json() == {
        "success": True,
        "event_id": "event-1",
        "provider_event_id": "gcal-1",
        "warnings": [],
    }
    assert store.events["event-1"].provider_event_id == "gcal-1"

    deleted = client.delete("/events/event-1")
    assert deleted.status_code == 200
    assert "event-1" not in store.events
    assert len(gateway.deleted) == 2


def test_confirm_provider_failure_is_bad_gateway(world, client):
    store, _, gateway = world
    gateway.create_failure = gateway_failure()

    response = client.post(
        "/events/event-1/confirm",
        json={"start": "2024-06-03T14:00:00Z", "end": "2024-06-03T14:30:00Z"},
    )

    assert response.status_code == 502
    assert response.json()["detail"]["reason"] == "provider_failed"
    assert store.events["event-1"].status == "pending"


def test_sync_pending_event_is_conflict(world, client):
    response = client.post("/events/event-1/sync")

    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "not_confirmed"


def test_archive_event(world, client):
    store, _, _ = world

    response = client.delete("/events/event-1", params={"archive": "true"})

    assert response.status_code == 200
    assert store.events["event-1"].status == "archived"


def test_requests_require_authentication(client):
    response = client.post("/events/event-1/availability", json=WEEK)

    assert response.status_code in (401, 403)


class GatedIdentityProvider(FakeIdentityProvider):
    """Holds a user's credential lookup until their gate is opened."""

    def __init__(self):
        super().__init__()
        self.gates: dict[str, asyncio.Event] = {}

    async def get_access_token(self, user_id, scope_profile=ScopeProfile.CALENDAR_READ):
        if user_id in self.gates:
            await self.gates[user_id].wait()
        return await super().get_access_token(user_id, scope_profile)


def test_client_chosen_check_id_is_used_and_echoed(world, client):
    check_id = str(uuid.uuid4())

    response = client.post("/events/event-1/availability", json={**WEEK, "check_id": check_id})

    assert response.status_code == 200
    assert response.headers["X-Check-ID"] == check_id
    assert response.json()["check_id"] == check_id
    assert client.get(f"/availability-checks/{check_id}").json()["status"] == "completed"


def test_reused_check_id_is_conflict(world, client):
    check_id = str(uuid.uuid4())
    client.post("/events/event-1/availability", json={**WEEK, "check_id": check_id})

    response = client.post("/events/event-1/availability", json={**WEEK, "check_id": check_id})

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_check_can_be_polled_while_resolving(apply_auth_override):
    store = FakeEventStore()
    store.add_event(make_event())
    store.invite("event-1", "bob", "bob@example.com")
    identity = GatedIdentityProvider()
    identity.connect(OWNER_ID)
    identity.connect("bob")
    identity.gates["bob"] = asyncio.Event()
    checks = AvailabilityCheckStore(FakeRedis())
    stage = TokenResolutionStage(identity)

    apply_auth_override(app)
    app.dependency_overrides[get_resolver] = lambda: AvailabilityResolver(
        store, stage, FakeGateway()
    )
    app.dependency_overrides[get_check_store] = lambda: checks
    check_id = str(uuid.uuid4())

    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            pending = asyncio.create_task(
                http.post("/events/event-1/availability", json={**WEEK, "check_id": check_id})
            )
            polled = None
            for _ in range(200):
                await asyncio.sleep(0)
                polled = await http.get(f"/availability-checks/{check_id}")
                if polled.status_code == 200 and polled.json()["token_outcomes"]:
                    break

            assert polled.json()["status"] == "resolving"
            assert polled.json()["token_outcomes"] == {OWNER_ID: "resolved"}
            assert polled.json()["slots"] == []

            identity.gates["bob"].set()
            response = await pending
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json()["check_id"] == check_id
    assert response.json()["status"] == "completed"
    assert response.json()["token_outcomes"] == {OWNER_ID: "resolved", "contact-bob": "resolved"}
