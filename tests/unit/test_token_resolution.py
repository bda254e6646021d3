import pytest

from app.models.domain.oauth_domain import (
    CALENDAR_EVENTS_SCOPE,
    CALENDAR_FREEBUSY_SCOPE,
    CALENDAR_READONLY_SCOPE,
    ScopeProfile,
)
from app.models.domain.scheduling_domain import Participant
from app.models.domain.scheduling_results import CredentialError, CredentialErrorKind
from app.services.credentials.credential_cache import CredentialCache
from app.services.credentials.token_resolution import TokenResolutionStage
from tests.fakes import OWNER_ID


def participants(*user_ids: str) -> list[Participant]:
    return [
        Participant(participant_id=f"p-{uid}", user_id=uid, email=f"{uid}@example.com")
        for uid in user_ids
    ]


@pytest.mark.asyncio
async def test_outcomes_follow_input_order(identity, token_stage):
    identity.connect("alice")
    identity.connect("bob")

    outcomes = await token_stage.resolve_all(participants("bob", OWNER_ID, "alice"))

    assert [o.participant_id for o in outcomes] == ["p-bob", f"p-{OWNER_ID}", "p-alice"]
    assert all(o.success for o in outcomes)
    assert outcomes[0].credential.user_id == "bob"


@pytest.mark.asyncio
async def test_one_failure_does_not_affect_others(identity, token_stage):
    identity.connect("alice")
    identity.errors["bob"] = CredentialError("revoked", kind=CredentialErrorKind.UNAUTHORIZED)

    outcomes = await token_stage.resolve_all(participants("alice", "bob"))

    assert outcomes[0].success
    assert not outcomes[1].success
    assert outcomes[1].failure.kind == "unauthorized"
    assert outcomes[1].failure.email == "bob@example.com"


@pytest.mark.asyncio
async def test_unexpected_error_becomes_provider_unavailable(identity, token_stage):
    identity.errors["alice"] = RuntimeError("pool exhausted")

    (outcome,) = await token_stage.resolve_all(participants("alice"))

    assert not outcome.success
    assert outcome.failure.kind == "provider_unavailable"


@pytest.mark.asyncio
async def test_missing_scopes_are_reported(identity, token_stage):
    identity.connect("alice", scopes=[CALENDAR_FREEBUSY_SCOPE])

    (outcome,) = await token_stage.resolve_all(participants("alice"))

    assert outcome.failure.kind == "insufficient_scope"
    assert CALENDAR_READONLY_SCOPE in outcome.failure.missing_scopes
    assert CALENDAR_FREEBUSY_SCOPE not in outcome.failure.missing_scopes


@pytest.mark.asyncio
async def test_write_profile_needs_events_scope(identity, token_stage):
    identity.connect("alice", scopes=[CALENDAR_READONLY_SCOPE])
    (participant,) = participants("alice")

    read = await token_stage.resolve_one(participant, ScopeProfile.CALENDAR_READ)
    write = await token_stage.resolve_one(participant, ScopeProfile.CALENDAR_WRITE)

    assert read.success
    assert not write.success
    assert write.failure.missing_scopes == (CALENDAR_EVENTS_SCOPE,)


@pytest.mark.asyncio
async def test_progress_callback_sync_and_async(identity):
    identity.connect("alice")
    seen_sync, seen_async = [], []

    async def record(outcome):
        seen_async.append(outcome.participant_id)

    stage = TokenResolutionStage(identity)
    await stage.resolve_all(participants("alice", "nobody"), on_progress=seen_sync.append)
    await stage.resolve_all(participants("alice"), on_progress=record)

    assert sorted(o.participant_id for o in seen_sync) == ["p-alice", "p-nobody"]
    assert [o.success for o in sorted(seen_sync, key=lambda o: o.participant_id)] == [
        True,
        False,
    ]
    assert seen_async == ["p-alice"]


@pytest.mark.asyncio
async def test_invalidate_drops_cached_credential(identity):
    stage = TokenResolutionStage(CredentialCache(identity))
    (owner,) = participants(OWNER_ID)

    await stage.resolve_one(owner)
    await stage.resolve_one(owner)
    assert len(identity.calls) == 1

    stage.invalidate(OWNER_ID)
    await stage.resolve_one(owner)

    assert len(identity.calls) == 2


@pytest.mark.asyncio
async def test_invalidate_without_cache_is_noop(identity, token_stage):
    (owner,) = participants(OWNER_ID)

    token_stage.invalidate(OWNER_ID)
    outcome = await token_stage.resolve_one(owner)

    assert outcome.success
