"""
Process-wide wiring of the scheduling services.

Each component is constructed once on first use and handed to routes through
FastAPI dependencies, so tests can swap any of them via dependency_overrides.
"""

from functools import lru_cache

from fastapi import Depends

from app.repositories.event_repository import EventStore, PostgresEventStore
from app.services.calendar.google_client import CalendarGateway, GoogleCalendarGateway
from app.services.credentials.credential_cache import CredentialCache
from app.services.credentials.token_resolution import TokenResolutionStage
from app.services.credentials.token_service import StoredTokenIdentityProvider
from app.services.infrastructure.redis_client import fast_redis
from app.services.scheduling.check_store import AvailabilityCheckStore
from app.services.scheduling.commit_service import SlotCommitService
from app.services.scheduling.resolver import AvailabilityResolver


@lru_cache
def get_calendar_gateway() -> GoogleCalendarGateway:
    return GoogleCalendarGateway()


@lru_cache
def get_credential_cache() -> CredentialCache:
    return CredentialCache(StoredTokenIdentityProvider())


@lru_cache
def get_event_store() -> PostgresEventStore:
    return PostgresEventStore()


@lru_cache
def get_check_store() -> AvailabilityCheckStore:
    return AvailabilityCheckStore(fast_redis)


def get_token_stage(
    credentials: CredentialCache = Depends(get_credential_cache),
) -> TokenResolutionStage:
    return TokenResolutionStage(credentials)


def get_resolver(
    store: EventStore = Depends(get_event_store),
    token_stage: TokenResolutionStage = Depends(get_token_stage),
    gateway: CalendarGateway = Depends(get_calendar_gateway),
) -> AvailabilityResolver:
    return AvailabilityResolver(store, token_stage, gateway)


def get_commit_service(
    store: EventStore = Depends(get_event_store),
    token_stage: TokenResolutionStage = Depends(get_token_stage),
    gateway: CalendarGateway = Depends(get_calendar_gateway),
) -> SlotCommitService:
    return SlotCommitService(store, token_stage, gateway)


async def close_services() -> None:
    """Release what the cached components hold open."""
    if get_calendar_gateway.cache_info().currsize:
        await get_calendar_gateway().close()
        get_calendar_gateway.cache_clear()
    if get_credential_cache.cache_info().currsize:
        get_credential_cache().clear()
