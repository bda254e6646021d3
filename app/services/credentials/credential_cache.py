"""
Per-process credential cache with single-flight loading.

Concurrent requests for the same user share one in-flight load instead of
triggering one token refresh each.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.oauth_domain import ProviderCredential, ScopeProfile
from app.services.credentials.token_service import IdentityProvider

logger = get_logger(__name__)

CacheKey = tuple[str, ScopeProfile]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class _CacheEntry:
    credential: ProviderCredential
    expires_at: datetime


class CredentialCache:
    """
    Wraps an IdentityProvider and satisfies the same protocol.

    Entries live for at most ttl_seconds and never beyond the credential's own
    expiry minus expiry_buffer_seconds. Failed loads are not cached.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        ttl_seconds: int | None = None,
        expiry_buffer_seconds: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._provider = provider
        if ttl_seconds is None:
            ttl_seconds = settings.CREDENTIAL_CACHE_TTL_SECONDS
        self.ttl = timedelta(seconds=ttl_seconds)
        self.expiry_buffer = timedelta(
            seconds=expiry_buffer_seconds
            if expiry_buffer_seconds is not None
            else settings.CREDENTIAL_EXPIRY_BUFFER_SECONDS
        )
        self._clock = clock
        self._entries: dict[CacheKey, _CacheEntry] = {}
        self._inflight: dict[CacheKey, asyncio.Task] = {}

    async def get_access_token(
        self, user_id: str, scope_profile: ScopeProfile = ScopeProfile.CALENDAR_READ
    ) -> ProviderCredential:
        key = (user_id, scope_profile)

        entry = self._entries.get(key)
        if entry is not None:
            if entry.expires_at > self._clock():
                return entry.credential
            del self._entries[key]

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._load(key), name=f"credential-load:{user_id}")
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._finish(key, done))
        else:
            logger.debug("Joining in-flight credential load", user_id=user_id)

        # A cancelled waiter must not cancel the load other waiters share
        return await asyncio.shield(task)

    async def _load(self, key: CacheKey) -> ProviderCredential:
        user_id, scope_profile = key
        credential = await self._provider.get_access_token(user_id, scope_profile)

        expires_at = self._entry_expiry(credential)
        if expires_at > self._clock():
            self._entries[key] = _CacheEntry(credential=credential, expires_at=expires_at)
        return credential

    def _finish(self, key: CacheKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(
                "Credential load failed; not cached",
                user_id=key[0],
                error_type=type(task.exception()).__name__,
            )

    def _entry_expiry(self, credential: ProviderCredential) -> datetime:
        now = self._clock()
        expires_at = now + self.ttl
        remaining = credential.seconds_until_expiry(now)
        if remaining is not None:
            expires_at = min(expires_at, now + timedelta(seconds=remaining) - self.expiry_buffer)
        return expires_at

    def invalidate(self, user_id: str) -> None:
        """Drop every cached credential for the user (e.g. after a 401 from the calendar)."""
        for key in [key for key in self._entries if key[0] == user_id]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
