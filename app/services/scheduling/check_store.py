"""
Short-lived storage for availability checks, so polling clients can re-read
progress and results by check id.
"""

import json
from typing import Protocol

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.scheduling_results import AvailabilityCheck

logger = get_logger(__name__)

CHECK_KEY_PREFIX = "availability_check:"


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool: ...

    async def delete(self, key: str) -> bool: ...


class AvailabilityCheckStore:
    """AvailabilityCheck aggregates serialized as JSON under availability_check:{id}."""

    def __init__(self, redis_client: KeyValueStore, ttl_seconds: int | None = None):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds or settings.AVAILABILITY_CHECK_TTL_SECONDS

    @staticmethod
    def _key(check_id: str) -> str:
        return f"{CHECK_KEY_PREFIX}{check_id}"

    async def save(self, check: AvailabilityCheck) -> bool:
        stored = await self.redis.set_with_ttl(
            self._key(check.check_id), json.dumps(check.to_dict()), self.ttl_seconds
        )
        if not stored:
            logger.warning("Availability check not stored", check_id=check.check_id)
        return stored

    async def get(self, check_id: str) -> AvailabilityCheck | None:
        raw = await self.redis.get(self._key(check_id))
        if not raw:
            return None
        try:
            return AvailabilityCheck.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Stored availability check is corrupt", check_id=check_id, error=str(e))
            await self.redis.delete(self._key(check_id))
            return None

    async def delete(self, check_id: str) -> bool:
        return await self.redis.delete(self._key(check_id))
