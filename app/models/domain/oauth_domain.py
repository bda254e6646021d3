# models/domain/oauth_domain.py
"""
OAuth Token Domain Models with calendar scope validation.
OAuthToken is the decrypted stored token; ProviderCredential is what the
identity provider hands to the rest of the core.
"""

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field

CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
CALENDAR_READONLY_SCOPE = "https://www.googleapis.com/auth/calendar.readonly"
CALENDAR_EVENTS_SCOPE = "https://www.googleapis.com/auth/calendar.events"
CALENDAR_EVENTS_READONLY_SCOPE = "https://www.googleapis.com/auth/calendar.events.readonly"
CALENDAR_FREEBUSY_SCOPE = "https://www.googleapis.com/auth/calendar.freebusy"

# Read-only view, event read and free/busy query
REQUIRED_CALENDAR_SCOPES: tuple[str, ...] = (
    CALENDAR_READONLY_SCOPE,
    CALENDAR_EVENTS_READONLY_SCOPE,
    CALENDAR_FREEBUSY_SCOPE,
)

# Broader scopes grant the narrower ones listed here
IMPLIED_SCOPES: dict[str, frozenset[str]] = {
    CALENDAR_SCOPE: frozenset(
        {
            CALENDAR_READONLY_SCOPE,
            CALENDAR_EVENTS_SCOPE,
            CALENDAR_EVENTS_READONLY_SCOPE,
            CALENDAR_FREEBUSY_SCOPE,
        }
    ),
    CALENDAR_READONLY_SCOPE: frozenset({CALENDAR_EVENTS_READONLY_SCOPE, CALENDAR_FREEBUSY_SCOPE}),
    CALENDAR_EVENTS_SCOPE: frozenset({CALENDAR_EVENTS_READONLY_SCOPE}),
}


class ScopeProfile(StrEnum):
    """Named scope sets the identity provider is asked for."""

    CALENDAR_READ = "calendar_read"
    CALENDAR_WRITE = "calendar_write"

    def required_scopes(self) -> tuple[str, ...]:
        if self is ScopeProfile.CALENDAR_WRITE:
            return (CALENDAR_EVENTS_SCOPE,)
        return REQUIRED_CALENDAR_SCOPES


def expand_scopes(scopes: list[str] | tuple[str, ...] | set[str]) -> set[str]:
    """Return the granted scopes plus everything they imply."""
    granted = set(scopes)
    for scope in list(granted):
        granted |= IMPLIED_SCOPES.get(scope, frozenset())
    return granted


class OAuthToken(BaseModel):
    """Domain model for stored OAuth tokens (decrypted)."""

    user_id: str
    provider: Literal["google"] = "google"
    email: str | None = None
    access_token: str  # decrypted
    refresh_token: str | None = None  # decrypted
    scope: str
    expires_at: datetime | None = None
    updated_at: datetime

    def is_expired(self) -> bool:
        """Check if access token is expired."""
        if not self.expires_at:
            return False
        return datetime.now(UTC) >= self.expires_at

    def needs_refresh(self, buffer_minutes: int = 5) -> bool:
        """Check if token should be refreshed soon."""
        if not self.expires_at:
            return False
        buffer_time = datetime.now(UTC) + timedelta(minutes=buffer_minutes)
        return buffer_time >= self.expires_at

    def get_scopes(self) -> list[str]:
        return self.scope.split() if self.scope else []

    def get_calendar_scopes(self) -> list[str]:
        """Get list of Calendar-specific scopes."""
        return [scope for scope in self.get_scopes() if "calendar" in scope]

    def has_calendar_access(self) -> bool:
        return len(self.get_calendar_scopes()) > 0

    def to_credential(self) -> "ProviderCredential":
        return ProviderCredential(
            user_id=self.user_id,
            access_token=self.access_token,
            scopes=self.get_scopes(),
            expires_at=self.expires_at,
        )


class ProviderCredential(BaseModel):
    """A usable access token for one user plus the scopes it was granted."""

    user_id: str
    access_token: str
    scopes: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None

    def missing_scopes(self, required: tuple[str, ...] | list[str]) -> list[str]:
        granted = expand_scopes(self.scopes)
        return [scope for scope in required if scope not in granted]

    def has_scopes(self, required: tuple[str, ...] | list[str]) -> bool:
        return not self.missing_scopes(required)

    def seconds_until_expiry(self, now: datetime | None = None) -> float | None:
        if not self.expires_at:
            return None
        now = now or datetime.now(UTC)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return (expires_at - now).total_seconds()

    def __repr__(self) -> str:
        # Keep tokens out of logs and tracebacks
        return (
            f"ProviderCredential(user_id={self.user_id!r}, scopes={len(self.scopes)}, "
            f"expires_at={self.expires_at!r})"
        )
