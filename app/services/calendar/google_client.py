"""
Google Calendar gateway for free/busy queries and event write-through.
Normalizes Calendar API responses into TimeSlots and every expected failure
into a GatewayResult, so callers can degrade per participant.
"""

import asyncio
from typing import Any, Protocol

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.oauth_domain import ProviderCredential
from app.models.domain.scheduling_domain import EventDraft, ProviderEvent, TimeSlot
from app.models.domain.scheduling_results import GatewayErrorKind, GatewayResult

logger = get_logger(__name__)

CALENDAR_PRIMARY = "primary"  # User's primary calendar

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 30  # seconds (calendar operations can be slower)
MAX_RETRIES = 3
BACKOFF_FACTOR = 0.5
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# 403 reasons that mean the token lacks a permission rather than being rate limited
SCOPE_ERROR_REASONS = {"insufficientPermissions", "ACCESS_TOKEN_SCOPE_INSUFFICIENT"}

INTERNAL_EVENT_ID_PROPERTY = "internalEventId"


class CalendarGateway(Protocol):
    """What the resolver and commit service need from an external calendar."""

    async def get_busy_periods(
        self, credential: ProviderCredential, window: TimeSlot, calendar_id: str = CALENDAR_PRIMARY
    ) -> GatewayResult[list[TimeSlot]]: ...

    async def create_event(
        self, credential: ProviderCredential, draft: EventDraft, calendar_id: str = CALENDAR_PRIMARY
    ) -> GatewayResult[ProviderEvent]: ...

    async def update_event(
        self,
        credential: ProviderCredential,
        provider_event_id: str,
        draft: EventDraft,
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> GatewayResult[ProviderEvent]: ...

    async def delete_event(
        self,
        credential: ProviderCredential,
        provider_event_id: str,
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> GatewayResult[None]: ...


class GoogleCalendarError(Exception):
    """Raised inside the gateway; converted to a GatewayResult before leaving it."""

    def __init__(
        self,
        message: str,
        kind: GatewayErrorKind = GatewayErrorKind.PROVIDER_UNAVAILABLE,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.response_data = response_data or {}


class GoogleCalendarGateway:
    """
    Per-credential access to a user's Google Calendar.

    Handles free/busy queries and event create/update/delete with retry and
    backoff. Constructed explicitly and closed by its owner.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, base_url: str | None = None):
        self._client = client or self._create_client()
        self._owns_client = client is None
        self.base_url = (base_url or settings.GOOGLE_CALENDAR_API_BASE_URL).rstrip("/")

    def _create_client(self) -> httpx.AsyncClient:
        """Create async HTTP client for Calendar API."""
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_client:
            await self._client.aclose()

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Calendar API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise GoogleCalendarError(
                        f"Calendar API unreachable: {e}",
                        kind=GatewayErrorKind.PROVIDER_UNAVAILABLE,
                    ) from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Calendar API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise GoogleCalendarError("Calendar API retry loop exhausted")

    def _get_auth_headers(self, credential: ProviderCredential) -> dict:
        """Get authorization headers for Calendar API requests."""
        return {
            "Authorization": f"Bearer {credential.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Handle and validate Calendar API response.

        Args:
            response: HTTP response from Calendar API
            operation: Operation name for logging

        Returns:
            dict: Parsed response data

        Raises:
            GoogleCalendarError: If response contains errors
        """
        logger.debug(
            f"Calendar API {operation} response",
            status_code=response.status_code,
            response_size=len(response.content),
        )

        if response.is_success:
            if not response.content:
                return {}
            try:
                data = response.json()
            except ValueError as e:
                logger.error(f"Failed to parse Calendar API {operation} response", error=str(e))
                raise GoogleCalendarError(
                    f"Invalid response format: {e}", kind=GatewayErrorKind.MALFORMED
                ) from e
            if not isinstance(data, dict):
                raise GoogleCalendarError(
                    "Calendar API returned a non-object payload", kind=GatewayErrorKind.MALFORMED
                )
            return data

        try:
            error_data = response.json() if response.content else {}
        except ValueError:
            error_data = {}

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        if not isinstance(error_info, dict):
            error_info = {"message": str(error_info)}
        error_message = error_info.get("message", f"HTTP {response.status_code}")
        reasons = {
            item.get("reason")
            for item in error_info.get("errors", [])
            if isinstance(item, dict) and item.get("reason")
        }
        status_detail = error_info.get("status")
        if status_detail:
            reasons.add(status_detail)
        for detail in error_info.get("details", []):
            if isinstance(detail, dict) and detail.get("reason"):
                reasons.add(detail["reason"])

        kind = self._map_calendar_error(response.status_code, reasons)

        logger.error(
            f"Calendar API {operation} failed",
            status_code=response.status_code,
            error_kind=str(kind),
            reasons=sorted(reasons),
            error_message=error_message,
        )

        raise GoogleCalendarError(
            f"Calendar {operation} failed: {error_message}",
            kind=kind,
            status_code=response.status_code,
            response_data=error_data if isinstance(error_data, dict) else {},
        )

    def _map_calendar_error(self, status_code: int, reasons: set[str]) -> GatewayErrorKind:
        """Map Calendar API status codes and reasons to gateway error kinds."""
        if status_code == 401:
            return GatewayErrorKind.UNAUTHORIZED
        if status_code == 403:
            if reasons & SCOPE_ERROR_REASONS:
                return GatewayErrorKind.INSUFFICIENT_SCOPE
            return GatewayErrorKind.PROVIDER_UNAVAILABLE
        if status_code in (404, 410):
            return GatewayErrorKind.NOT_FOUND
        if status_code == 400:
            return GatewayErrorKind.MALFORMED
        return GatewayErrorKind.PROVIDER_UNAVAILABLE

    def _failure(self, error: GoogleCalendarError) -> GatewayResult:
        return GatewayResult.failure(error.kind, str(error), status_code=error.status_code)

    async def get_busy_periods(
        self,
        credential: ProviderCredential,
        window: TimeSlot,
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> GatewayResult[list[TimeSlot]]:
        """
        Fetch busy periods for one calendar within the window.

        Args:
            credential: Resolved credential of the calendar's owner
            window: Time range to query
            calendar_id: Calendar identifier (an email address or "primary")

        Returns:
            GatewayResult with busy periods clipped to the window
        """
        url = f"{self.base_url}/freeBusy"
        query_data = {
            "timeMin": window.start.isoformat(),
            "timeMax": window.end.isoformat(),
            "items": [{"id": calendar_id}],
        }

        logger.info(
            "Querying free/busy",
            user_id=credential.user_id,
            calendar_id=calendar_id,
            time_min=query_data["timeMin"],
            time_max=query_data["timeMax"],
        )

        try:
            response = await self._request_with_retry(
                "POST", url, headers=self._get_auth_headers(credential), json=query_data
            )
            data = self._handle_api_response(response, "free_busy")
            busy = self._parse_busy_periods(data, calendar_id, window)
        except GoogleCalendarError as e:
            return self._failure(e)

        logger.info(
            "Free/busy query completed",
            user_id=credential.user_id,
            busy_periods_count=len(busy),
        )
        return GatewayResult.success(busy)

    def _parse_busy_periods(
        self, data: dict[str, Any], calendar_id: str, window: TimeSlot
    ) -> list[TimeSlot]:
        calendars = data.get("calendars")
        if not isinstance(calendars, dict):
            raise GoogleCalendarError(
                "Free/busy response has no calendars", kind=GatewayErrorKind.MALFORMED
            )

        calendar = calendars.get(calendar_id)
        if calendar is None and len(calendars) == 1:
            # "primary" comes back keyed by the account's email address
            calendar = next(iter(calendars.values()))
        if not isinstance(calendar, dict):
            raise GoogleCalendarError(
                f"Free/busy response is missing calendar {calendar_id}",
                kind=GatewayErrorKind.MALFORMED,
            )

        errors = calendar.get("errors") or []
        if errors:
            reasons = [e.get("reason", "unknown") for e in errors if isinstance(e, dict)]
            raise GoogleCalendarError(
                f"Free/busy unavailable for calendar: {', '.join(reasons) or 'unknown'}",
                kind=GatewayErrorKind.PROVIDER_UNAVAILABLE,
            )

        busy_data = calendar.get("busy", [])
        if not isinstance(busy_data, list):
            raise GoogleCalendarError(
                f"Free/busy periods are not a list: {busy_data!r}",
                kind=GatewayErrorKind.MALFORMED,
            )

        busy = []
        for period in busy_data:
            try:
                slot = TimeSlot.from_iso(period["start"], period["end"])
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise GoogleCalendarError(
                    f"Unparsable busy period {period!r}: {e}", kind=GatewayErrorKind.MALFORMED
                ) from e
            if slot.overlaps(window):
                busy.append(
                    TimeSlot(max(slot.start, window.start), min(slot.end, window.end))
                )
        return busy

    def _build_event_body(self, draft: EventDraft) -> dict[str, Any]:
        return {
            "summary": draft.title,
            "description": draft.description,
            "location": draft.location,
            "start": {"dateTime": draft.slot.start.isoformat(), "timeZone": draft.timezone},
            "end": {"dateTime": draft.slot.end.isoformat(), "timeZone": draft.timezone},
            "attendees": [{"email": email} for email in draft.attendees],
            "extendedProperties": {
                "private": {INTERNAL_EVENT_ID_PROPERTY: draft.internal_event_id}
            },
        }

    def _parse_event(self, data: dict[str, Any]) -> ProviderEvent:
        try:
            return ProviderEvent.from_api(data)
        except ValueError as e:
            raise GoogleCalendarError(str(e), kind=GatewayErrorKind.MALFORMED) from e

    async def create_event(
        self,
        credential: ProviderCredential,
        draft: EventDraft,
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> GatewayResult[ProviderEvent]:
        """Create the external event and invite every attendee."""
        url = f"{self.base_url}/calendars/{calendar_id}/events"

        logger.info(
            "Creating calendar event",
            internal_event_id=draft.internal_event_id,
            start_time=draft.slot.start.isoformat(),
            attendee_count=len(draft.attendees),
        )

        try:
            response = await self._request_with_retry(
                "POST",
                url,
                headers=self._get_auth_headers(credential),
                params={"sendUpdates": "all"},
                json=self._build_event_body(draft),
            )
            event = self._parse_event(self._handle_api_response(response, "create_event"))
        except GoogleCalendarError as e:
            return self._failure(e)

        logger.info(
            "Event created successfully",
            internal_event_id=draft.internal_event_id,
            provider_event_id=event.id,
        )
        return GatewayResult.success(event)

    async def update_event(
        self,
        credential: ProviderCredential,
        provider_event_id: str,
        draft: EventDraft,
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> GatewayResult[ProviderEvent]:
        """Patch the existing external event in place (time, details and attendees)."""
        url = f"{self.base_url}/calendars/{calendar_id}/events/{provider_event_id}"

        logger.info(
            "Updating calendar event",
            internal_event_id=draft.internal_event_id,
            provider_event_id=provider_event_id,
        )

        try:
            response = await self._request_with_retry(
                "PATCH",
                url,
                headers=self._get_auth_headers(credential),
                params={"sendUpdates": "all"},
                json=self._build_event_body(draft),
            )
            event = self._parse_event(self._handle_api_response(response, "update_event"))
        except GoogleCalendarError as e:
            return self._failure(e)

        logger.info("Event updated successfully", provider_event_id=provider_event_id)
        return GatewayResult.success(event)

    async def delete_event(
        self,
        credential: ProviderCredential,
        provider_event_id: str,
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> GatewayResult[None]:
        """Delete the external event. An event that is already gone counts as deleted."""
        url = f"{self.base_url}/calendars/{calendar_id}/events/{provider_event_id}"

        logger.info(
            "Deleting calendar event",
            user_id=credential.user_id,
            provider_event_id=provider_event_id,
        )

        try:
            response = await self._request_with_retry(
                "DELETE",
                url,
                headers=self._get_auth_headers(credential),
                params={"sendUpdates": "all"},
            )
            if response.status_code in (404, 410):
                logger.info("Event already deleted", provider_event_id=provider_event_id)
                return GatewayResult.success(None)
            self._handle_api_response(response, "delete_event")
        except GoogleCalendarError as e:
            return self._failure(e)

        logger.info("Event deleted successfully", provider_event_id=provider_event_id)
        return GatewayResult.success(None)
