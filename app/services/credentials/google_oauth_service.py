"""
Google OAuth token refresh.
Exchanges a stored refresh token for a fresh access token at Google's token endpoint.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 0.5  # 0.5, 1 seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Errors meaning the grant itself is gone and the user must reconnect
REVOKED_GRANT_ERRORS = {"invalid_grant", "unauthorized_client", "invalid_client"}


class GoogleOAuthError(Exception):
    """Custom exception for Google OAuth-related errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        response_data: dict | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.response_data = response_data or {}
        self.recoverable = recoverable


class TokenResponse:
    """Structured representation of OAuth token response."""

    def __init__(self, data: dict):
        self.access_token = data.get("access_token")
        self.refresh_token = data.get("refresh_token")
        self.token_type = data.get("token_type", "Bearer")
        self.expires_in = data.get("expires_in")
        self.scope = data.get("scope", "")

        if self.expires_in:
            self.expires_at = datetime.now(UTC) + timedelta(seconds=int(self.expires_in))
        else:
            self.expires_at = None

    def is_valid(self) -> bool:
        return bool(self.access_token and self.token_type)

    def get_calendar_scopes(self) -> list[str]:
        return [scope for scope in self.scope.split() if "calendar" in scope]


class GoogleOAuthService:
    """Refreshes Google access tokens with retry and backoff."""

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        token_url: str | None = None,
    ):
        self.client_id = client_id or settings.GOOGLE_CLIENT_ID
        self.client_secret = client_secret or settings.GOOGLE_CLIENT_SECRET
        self.token_url = token_url or settings.GOOGLE_TOKEN_URL

    def _validate_config(self) -> None:
        if not self.client_id:
            raise GoogleOAuthError("GOOGLE_CLIENT_ID not configured", recoverable=False)
        if not self.client_secret:
            raise GoogleOAuthError("GOOGLE_CLIENT_SECRET not configured", recoverable=False)

    async def _post_with_retry(self, url: str, data: dict, operation: str) -> httpx.Response:
        """
        Perform POST request with retry/backoff handling.

        Args:
            url: Target URL
            data: Form data payload
            operation: Operation name for logging context
        """
        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.post(url, data=data, headers=headers)
                except httpx.RequestError as exc:
                    if attempt == MAX_RETRIES:
                        raise
                    wait_time = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.warning(
                        "Google OAuth request error, retrying",
                        operation=operation,
                        attempt=attempt,
                        wait_time=wait_time,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    await asyncio.sleep(wait_time)
                    continue

                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    wait_time = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.warning(
                        "Google OAuth transient status",
                        operation=operation,
                        status_code=response.status_code,
                        attempt=attempt,
                        wait_time=wait_time,
                    )
                    await asyncio.sleep(wait_time)
                    continue

                return response

        raise GoogleOAuthError(f"{operation} failed: retries exhausted")

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """
        Refresh access token using refresh token.

        Args:
            refresh_token: Valid refresh token

        Returns:
            TokenResponse: New access token (the old refresh token is kept
            when Google does not rotate it)

        Raises:
            GoogleOAuthError: If token refresh fails
        """
        self._validate_config()
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        try:
            response = await self._post_with_retry(self.token_url, data, operation="token_refresh")
        except httpx.RequestError as e:
            logger.error(
                "Network error during token refresh",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise GoogleOAuthError(f"Network error during token refresh: {e}") from e

        token_response = self._handle_token_response(response, "token_refresh")

        if not token_response.refresh_token:
            token_response.refresh_token = refresh_token

        return token_response

    def _handle_token_response(self, response: httpx.Response, operation: str) -> TokenResponse:
        """
        Handle and validate token response from Google.

        Raises:
            GoogleOAuthError: If response is invalid or contains errors
        """
        if not response.is_success:
            try:
                error_data = response.json()
            except ValueError:
                logger.error(
                    f"Google {operation} failed with non-JSON response",
                    status_code=response.status_code,
                )
                raise GoogleOAuthError(
                    f"Google OAuth service error (HTTP {response.status_code})",
                    recoverable=response.status_code >= 500,
                ) from None

            error_code = error_data.get("error", "unknown_error")
            logger.error(
                f"Google {operation} failed",
                status_code=response.status_code,
                error_code=error_code,
                error_description=error_data.get("error_description"),
            )
            raise GoogleOAuthError(
                self._map_google_error(error_code),
                error_code=error_code,
                response_data=error_data,
                recoverable=error_code not in REVOKED_GRANT_ERRORS,
            )

        try:
            token_response = TokenResponse(response.json())
        except ValueError as e:
            logger.error(f"Failed to parse Google {operation} response", error=str(e))
            raise GoogleOAuthError(f"Failed to parse Google response: {e}") from e

        if not token_response.is_valid():
            raise GoogleOAuthError("Invalid token response from Google")

        logger.info(
            f"Google {operation} successful",
            expires_in=token_response.expires_in,
            calendar_scopes_count=len(token_response.get_calendar_scopes()),
        )
        return token_response

    def _map_google_error(self, error_code: str) -> str:
        error_messages = {
            "invalid_grant": (
                "Calendar access was revoked or expired. Please reconnect your calendar."
            ),
            "invalid_client": "Calendar connection configuration error. Please contact support.",
            "unauthorized_client": "Calendar connection not authorized. Please contact support.",
            "invalid_request": "Invalid calendar token refresh request.",
            "invalid_scope": "Invalid calendar permissions requested.",
        }
        return error_messages.get(error_code, f"Calendar token refresh failed ({error_code}).")
