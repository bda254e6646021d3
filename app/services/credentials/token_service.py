"""
Identity provider backed by stored Google OAuth tokens.
Reads Fernet-encrypted tokens from Postgres, refreshes them against Google when
they are about to expire, and hands out ProviderCredentials.
"""

from typing import Protocol

from app.db.helpers import DatabaseError, execute_query, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.oauth_domain import OAuthToken, ProviderCredential, ScopeProfile
from app.models.domain.scheduling_results import CredentialError, CredentialErrorKind
from app.services.credentials.google_oauth_service import (
    GoogleOAuthError,
    GoogleOAuthService,
    TokenResponse,
)
from app.services.infrastructure.encryption_service import EncryptionError, TokenCipher

logger = get_logger(__name__)

TOKEN_REFRESH_BUFFER_MINUTES = 5  # Refresh tokens expiring within 5 minutes


class IdentityProvider(Protocol):
    async def get_access_token(
        self, user_id: str, scope_profile: ScopeProfile = ScopeProfile.CALENDAR_READ
    ) -> ProviderCredential:
        """Return a usable credential or raise CredentialError."""
        ...


class TokenServiceError(Exception):
    """Custom exception for token storage operations."""

    def __init__(self, message: str, user_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.user_id = user_id
        self.recoverable = recoverable


class StoredTokenIdentityProvider:
    """
    Token lifecycle for connected calendar accounts.

    Storage, decryption and on-demand refresh of OAuth tokens. Scope checks
    are left to the token resolution stage, which knows which scopes a
    request needs.
    """

    def __init__(
        self,
        cipher: TokenCipher | None = None,
        oauth_service: GoogleOAuthService | None = None,
        provider: str = "google",
    ):
        self._cipher = cipher
        self.oauth_service = oauth_service or GoogleOAuthService()
        self.provider = provider

    @property
    def cipher(self) -> TokenCipher:
        # Built on first use so the app starts without ENCRYPTION_KEY in tests
        if self._cipher is None:
            self._cipher = TokenCipher()
        return self._cipher

    async def get_access_token(
        self, user_id: str, scope_profile: ScopeProfile = ScopeProfile.CALENDAR_READ
    ) -> ProviderCredential:
        """
        Resolve a credential for the user, refreshing it if needed.

        Raises:
            CredentialError: UNAUTHORIZED when the user has no usable grant,
                PROVIDER_UNAVAILABLE when storage or Google failed transiently
        """
        try:
            tokens = await self.get_tokens(user_id)
        except (TokenServiceError, DatabaseError) as e:
            raise CredentialError(
                "Stored calendar token could not be read",
                kind=CredentialErrorKind.PROVIDER_UNAVAILABLE
                if e.recoverable
                else CredentialErrorKind.UNAUTHORIZED,
                user_id=user_id,
            ) from e

        if tokens is None:
            raise CredentialError(
                "Calendar not connected", kind=CredentialErrorKind.UNAUTHORIZED, user_id=user_id
            )

        if tokens.needs_refresh(buffer_minutes=TOKEN_REFRESH_BUFFER_MINUTES):
            tokens = await self._refresh(user_id, tokens)

        logger.debug(
            "Access token resolved",
            user_id=user_id,
            scope_profile=str(scope_profile),
            expires_at=tokens.expires_at.isoformat() if tokens.expires_at else None,
        )
        return tokens.to_credential()

    async def _refresh(self, user_id: str, current_tokens: OAuthToken) -> OAuthToken:
        if not current_tokens.refresh_token:
            logger.warning("No refresh token available for refresh", user_id=user_id)
            raise CredentialError(
                "Calendar token expired - reconnect required",
                kind=CredentialErrorKind.UNAUTHORIZED,
                user_id=user_id,
            )

        try:
            token_response = await self.oauth_service.refresh_access_token(
                current_tokens.refresh_token
            )
        except GoogleOAuthError as e:
            logger.error(
                "Google OAuth error during token refresh",
                user_id=user_id,
                error=str(e),
                error_code=e.error_code,
                recoverable=e.recoverable,
            )
            raise CredentialError(
                str(e),
                kind=CredentialErrorKind.PROVIDER_UNAVAILABLE
                if e.recoverable
                else CredentialErrorKind.UNAUTHORIZED,
                user_id=user_id,
            ) from e

        # Google omits scope on some refresh responses
        if not token_response.scope:
            token_response.scope = current_tokens.scope

        try:
            await self.store_tokens(user_id, token_response)
        except (TokenServiceError, DatabaseError) as e:
            # The fresh token is still usable for this request
            logger.warning("Failed to persist refreshed token", user_id=user_id, error=str(e))

        logger.info(
            "Token refresh successful",
            user_id=user_id,
            new_expires_at=token_response.expires_at.isoformat()
            if token_response.expires_at
            else None,
        )
        return OAuthToken(
            user_id=user_id,
            provider=self.provider,
            email=current_tokens.email,
            access_token=token_response.access_token,
            refresh_token=token_response.refresh_token,
            scope=token_response.scope,
            expires_at=token_response.expires_at,
            updated_at=current_tokens.updated_at,
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_tokens(self, user_id: str) -> OAuthToken | None:
        """
        Retrieve and decrypt OAuth tokens for user.

        Returns:
            Decrypted token object if found, None otherwise

        Raises:
            TokenServiceError: If decryption fails
            DatabaseError: If the query fails (retried when recoverable)
        """
        query = """
        SELECT access_token, refresh_token, scope, expires_at, updated_at
        FROM oauth_tokens
        WHERE user_id = %s AND provider = %s
        """
        row = await fetch_one(query, (user_id, self.provider))

        if not row:
            logger.debug("No tokens found for user", user_id=user_id)
            return None

        try:
            access_token, refresh_token = self.cipher.decrypt_pair(
                row["access_token"], row["refresh_token"]
            )
        except EncryptionError as e:
            logger.error("Token decryption failed", user_id=user_id, error=str(e))
            raise TokenServiceError(
                f"Token decryption failed: {e}", user_id=user_id, recoverable=False
            ) from e

        return OAuthToken(
            user_id=user_id,
            provider=self.provider,
            access_token=access_token,
            refresh_token=refresh_token,
            scope=row["scope"] or "",
            expires_at=row["expires_at"],
            updated_at=row["updated_at"],
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def store_tokens(self, user_id: str, token_response: TokenResponse) -> bool:
        """Store encrypted OAuth tokens, replacing any previous pair."""
        try:
            encrypted_access, encrypted_refresh = self.cipher.encrypt_pair(
                token_response.access_token, token_response.refresh_token
            )
        except EncryptionError as e:
            logger.error("Token encryption failed", user_id=user_id, error=str(e))
            raise TokenServiceError(f"Token encryption failed: {e}", user_id=user_id) from e

        query = """
        INSERT INTO oauth_tokens (
            user_id, provider, access_token, refresh_token,
            scope, expires_at, updated_at
        ) VALUES (
            %s, %s, %s, %s, %s, %s, NOW()
        )
        ON CONFLICT (user_id)
        DO UPDATE SET
            access_token = EXCLUDED.access_token,
            refresh_token = EXCLUDED.refresh_token,
            scope = EXCLUDED.scope,
            expires_at = EXCLUDED.expires_at,
            updated_at = NOW()
        """
        affected_rows = await execute_query(
            query,
            (
                user_id,
                self.provider,
                encrypted_access,
                encrypted_refresh,
                token_response.scope,
                token_response.expires_at,
            ),
        )
        return affected_rows > 0

