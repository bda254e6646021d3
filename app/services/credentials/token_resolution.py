"""
Token resolution stage: one credential per participant, concurrently and independently.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Sequence

from app.infrastructure.observability.logging import get_logger
from app.models.domain.oauth_domain import ScopeProfile
from app.models.domain.scheduling_domain import Participant
from app.models.domain.scheduling_results import (
    CredentialError,
    CredentialErrorKind,
    ParticipantFailure,
    TokenOutcome,
)
from app.services.credentials.token_service import IdentityProvider

logger = get_logger(__name__)

ProgressCallback = Callable[[TokenOutcome], None | Awaitable[None]]


class TokenResolutionStage:
    """
    Resolves credentials for every participant.

    One participant's failure never fails another's resolution; the caller
    decides what a failure means for the request.
    """

    def __init__(self, credentials: IdentityProvider):
        self._credentials = credentials

    async def resolve_all(
        self,
        participants: Sequence[Participant],
        scope_profile: ScopeProfile = ScopeProfile.CALENDAR_READ,
        on_progress: ProgressCallback | None = None,
    ) -> list[TokenOutcome]:
        """
        Resolve all participants concurrently.

        Returns:
            One outcome per participant, in input order. on_progress is
            invoked as each outcome lands (completion order).
        """

        async def resolve_and_report(participant: Participant) -> TokenOutcome:
            outcome = await self.resolve_one(participant, scope_profile)
            if on_progress is not None:
                result = on_progress(outcome)
                if inspect.isawaitable(result):
                    await result
            return outcome

        outcomes = await asyncio.gather(*(resolve_and_report(p) for p in participants))

        failed = [outcome.participant_id for outcome in outcomes if not outcome.success]
        logger.info(
            "Token resolution completed",
            participants=len(outcomes),
            failed=len(failed),
            failed_participants=failed,
        )
        return list(outcomes)

    async def resolve_one(
        self, participant: Participant, scope_profile: ScopeProfile = ScopeProfile.CALENDAR_READ
    ) -> TokenOutcome:
        try:
            credential = await self._credentials.get_access_token(
                participant.user_id, scope_profile
            )
        except CredentialError as e:
            return self._failed(participant, str(e.kind), str(e), tuple(e.missing_scopes))
        except Exception as e:
            logger.exception(
                "Unexpected error resolving credential",
                participant_id=participant.participant_id,
                user_id=participant.user_id,
            )
            return self._failed(
                participant,
                str(CredentialErrorKind.PROVIDER_UNAVAILABLE),
                f"Credential lookup failed: {e}",
            )

        missing = credential.missing_scopes(scope_profile.required_scopes())
        if missing:
            return self._failed(
                participant,
                str(CredentialErrorKind.INSUFFICIENT_SCOPE),
                "Calendar permissions missing - reconnect and grant calendar access",
                tuple(missing),
            )

        return TokenOutcome(
            participant_id=participant.participant_id, success=True, credential=credential
        )

    def invalidate(self, user_id: str) -> None:
        """
        Forget any cached credential for the user.

        Called when the calendar rejects a credential that resolved fine, so
        the next resolution goes back to the identity provider.
        """
        invalidate = getattr(self._credentials, "invalidate", None)
        if invalidate is None:
            return
        invalidate(user_id)
        logger.info("Cached credential dropped after calendar rejection", user_id=user_id)

    def _failed(
        self,
        participant: Participant,
        kind: str,
        message: str,
        missing_scopes: tuple[str, ...] = (),
    ) -> TokenOutcome:
        logger.warning(
            "Credential unavailable for participant",
            participant_id=participant.participant_id,
            user_id=participant.user_id,
            kind=kind,
            missing_scopes=list(missing_scopes),
        )
        return TokenOutcome(
            participant_id=participant.participant_id,
            success=False,
            failure=ParticipantFailure(
                participant_id=participant.participant_id,
                kind=kind,
                message=message,
                email=participant.email,
                missing_scopes=missing_scopes,
            ),
        )
