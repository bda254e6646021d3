"""
Availability API Routes
Start an availability check for an event and poll its progress.
"""

import asyncio
import uuid

from fastapi import APIRouter, Depends, HTTPException, Response, status

from app.auth.verify import current_user_id
from app.config import settings
from app.dependencies import get_check_store, get_resolver
from app.infrastructure.observability.logging import get_logger
from app.models.api.scheduling_request import AvailabilityRequest
from app.models.api.scheduling_response import AvailabilityResponse
from app.models.domain.scheduling_results import (
    AvailabilityCheck,
    CheckStatus,
    ResolutionError,
    ResolutionErrorKind,
    TokenOutcome,
)
from app.services.scheduling.check_store import AvailabilityCheckStore
from app.services.scheduling.resolver import AvailabilityResolver

logger = get_logger(__name__)

router = APIRouter(tags=["availability"])

ERROR_STATUS = {
    ResolutionErrorKind.EVENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ResolutionErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ResolutionErrorKind.INVALID_REQUEST: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ResolutionErrorKind.PARTICIPANT_UNAVAILABLE: status.HTTP_409_CONFLICT,
    ResolutionErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


@router.post("/events/{event_id}/availability", response_model=AvailabilityResponse)
async def check_event_availability(
    event_id: str,
    body: AvailabilityRequest,
    response: Response,
    user_id: str = Depends(current_user_id),
    resolver: AvailabilityResolver = Depends(get_resolver),
    checks: AvailabilityCheckStore = Depends(get_check_store),
):
    """
    Resolve the top common slots for an event's participants.

    The check is stored while it runs. A client that wants to poll
    per-participant credential progress supplies its own check_id and reads
    GET /availability-checks/{check_id} until the request returns. The id is
    echoed in the X-Check-ID header. "No common slot" is a completed check
    with a reason, not an error.
    """
    check_id = str(body.check_id) if body.check_id else str(uuid.uuid4())
    if body.check_id and await checks.get(check_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Availability check id already in use"
        )
    headers = {"X-Check-ID": check_id}
    response.headers.update(headers)

    check = AvailabilityCheck(
        check_id=check_id,
        event_id=event_id,
        requester_id=user_id,
        window=body.to_slot(),
        duration_minutes=body.duration_minutes,
    )
    await checks.save(check)

    async def on_progress(outcome: TokenOutcome) -> None:
        check.record_outcome(outcome)
        await checks.save(check)

    try:
        async with asyncio.timeout(settings.AVAILABILITY_TIMEOUT_SECONDS):
            result = await resolver.resolve(
                event_id,
                check.window,
                body.duration_minutes,
                requester_id=user_id,
                on_progress=on_progress,
            )
    except TimeoutError:
        logger.warning(
            "Availability check timed out",
            event_id=event_id,
            check_id=check.check_id,
            timeout_s=settings.AVAILABILITY_TIMEOUT_SECONDS,
        )
        check.status = CheckStatus.FAILED
        check.error = ResolutionError(
            kind=ResolutionErrorKind.TIMEOUT, message="Calendar providers did not answer in time"
        )
        await checks.save(check)
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=AvailabilityResponse.from_check(check).model_dump(mode="json"),
            headers=headers,
        )

    check.apply_result(result)
    await checks.save(check)
    answer = AvailabilityResponse.from_check(check)

    if result.ok or result.error.kind == ResolutionErrorKind.NO_COMMON_SLOT:
        return answer

    if result.error.kind == ResolutionErrorKind.PARTICIPANT_UNAVAILABLE:
        detail = answer.model_dump(mode="json")
    else:
        detail = result.error.message
    raise HTTPException(
        status_code=ERROR_STATUS[result.error.kind], detail=detail, headers=headers
    )


@router.get("/availability-checks/{check_id}", response_model=AvailabilityResponse)
async def get_availability_check(
    check_id: str,
    user_id: str = Depends(current_user_id),
    checks: AvailabilityCheckStore = Depends(get_check_store),
):
    """Poll a running or finished availability check."""
    check = await checks.get(check_id)
    if check is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Availability check not found or expired"
        )
    if check.requester_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Not your availability check"
        )
    return AvailabilityResponse.from_check(check)
