"""
Event Commit Routes
Confirm a chosen slot, push edits to the external event, cancel or archive.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.auth.verify import current_user_id
from app.dependencies import get_commit_service
from app.infrastructure.observability.logging import get_logger
from app.models.api.scheduling_request import ConfirmSlotRequest
from app.models.api.scheduling_response import CommitResponse
from app.models.domain.scheduling_results import CommitErrorKind, CommitResult
from app.services.scheduling.commit_service import SlotCommitService

logger = get_logger(__name__)

router = APIRouter(prefix="/events", tags=["events"])

ERROR_STATUS = {
    CommitErrorKind.EVENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    CommitErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    CommitErrorKind.INVALID_SLOT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CommitErrorKind.NOT_CONFIRMED: status.HTTP_409_CONFLICT,
    CommitErrorKind.CREDENTIAL_UNAVAILABLE: status.HTTP_409_CONFLICT,
    CommitErrorKind.PROVIDER_FAILED: status.HTTP_502_BAD_GATEWAY,
    CommitErrorKind.PERSISTENCE_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _to_response(event_id: str, result: CommitResult) -> CommitResponse:
    if result.ok:
        return CommitResponse.from_result(event_id, result)

    error = result.error
    detail = {
        "reason": str(error.kind),
        "message": error.message,
        "provider_event_id": error.provider_event_id,
        "warnings": list(result.warnings),
        "participant_errors": [failure.to_dict() for failure in error.failures],
    }
    if error.provider_error:
        detail["provider_error"] = {
            "kind": str(error.provider_error.kind),
            "message": error.provider_error.message,
            "status_code": error.provider_error.status_code,
        }
    raise HTTPException(status_code=ERROR_STATUS[error.kind], detail=detail)


@router.post("/{event_id}/confirm", response_model=CommitResponse)
async def confirm_event_slot(
    event_id: str,
    body: ConfirmSlotRequest,
    user_id: str = Depends(current_user_id),
    commits: SlotCommitService = Depends(get_commit_service),
):
    """Book the chosen slot on the organizer's calendar and confirm the event."""
    result = await commits.confirm(event_id, body.to_slot(), requester_id=user_id)
    return _to_response(event_id, result)


@router.post("/{event_id}/sync", response_model=CommitResponse)
async def sync_event(
    event_id: str,
    user_id: str = Depends(current_user_id),
    commits: SlotCommitService = Depends(get_commit_service),
):
    """Push edited details of a confirmed event to the external calendar."""
    result = await commits.sync_event_details(event_id, requester_id=user_id)
    return _to_response(event_id, result)


@router.delete("/{event_id}", response_model=CommitResponse)
async def cancel_event(
    event_id: str,
    archive: bool = Query(False, description="Keep the record as archived instead of deleting it"),
    user_id: str = Depends(current_user_id),
    commits: SlotCommitService = Depends(get_commit_service),
):
    """Remove the event from external calendars, then delete or archive it."""
    result = await commits.cancel_or_delete(event_id, requester_id=user_id, hard_delete=not archive)
    return _to_response(event_id, result)
