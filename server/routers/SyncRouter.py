from fastapi import APIRouter, Depends, Request

from server.dependencies.auth import verify_api_key
from server.models.requests import DeleteMessageRequest, MessageVectorRequest, SyncUserRequest
from server.models.responses import SuccessResponse, SyncUserResponse
from shared.models.chat import UserProfileSnapshot

router = APIRouter(tags=["sync"])


@router.post("/sync")
async def sync_message(
    request: Request,
    body: MessageVectorRequest,
    _: None = Depends(verify_api_key),
) -> SuccessResponse:
    """Upsert the record of one created or updated message.

    Args:
        request (Request): FastAPI request (provides app.state.sync_service).
        body (MessageVectorRequest): The message, optionally with the author's profile.
        _ (None): Auth dependency result (unused).

    Returns:
        SuccessResponse: {"success": true} once the record is written.
    """
    sync_service = request.app.state.sync_service
    await sync_service.do_sync_message(body.to_message(), body.to_profile())
    return SuccessResponse()


@router.post("/sync/delete")
async def delete_message(
    request: Request,
    body: DeleteMessageRequest,
    _: None = Depends(verify_api_key),
) -> SuccessResponse:
    """Remove the record of a deleted message."""
    sync_service = request.app.state.sync_service
    await sync_service.do_delete_message(body.id, body.workspace_id, body.channel_id)
    return SuccessResponse()


@router.post("/sync-user")
async def sync_user(
    request: Request,
    body: SyncUserRequest,
    _: None = Depends(verify_api_key),
) -> SyncUserResponse:
    """Rewrite every record carrying a stale snapshot of the user's profile.

    Partial failures are reported through failedIds (records) and
    failedScans (scans never completed) with success=false, never as an
    opaque error.
    """
    sync_service = request.app.state.sync_service
    result = await sync_service.do_sync_user_profile(
        body.user_id,
        UserProfileSnapshot.from_raw(body.user_profile),
        previous_display_name=body.previous_display_name,
    )
    return SyncUserResponse(
        success=result.is_complete(),
        updated_count=result.updated,
        total_count=result.total,
        failed_ids=result.failed_ids,
        failed_scans=result.failed_scans,
    )
