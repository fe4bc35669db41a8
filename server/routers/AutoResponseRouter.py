from fastapi import APIRouter, Depends, Request, Response, status

from server.dependencies.auth import verify_api_key
from server.models.requests import AutoResponseRequest
from server.models.responses import AutoResponseResponse

router = APIRouter(prefix="/ai", tags=["ai"])


@router.post(
    "/auto-response",
    response_model=AutoResponseResponse,
    responses={status.HTTP_204_NO_CONTENT: {"description": "Auto-response is switched off for this user and channel."}},
)
async def auto_response(
    request: Request,
    body: AutoResponseRequest,
    _: None = Depends(verify_api_key),
) -> AutoResponseResponse | Response:
    """Write a reply on behalf of a user, using whatever context could be retrieved.

    Args:
        request (Request): FastAPI request (provides app.state.auto_response_service).
        body (AutoResponseRequest): Channel, user, whether it is a DM and optionally the message to answer.
        _ (None): Auth dependency result (unused).

    Returns:
        AutoResponseResponse: The generated reply, or an empty 204 when the
        user's agent settings switch replies off here.
    """
    auto_response_service = request.app.state.auto_response_service
    response = await auto_response_service.do_generate_response(
        user_id=body.user_id,
        channel_id=body.channel_id,
        workspace_id=body.workspace_id,
        message=body.message,
        is_dm=body.is_dm,
    )
    if response is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return AutoResponseResponse(response=response)
