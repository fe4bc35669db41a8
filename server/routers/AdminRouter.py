from fastapi import APIRouter, Depends, Request

from server.dependencies.auth import verify_admin_key, verify_api_key
from server.models.requests import ResetRequest
from server.models.responses import SuccessResponse
from shared.clients.rag.models.VectorRecord import Namespace
from shared.exceptions import ValidationError

router = APIRouter(prefix="/vectordb", tags=["admin"], dependencies=[Depends(verify_api_key), Depends(verify_admin_key)])


@router.post("/reset")
async def reset_index(request: Request, body: ResetRequest | None = None) -> SuccessResponse:
    """Delete every record of one namespace, or of the whole index when no namespace is given.

    Refused with 409 while a migration runs.
    """
    namespace = None
    if body is not None and body.namespace:
        try:
            namespace = Namespace.from_key(body.namespace)
        except ValueError as e:
            raise ValidationError(str(e), field="namespace") from e
    migration_service = request.app.state.migration_service
    await migration_service.do_reset_index(namespace)
    return SuccessResponse()
