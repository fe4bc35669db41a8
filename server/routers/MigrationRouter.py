from fastapi import APIRouter, Depends, Request

from server.dependencies.auth import verify_admin_key, verify_api_key
from server.models.responses import AgentMigrateResponse, CancelResponse, MigrateResponse

router = APIRouter(tags=["migration"], dependencies=[Depends(verify_api_key), Depends(verify_admin_key)])


@router.post("/migrate")
async def migrate(request: Request) -> MigrateResponse:
    """Run the full reindex and return its totals once it finished or was cancelled."""
    migration_service = request.app.state.migration_service
    result = await migration_service.do_full_reindex()
    return MigrateResponse(
        success=not result.failed_ids and not result.cancelled,
        total_updated=result.get_total_updated(),
        messages_synced=result.messages_synced,
        bios_synced=result.bios_synced,
        failed_ids=result.failed_ids,
        cancelled=result.cancelled,
    )


@router.post("/migrate/cancel")
async def cancel_migration(request: Request) -> CancelResponse:
    """Ask the running job to stop; cancelled is false when nothing was running."""
    migration_service = request.app.state.migration_service
    return CancelResponse(cancelled=migration_service.request_cancel())


@router.post("/ai-agent/migrate")
async def migrate_agent_profiles(request: Request) -> AgentMigrateResponse:
    """Create the missing bio records and return the per-user tally."""
    migration_service = request.app.state.migration_service
    result = await migration_service.do_migrate_agent_profiles()
    return AgentMigrateResponse(
        success=not result.failed_ids and not result.cancelled,
        stats=result.model_dump(),
    )
