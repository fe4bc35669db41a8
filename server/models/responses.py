from pydantic import BaseModel, ConfigDict, Field


class SuccessResponse(BaseModel):
    success: bool = True


class ErrorResponse(BaseModel):
    success: bool = False
    error: str


class SyncUserResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    updated_count: int = Field(alias="updatedCount")
    total_count: int = Field(alias="totalCount")
    failed_ids: list[str] = Field(default_factory=list, alias="failedIds")
    failed_scans: list[str] = Field(default_factory=list, alias="failedScans")


class MigrateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    total_updated: int = Field(alias="totalUpdated")
    messages_synced: int = Field(alias="messagesSynced")
    bios_synced: int = Field(alias="biosSynced")
    failed_ids: list[str] = Field(default_factory=list, alias="failedIds")
    cancelled: bool = False


class CancelResponse(BaseModel):
    success: bool = True
    cancelled: bool


class AgentMigrateResponse(BaseModel):
    success: bool
    stats: dict


class AutoResponseResponse(BaseModel):
    response: str
