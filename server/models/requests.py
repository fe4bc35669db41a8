from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from shared.models.chat import ChatMessage, UserProfileSnapshot


class MessageVectorRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    workspace_id: str = Field(alias="workspaceId")
    channel_id: str = Field(alias="channelId")
    user_id: str = Field(alias="userId")
    content: str
    timestamp: Any = None
    type: str = "text"
    thread_id: str | None = Field(default=None, alias="threadId")
    user_profile: dict | None = Field(default=None, alias="userProfile")

    def to_message(self) -> ChatMessage:
        return ChatMessage(
            id=self.id,
            workspace_id=self.workspace_id,
            channel_id=self.channel_id,
            user_id=self.user_id,
            content=self.content,
            type=self.type,
            timestamp=self.timestamp,
            thread_id=self.thread_id,
        )

    def to_profile(self) -> UserProfileSnapshot | None:
        if self.user_profile is None:
            return None
        return UserProfileSnapshot.from_raw(self.user_profile)


class DeleteMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    workspace_id: str = Field(alias="workspaceId")
    channel_id: str | None = Field(default=None, alias="channelId")


class SyncUserRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    user_profile: dict = Field(default_factory=dict, alias="userProfile")
    previous_display_name: str | None = Field(default=None, alias="previousDisplayName")


class ResetRequest(BaseModel):
    namespace: str | None = None


class AutoResponseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    channel_id: str = Field(alias="channelId")
    user_id: str = Field(alias="userId")
    workspace_id: str | None = Field(default=None, alias="workspaceId")
    message: str | None = None
    is_dm: bool = Field(default=False, alias="isDM")
