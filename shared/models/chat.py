"""Pydantic models for snapshots of the canonical chat store.

The canonical store (workspaces, channels, messages, users) is owned by the
chat application. These models only describe the parts the vector sync
engine reads, and validate its loosely-typed payloads at the boundary.
"""

import hashlib
import json
import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_DISPLAY_NAME = "Unknown User"


def coerce_timestamp(value: Any) -> int:
    """Coerce a store timestamp (int, float or numeric string) to epoch milliseconds.

    Missing or unparsable values fall back to the current time.
    """
    if isinstance(value, bool):
        return int(time.time() * 1000)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            pass
    return int(time.time() * 1000)


class UserProfileSnapshot(BaseModel):
    """Denormalised copy of a user's profile, stored with every vector record.

    Unknown fields in the store payload are dropped; missing fields default
    explicitly instead of leaking nulls into the index.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    display_name: str = Field(default=DEFAULT_DISPLAY_NAME, alias="displayName")
    photo_url: str | None = Field(default=None, alias="photoURL")
    bio: str | None = None
    email: str | None = None
    role: str | None = None
    status: str | None = None

    @field_validator("display_name", mode="before")
    @classmethod
    def _default_display_name(cls, value: Any) -> str:
        if value is None or not str(value).strip():
            return DEFAULT_DISPLAY_NAME
        return str(value).strip()

    @field_validator("photo_url", "bio", "email", "role", "status", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> str | None:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @classmethod
    def from_raw(cls, raw: dict | None) -> "UserProfileSnapshot":
        """Build a snapshot from a raw store payload (None gives the default profile)."""
        return cls.model_validate(raw or {})

    def get_hash(self) -> str:
        """SHA-256 over the snapshot fields; differs whenever any field changes."""
        encoded = json.dumps(self.model_dump(), sort_keys=True, ensure_ascii=False)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class ChatMessage(BaseModel):
    """A text message in a workspace channel (or in one of its threads)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    workspace_id: str = Field(alias="workspaceId")
    channel_id: str = Field(alias="channelId")
    user_id: str = Field(alias="userId")
    content: str = ""
    type: str = "text"
    timestamp: int = 0
    thread_id: str | None = Field(default=None, alias="threadId")

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> int:
        return coerce_timestamp(value)


class BioSource(str, Enum):
    PROFILE = "profile"
    PERSONA = "persona"


class UserBio(BaseModel):
    """A user's bio text, indexed as a "bio" record in the user's namespace.

    A persona bio was generated from the user's messages and is kept when
    the profile itself has no bio.
    """

    user_id: str
    bio: str
    timestamp: int = 0
    source: BioSource = BioSource.PROFILE


class AgentSettings(BaseModel):
    """A user's switches for replies written on their behalf.

    Replies in direct messages need dm_enabled; replies in a workspace
    channel need that workspace switched on.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    dm_enabled: bool = Field(default=False, alias="dmEnabled")
    workspaces: dict[str, bool] = {}

    @field_validator("dm_enabled", mode="before")
    @classmethod
    def _none_is_off(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("workspaces", mode="before")
    @classmethod
    def _keep_switches(cls, value: Any) -> dict[str, bool]:
        if not isinstance(value, dict):
            return {}
        return {str(key): switch is True for key, switch in value.items()}

    def is_enabled_for(self, workspace_id: str | None, is_dm: bool) -> bool:
        if is_dm:
            return self.dm_enabled
        return bool(workspace_id) and self.workspaces.get(workspace_id, False)


class EntityKind(str, Enum):
    MESSAGE_CREATED = "message_created"
    MESSAGE_UPDATED = "message_updated"
    MESSAGE_DELETED = "message_deleted"
    PROFILE_CHANGED = "profile_changed"


class EntityChangedEvent(BaseModel):
    """A change notification emitted by the canonical store.

    Message events carry ``message``; profile events carry ``user_id`` and
    ``profile`` (plus the display name the user had before, when known).
    """

    kind: EntityKind
    message: ChatMessage | None = None
    user_id: str | None = None
    profile: UserProfileSnapshot | None = None
    previous_display_name: str | None = None

    def get_entity_id(self) -> str:
        if self.message is not None:
            return self.message.id
        return f"user_{self.user_id}"
