"""VectorRecord model: the normalised unit stored in the semantic index."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, field_validator, model_validator

from shared.models.chat import DEFAULT_DISPLAY_NAME, BioSource, UserProfileSnapshot, coerce_timestamp

RECORD_SOURCE = "chat-vector-sync"


class RecordKind(str, Enum):
    MESSAGE = "message"
    BIO = "bio"


class Namespace(BaseModel):
    """Partition key for index operations.

    Channel messages live in their workspace's partition, bios in their
    user's partition. A channel narrows a workspace partition by filter.
    The default partition (empty key) only holds legacy records written
    before partitions existed; nothing new is written there.

    Attributes:
        workspace_id: Workspace partition.
        channel_id:   Optional channel inside the workspace partition.
        user_id:      User partition (bios / DM context).
        is_default:   The unnamed legacy partition.
    """

    workspace_id: str | None = None
    channel_id: str | None = None
    user_id: str | None = None
    is_default: bool = False

    @model_validator(mode="after")
    def _check_partition(self) -> "Namespace":
        if self.is_default:
            if self.workspace_id or self.user_id or self.channel_id:
                raise ValueError("The default namespace takes no workspace, channel or user.")
            return self
        if bool(self.workspace_id) == bool(self.user_id):
            raise ValueError("A namespace needs exactly one of workspace_id or user_id.")
        if self.channel_id and not self.workspace_id:
            raise ValueError("channel_id is only valid inside a workspace namespace.")
        return self

    @classmethod
    def for_workspace(cls, workspace_id: str, channel_id: str | None = None) -> "Namespace":
        return cls(workspace_id=workspace_id, channel_id=channel_id)

    @classmethod
    def for_user(cls, user_id: str) -> "Namespace":
        return cls(user_id=user_id)

    @classmethod
    def default(cls) -> "Namespace":
        return cls(is_default=True)

    @classmethod
    def from_key(cls, key: str, channel_id: str | None = None) -> "Namespace":
        """Parse a key produced by get_key(), e.g. "workspace-ws1" or "user-u1"."""
        prefix, _, value = key.partition("-")
        if prefix == "workspace" and value:
            return cls(workspace_id=value, channel_id=channel_id or None)
        if prefix == "user" and value:
            return cls(user_id=value)
        raise ValueError(f"Invalid namespace key '{key}'.")

    def get_key(self) -> str:
        if self.is_default:
            return ""
        if self.workspace_id:
            return f"workspace-{self.workspace_id}"
        return f"user-{self.user_id}"

    def get_partition(self) -> "Namespace":
        """The namespace without its channel narrowing."""
        return Namespace(workspace_id=self.workspace_id, user_id=self.user_id, is_default=self.is_default)


class VectorRecord(BaseModel):
    """A message or bio, its embedding, and the owner's profile snapshot.

    The id is stable across re-syncs of the same source entity: the message
    id for messages and "bio_{userId}" for bios. Upserting the same id again
    overwrites the record.
    """

    id: str
    namespace: Namespace
    owner_id: str | None = None
    kind: RecordKind
    content: str
    embedding: list[float] = []
    timestamp: int
    profile_snapshot: UserProfileSnapshot = UserProfileSnapshot()
    # where a bio's text came from; None for messages
    bio_source: BioSource | None = None

    @field_validator("id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Record id must not be empty.")
        return value

    @field_validator("content")
    @classmethod
    def _non_empty_content(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Record content must not be empty.")
        return value

    def is_legacy(self) -> bool:
        """Records synced before owner ids were attached."""
        return not self.owner_id

    def to_metadata(self) -> dict[str, Any]:
        """Flat payload stored next to the vector. None values are omitted."""
        snapshot = self.profile_snapshot
        metadata: dict[str, Any] = {
            "recordId": self.id,
            "namespace": self.namespace.get_key(),
            "kind": self.kind.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "displayName": snapshot.display_name,
            "profileHash": snapshot.get_hash(),
            "source": RECORD_SOURCE,
            "ownerId": self.owner_id,
            "workspaceId": self.namespace.workspace_id,
            "channelId": self.namespace.channel_id,
            "userId": self.namespace.user_id,
            "photoURL": snapshot.photo_url,
            "bio": snapshot.bio,
            "email": snapshot.email,
            "role": snapshot.role,
            "status": snapshot.status,
            "bioSource": self.bio_source.value if self.bio_source else None,
        }
        return {key: value for key, value in metadata.items() if value is not None}

    @classmethod
    def from_metadata(cls, record_id: str, metadata: dict[str, Any], embedding: list[float] | None = None) -> "VectorRecord":
        """Rebuild a record from an index payload.

        Also accepts the legacy layouts, which stored the sender as
        "userName" (messages) or "userDisplayName" (agent bios) and carried
        no namespace or owner fields.
        """
        channel_id = metadata.get("channelId")
        if metadata.get("namespace"):
            namespace = Namespace.from_key(metadata["namespace"], channel_id=channel_id)
        elif metadata.get("workspaceId"):
            namespace = Namespace.for_workspace(metadata["workspaceId"], channel_id=channel_id)
        else:
            namespace = Namespace.for_user(metadata.get("userId") or metadata.get("ownerId") or "unknown")

        kind = metadata.get("kind") or metadata.get("messageType") or RecordKind.MESSAGE.value
        snapshot = UserProfileSnapshot(
            display_name=(
                metadata.get("displayName")
                or metadata.get("userName")
                or metadata.get("userDisplayName")
                or DEFAULT_DISPLAY_NAME
            ),
            photo_url=metadata.get("photoURL"),
            bio=metadata.get("bio"),
            email=metadata.get("email"),
            role=metadata.get("role"),
            status=metadata.get("status"),
        )
        return cls(
            id=metadata.get("recordId") or record_id,
            namespace=namespace,
            owner_id=metadata.get("ownerId"),
            kind=RecordKind(kind),
            content=metadata.get("content") or "",
            embedding=list(embedding or []),
            timestamp=coerce_timestamp(metadata.get("timestamp", 0)),
            profile_snapshot=snapshot,
            bio_source=metadata.get("bioSource"),
        )


class ScoredRecord(BaseModel):
    """A query hit: the record and its similarity to the query vector."""

    record: VectorRecord
    score: float


class RecordFilter(BaseModel):
    """Engine-independent metadata filter, translated by each index client.

    Attributes:
        owner_id:         Only records owned by this user.
        workspace_id:     Only records from this workspace (for the default namespace).
        channel_id:       Only records from this channel.
        kinds:            Only records of these kinds.
        display_name:     Only records whose snapshot carries this display name.
        owner_missing:    Only legacy records without an owner id.
        profile_hash_not: Only records whose profile snapshot hash differs.
        exclude_ids:      Skip these record ids.
    """

    owner_id: str | None = None
    workspace_id: str | None = None
    channel_id: str | None = None
    kinds: list[RecordKind] | None = None
    display_name: str | None = None
    owner_missing: bool = False
    profile_hash_not: str | None = None
    exclude_ids: list[str] = []
