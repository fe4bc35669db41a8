"""Vector record mapper.

Turns canonical messages and bios into VectorRecords. Building a record is
pure and deterministic; only do_to_vector_record talks to the embedding
backend.
"""

from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.rag.models.VectorRecord import Namespace, RecordKind, VectorRecord
from shared.exceptions import TransientEmbeddingError, ValidationError
from shared.helper.HelperConfig import HelperConfig
from shared.helper.retry import RetryConfig, retry_async
from shared.models.chat import ChatMessage, UserBio, UserProfileSnapshot

SourceEntity = ChatMessage | UserBio


def normalize_content(text: str | None, max_chars: int) -> str:
    """Trim, collapse whitespace runs to single spaces and cut to max_chars."""
    if not text:
        return ""
    return " ".join(text.split())[:max_chars]


def get_record_id(entity: SourceEntity) -> str:
    """Stable record id: the message id, or "bio_{userId}" for a bio."""
    if isinstance(entity, UserBio):
        return f"bio_{entity.user_id}"
    return entity.id


def get_entity_content(entity: SourceEntity) -> str:
    if isinstance(entity, UserBio):
        return entity.bio
    return entity.content


def build_vector_record(
    entity: SourceEntity,
    owner_profile: UserProfileSnapshot | None,
    embedding: list[float],
    max_chars: int = 8000,
) -> VectorRecord:
    """Build the record for a message or bio.

    Args:
        entity: A channel message or a user bio.
        owner_profile: The author's profile; None gives the default snapshot.
        embedding: The embedding of the normalised content.
        max_chars: Cut-off for the normalised content.

    Returns:
        VectorRecord: Messages land in their workspace namespace narrowed to
        the channel, bios in the user's namespace.

    Raises:
        ValidationError: If the normalised content is empty.
    """
    content = normalize_content(get_entity_content(entity), max_chars)
    record_id = get_record_id(entity)
    if not content:
        raise ValidationError(f"Entity '{record_id}' has no content to index.", field="content")

    snapshot = owner_profile or UserProfileSnapshot()
    if isinstance(entity, UserBio):
        return VectorRecord(
            id=record_id,
            namespace=Namespace.for_user(entity.user_id),
            owner_id=entity.user_id,
            kind=RecordKind.BIO,
            content=content,
            embedding=embedding,
            timestamp=entity.timestamp,
            profile_snapshot=snapshot,
            bio_source=entity.source,
        )
    return VectorRecord(
        id=record_id,
        namespace=Namespace.for_workspace(entity.workspace_id, entity.channel_id),
        owner_id=entity.user_id,
        kind=RecordKind.MESSAGE,
        content=content,
        embedding=embedding,
        timestamp=entity.timestamp,
        profile_snapshot=snapshot,
    )


class VectorRecordMapper:
    """Embeds source entities and maps them to records."""

    def __init__(self, helper_config: HelperConfig, embed_client: EmbedClientInterface) -> None:
        self.logging = helper_config.get_logger()
        self._embed_client = embed_client
        self._retry_config = RetryConfig.from_config(helper_config)
        self.vector_size = int(helper_config.get_number_val("RAG_VECTOR_SIZE", default=1536))
        self.max_chars = embed_client.embed_model_max_chars

    async def _do_embed_once(self, text: str) -> list[float]:
        embeddings = await self._embed_client.do_embed([text])
        embedding = embeddings[0]
        if len(embedding) != self.vector_size:
            raise TransientEmbeddingError(
                f"Embedding has {len(embedding)} dimensions, expected {self.vector_size}."
            )
        return embedding

    async def do_embed(self, text: str, operation_name: str = "embed") -> list[float]:
        """Embed one normalised text with bounded retry.

        Raises:
            TransientEmbeddingError: If every attempt failed or returned the wrong dimension.
        """
        return await retry_async(
            lambda: self._do_embed_once(text),
            config=self._retry_config,
            logger=self.logging,
            retry_on=(TransientEmbeddingError,),
            operation_name=operation_name,
        )

    async def do_to_vector_record(self, entity: SourceEntity, owner_profile: UserProfileSnapshot | None) -> VectorRecord:
        """Validate, embed and map one entity.

        Raises:
            ValidationError: If the entity has no content; nothing is embedded.
            TransientEmbeddingError: If embedding failed after all retries.
        """
        content = normalize_content(get_entity_content(entity), self.max_chars)
        if not content:
            raise ValidationError(f"Entity '{get_record_id(entity)}' has no content to index.", field="content")
        embedding = await self.do_embed(content, operation_name=f"embed {get_record_id(entity)}")
        return build_vector_record(entity, owner_profile, embedding, self.max_chars)
