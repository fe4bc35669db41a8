import asyncio

from services.chat_vector_sync.VectorRecordMapper import normalize_content
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.VectorRecord import Namespace, RecordFilter, RecordKind, ScoredRecord
from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.exceptions import ClientRequestError, TransientClientError, ValidationError
from shared.helper.HelperConfig import HelperConfig
from shared.models.context import ContextBundle, ContextItem


class ContextRetriever:
    """Assembles the ranked context for one auto-response: the user's bio plus the channel's messages."""

    def __init__(
        self,
        helper_config: HelperConfig,
        rag_client: RAGClientInterface,
        embed_client: EmbedClientInterface,
        store_client: StoreClientInterface,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._rag_client = rag_client
        self._embed_client = embed_client
        self._store_client = store_client
        self.default_top_k = int(helper_config.get_number_val("CONTEXT_TOP_K", default=5))

    ##########################################
    ################ HELPERS #################
    ##########################################

    @staticmethod
    def build_query_text(user_id: str, channel_id: str, message_text: str | None = None) -> str:
        """The live message itself, or a synthetic query for the channel/user pairing."""
        if message_text and message_text.strip():
            return message_text
        return f"Recent conversation in channel {channel_id} relevant to user {user_id}"

    async def _do_embed_query(self, text: str) -> list[float] | None:
        try:
            embedding = (await self._embed_client.do_embed([normalize_content(text, self._embed_client.embed_model_max_chars)]))[0]
        except (TransientClientError, ClientRequestError, ValueError) as e:
            self.logging.warning("Embedding the context query failed, continuing without context: %s", e)
            return None
        if len(embedding) != self._rag_client.vector_size:
            self.logging.warning(
                "Context query embedding has %d dimensions, expected %d; continuing without context.",
                len(embedding),
                self._rag_client.vector_size,
            )
            return None
        return embedding

    async def _do_query_namespace(
        self,
        namespace: Namespace,
        embedding: list[float],
        top_k: int,
        kind: RecordKind,
    ) -> list[ScoredRecord]:
        try:
            return await self._rag_client.do_query(
                namespace=namespace,
                query_embedding=embedding,
                top_k=top_k,
                record_filter=RecordFilter(kinds=[kind]),
            )
        except (TransientClientError, ClientRequestError, ValidationError) as e:
            self.logging.warning("Context query on '%s' failed, skipping it: %s", namespace.get_key(), e)
            return []

    async def _do_resolve_workspace(self, channel_id: str) -> str | None:
        try:
            return await self._store_client.do_find_channel_workspace(channel_id)
        except (TransientClientError, ClientRequestError) as e:
            self.logging.warning("Cannot resolve the workspace of channel %s: %s", channel_id, e)
            return None

    ##########################################
    ############### CORE #####################
    ##########################################

    async def do_get_context(
        self,
        user_id: str,
        channel_id: str,
        workspace_id: str | None = None,
        top_k: int | None = None,
        message_text: str | None = None,
    ) -> ContextBundle:
        """Return the top_k most relevant bio and message records, merged by similarity.

        Never raises for backend failures: a failed embedding gives an empty
        bundle, a failed namespace query contributes nothing.

        Args:
            user_id (str): The user the response is written for.
            channel_id (str): The channel the response goes to.
            workspace_id (str | None): The channel's workspace; looked up in the store if None.
            top_k (int | None): Maximum number of items; CONTEXT_TOP_K if None.
            message_text (str | None): The live message to answer, used as the query.

        Returns:
            ContextBundle: Items ordered by similarity desc, then recency desc.
        """
        top_k = self.default_top_k if top_k is None else top_k
        if top_k <= 0:
            return ContextBundle()

        embedding = await self._do_embed_query(self.build_query_text(user_id, channel_id, message_text))
        if embedding is None:
            return ContextBundle()

        if workspace_id is None:
            workspace_id = await self._do_resolve_workspace(channel_id)

        queries = [self._do_query_namespace(Namespace.for_user(user_id), embedding, top_k, RecordKind.BIO)]
        if workspace_id:
            queries.append(self._do_query_namespace(
                Namespace.for_workspace(workspace_id, channel_id), embedding, top_k, RecordKind.MESSAGE
            ))
        else:
            self.logging.warning("No workspace known for channel %s, using bio context only.", channel_id)

        hits: dict[str, ScoredRecord] = {}
        for namespace_hits in await asyncio.gather(*queries):
            for hit in namespace_hits:
                hits.setdefault(hit.record.id, hit)
        ranked = RAGClientInterface.rank(list(hits.values()))[:top_k]

        self.logging.debug(
            "Context for user %s in channel %s: %d item(s).", user_id, channel_id, len(ranked)
        )
        return ContextBundle(items=[
            ContextItem(content=hit.record.content, kind=hit.record.kind, relevance_score=hit.score)
            for hit in ranked
        ])
