from abc import abstractmethod
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from shared.clients.ClientInterface import ClientInterface
from shared.clients.rag.models.VectorRecord import Namespace, RecordFilter, ScoredRecord, VectorRecord
from shared.exceptions import TransientClientError, TransientIndexError, ValidationError
from shared.helper.HelperConfig import HelperConfig

UPSERT_BATCH_SIZE = 100  # max records per upsert call
SCORE_PRECISION = 6      # scores equal to this many decimals count as ties


class RAGClientInterface(ClientInterface):
    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self.vector_size = int(helper_config.get_number_val("RAG_VECTOR_SIZE", default=1536))
        self.scan_limit = int(helper_config.get_number_val("RAG_SCAN_LIMIT", default=1000))

    ##########################################
    ############### CHECKER ##################
    ##########################################

    def validate_records(self, records: list[VectorRecord]) -> None:
        """Reject records that must never reach the index.

        Raises:
            ValidationError: If a record has empty content or an embedding of the wrong dimension.
        """
        for record in records:
            if not record.content.strip():
                raise ValidationError(f"Record '{record.id}' has empty content.", field="content")
            if len(record.embedding) != self.vector_size:
                raise ValidationError(
                    f"Record '{record.id}' has {len(record.embedding)} dimensions, expected {self.vector_size}.",
                    field="embedding",
                )

    def check_delete_scope(self, namespace: Namespace | None) -> None:
        """Deletes work on whole partitions; a channel-narrowed namespace is rejected.

        Raises:
            ValidationError: If the namespace carries a channel.
        """
        if namespace is not None and namespace.channel_id:
            raise ValidationError(
                "delete-all works on whole namespaces; drop channel_id to clear the workspace.",
                field="channel_id",
            )

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        """
        Returns the type of the client. E.g. "rag"
        """
        return "rag"

    def _get_transient_error_class(self) -> type[TransientClientError]:
        return TransientIndexError

    ################ ENDPOINTS ##################
    @abstractmethod
    def _get_endpoint_upsert(self) -> str:
        """
        Returns the endpoint path for upsert requests (e.g. "/vectors/upsert").
        """
        pass

    @abstractmethod
    def _get_endpoint_query(self) -> str:
        """
        Returns the endpoint path for similarity queries (e.g. "/query").
        """
        pass

    @abstractmethod
    def _get_endpoint_delete(self) -> str:
        """
        Returns the endpoint path for delete requests (e.g. "/vectors/delete").
        """
        pass

    def _get_upsert_method(self) -> str:
        return "POST"

    ################ PAYLOAD BUILDER ##################
    @abstractmethod
    def get_upsert_payload(self, namespace: Namespace, records: list[VectorRecord]) -> dict:
        """
        Builds the backend-specific body for upserting records of one namespace.

        Args:
            namespace (Namespace): The partition all records belong to.
            records (list[VectorRecord]): Records with embeddings.

        Returns:
            dict: The request body.
        """
        pass

    @abstractmethod
    def get_query_payload(
        self,
        namespace: Namespace,
        query_embedding: list[float],
        top_k: int,
        record_filter: RecordFilter | None,
        include_vectors: bool,
    ) -> dict:
        """
        Builds the backend-specific body for a similarity query.

        The namespace's channel, if any, must be applied as a filter.
        """
        pass

    @abstractmethod
    def get_delete_records_payload(self, namespace: Namespace, ids: list[str]) -> dict:
        """
        Builds the backend-specific body for deleting records by id.
        """
        pass

    ################ RESPONSE PARSER ##################
    @abstractmethod
    def extract_query_matches(self, raw_response: dict) -> list[dict[str, Any]]:
        """
        Normalises a query response to a list of {"id", "score", "metadata", "values"} dicts.
        """
        pass

    ##########################################
    ################# OTHER ##################
    ##########################################

    def _to_record(self, match: dict[str, Any]) -> VectorRecord | None:
        """Convert a normalised match to a record, or None if its payload is unusable."""
        try:
            return VectorRecord.from_metadata(
                record_id=str(match.get("id", "")),
                metadata=match.get("metadata") or {},
                embedding=match.get("values"),
            )
        except (PydanticValidationError, ValueError) as e:
            self.logging.warning("Skipping index entry id=%s with unusable payload: %s", match.get("id"), e)
            return None

    @staticmethod
    def rank(hits: list[ScoredRecord]) -> list[ScoredRecord]:
        """Order hits by similarity descending; ties go to the most recent record."""
        return sorted(
            hits,
            key=lambda hit: (round(hit.score, SCORE_PRECISION), hit.record.timestamp),
            reverse=True,
        )

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_upsert(self, records: list[VectorRecord]) -> int:
        """Insert or overwrite records. Idempotent on record id.

        Records are grouped by namespace and sent in batches.

        Args:
            records (list[VectorRecord]): The records to write.

        Returns:
            int: Number of records written.

        Raises:
            ValidationError: If any record is invalid; nothing is sent in that case.
            TransientIndexError: On transport failures, rate limits or 5xx.
        """
        if not records:
            return 0
        self.validate_records(records)

        groups: dict[str, list[VectorRecord]] = {}
        for record in records:
            groups.setdefault(record.namespace.get_partition().get_key(), []).append(record)

        for namespace_key, group in groups.items():
            namespace = group[0].namespace.get_partition()
            for batch_start in range(0, len(group), UPSERT_BATCH_SIZE):
                batch = group[batch_start: batch_start + UPSERT_BATCH_SIZE]
                await self.do_request(
                    method=self._get_upsert_method(),
                    endpoint=self._get_endpoint_upsert(),
                    json=self.get_upsert_payload(namespace, batch),
                    raise_on_error=True,
                )
                self.logging.debug("Upserted %d record(s) into namespace '%s'.", len(batch), namespace_key)
        return len(records)

    async def do_query(
        self,
        namespace: Namespace,
        query_embedding: list[float],
        top_k: int,
        record_filter: RecordFilter | None = None,
        include_vectors: bool = False,
    ) -> list[ScoredRecord]:
        """Return the top_k records of a namespace most similar to the query embedding.

        An empty list is a valid answer. Transport failures raise instead.

        Args:
            namespace (Namespace): Partition to search; a channel narrows it.
            query_embedding (list[float]): The query vector.
            top_k (int): Maximum number of hits.
            record_filter (RecordFilter | None): Additional metadata constraints.
            include_vectors (bool): Return the stored embeddings with each hit.

        Returns:
            list[ScoredRecord]: Hits ordered by similarity desc, then timestamp desc.

        Raises:
            ValidationError: If the query vector has the wrong dimension.
            TransientIndexError: On transport failures, rate limits or 5xx.
        """
        if top_k <= 0:
            return []
        if len(query_embedding) != self.vector_size:
            raise ValidationError(
                f"Query vector has {len(query_embedding)} dimensions, expected {self.vector_size}.",
                field="query_embedding",
            )
        response = await self.do_request(
            method="POST",
            endpoint=self._get_endpoint_query(),
            json=self.get_query_payload(namespace, query_embedding, top_k, record_filter, include_vectors),
            raise_on_error=True,
        )
        hits: list[ScoredRecord] = []
        for match in self.extract_query_matches(response.json()):
            record = self._to_record(match)
            if record is not None:
                hits.append(ScoredRecord(record=record, score=float(match.get("score") or 0.0)))
        return self.rank(hits)[:top_k]

    async def do_delete_records(self, namespace: Namespace, ids: list[str]) -> None:
        """Delete records by id from one namespace (entity deletion)."""
        if not ids:
            return
        await self.do_request(
            method="POST",
            endpoint=self._get_endpoint_delete(),
            json=self.get_delete_records_payload(namespace.get_partition(), ids),
            raise_on_error=True,
        )

    @abstractmethod
    async def do_fetch(self, namespace: Namespace, ids: list[str]) -> list[VectorRecord]:
        """Fetch records by id, including their embeddings. Unknown ids are skipped."""
        pass

    @abstractmethod
    async def do_scan(self, namespace: Namespace, record_filter: RecordFilter, limit: int | None = None) -> list[VectorRecord]:
        """Return one page (at most limit, default scan_limit) of records matching the filter.

        Records are returned with their embeddings so they can be rewritten
        without re-embedding. Callers page by narrowing the filter.
        """
        pass

    @abstractmethod
    async def do_delete_all(self, namespace: Namespace | None = None) -> None:
        """Delete every record of a namespace, or of the whole index when namespace is None.

        Clearing the whole index is administrative; callers must gate it.
        """
        pass

    async def do_ensure_index(self) -> None:
        """Create the backing index or collection if the engine needs it. No-op by default."""
        return None
