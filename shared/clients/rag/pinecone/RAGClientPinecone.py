from typing import Any

from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.VectorRecord import Namespace, RecordFilter, VectorRecord
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig

PINECONE_API_VERSION = "2024-07"
FETCH_BATCH_SIZE = 100  # ids per fetch request, keeps the query string short


class RAGClientPinecone(RAGClientInterface):
    """Index client for the Pinecone data plane (REST).

    Namespaces map one to one onto Pinecone namespaces; a channel is a
    metadata filter inside its workspace namespace.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._base_url = self.get_config_val("BASE_URL", default=None, val_type="string")
        self._api_key = self.get_config_val("API_KEY", default=None, val_type="string")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Pinecone"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=None),
            EnvConfig(env_key="API_KEY", val_type="string", default=None),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        return {"Api-Key": self._api_key, "X-Pinecone-API-Version": PINECONE_API_VERSION}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return "/describe_index_stats"

    def _get_endpoint_upsert(self) -> str:
        return "/vectors/upsert"

    def _get_endpoint_query(self) -> str:
        return "/query"

    def _get_endpoint_delete(self) -> str:
        return "/vectors/delete"

    def _get_endpoint_fetch(self) -> str:
        return "/vectors/fetch"

    ##########################################
    ########### PAYLOAD BUILDER ##############
    ##########################################

    def build_filter(self, namespace: Namespace, record_filter: RecordFilter | None) -> dict | None:
        """Translate the channel narrowing and a RecordFilter into Pinecone's filter language."""
        conditions: list[dict] = []
        channel_id = namespace.channel_id or (record_filter.channel_id if record_filter else None)
        if channel_id:
            conditions.append({"channelId": {"$eq": channel_id}})
        if record_filter is not None:
            if record_filter.workspace_id:
                conditions.append({"workspaceId": {"$eq": record_filter.workspace_id}})
            if record_filter.owner_id:
                conditions.append({"ownerId": {"$eq": record_filter.owner_id}})
            if record_filter.owner_missing:
                conditions.append({"ownerId": {"$exists": False}})
            if record_filter.kinds:
                conditions.append({"kind": {"$in": [kind.value for kind in record_filter.kinds]}})
            if record_filter.display_name:
                # legacy records carry the sender as "userName" or "userDisplayName"
                conditions.append({"$or": [
                    {"displayName": {"$eq": record_filter.display_name}},
                    {"userName": {"$eq": record_filter.display_name}},
                    {"userDisplayName": {"$eq": record_filter.display_name}},
                ]})
            if record_filter.profile_hash_not:
                conditions.append({"profileHash": {"$ne": record_filter.profile_hash_not}})
            if record_filter.exclude_ids:
                conditions.append({"recordId": {"$nin": list(record_filter.exclude_ids)}})
        if not conditions:
            return None
        if len(conditions) == 1:
            return conditions[0]
        return {"$and": conditions}

    def get_upsert_payload(self, namespace: Namespace, records: list[VectorRecord]) -> dict:
        return {
            "namespace": namespace.get_key(),
            "vectors": [
                {"id": record.id, "values": record.embedding, "metadata": record.to_metadata()}
                for record in records
            ],
        }

    def get_query_payload(
        self,
        namespace: Namespace,
        query_embedding: list[float],
        top_k: int,
        record_filter: RecordFilter | None,
        include_vectors: bool,
    ) -> dict:
        payload = {
            "namespace": namespace.get_key(),
            "vector": query_embedding,
            "topK": top_k,
            "includeMetadata": True,
            "includeValues": include_vectors,
        }
        filter_ = self.build_filter(namespace, record_filter)
        if filter_ is not None:
            payload["filter"] = filter_
        return payload

    def get_delete_records_payload(self, namespace: Namespace, ids: list[str]) -> dict:
        return {"namespace": namespace.get_key(), "ids": list(ids)}

    ##########################################
    ########### RESPONSE PARSER ##############
    ##########################################

    def extract_query_matches(self, raw_response: dict) -> list[dict[str, Any]]:
        return [
            {
                "id": match.get("id"),
                "score": match.get("score", 0.0),
                "metadata": match.get("metadata") or {},
                "values": match.get("values") or [],
            }
            for match in raw_response.get("matches", [])
        ]

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_fetch(self, namespace: Namespace, ids: list[str]) -> list[VectorRecord]:
        records: list[VectorRecord] = []
        for batch_start in range(0, len(ids), FETCH_BATCH_SIZE):
            batch = ids[batch_start: batch_start + FETCH_BATCH_SIZE]
            response = await self.do_request(
                method="GET",
                endpoint=self._get_endpoint_fetch(),
                params={"ids": batch, "namespace": namespace.get_partition().get_key()},
                raise_on_error=True,
            )
            vectors: dict = response.json().get("vectors") or {}
            for vector_id in batch:
                vector = vectors.get(vector_id)
                if vector is None:
                    continue
                record = self._to_record({
                    "id": vector_id,
                    "metadata": vector.get("metadata"),
                    "values": vector.get("values"),
                })
                if record is not None:
                    records.append(record)
        return records

    async def do_scan(self, namespace: Namespace, record_filter: RecordFilter, limit: int | None = None) -> list[VectorRecord]:
        # Pinecone has no filtered scroll; a query with an arbitrary non-zero
        # vector returns filter matches in similarity order, which we ignore.
        anchor = [0.0] * self.vector_size
        anchor[0] = 1.0
        hits = await self.do_query(
            namespace=namespace,
            query_embedding=anchor,
            top_k=limit or self.scan_limit,
            record_filter=record_filter,
            include_vectors=True,
        )
        return [hit.record for hit in hits]

    async def do_list_namespaces(self) -> list[str]:
        """Return the keys of all namespaces currently holding vectors."""
        response = await self.do_request(
            method="POST",
            endpoint=self._get_endpoint_healthcheck(),
            json={},
            raise_on_error=True,
        )
        return list((response.json().get("namespaces") or {}).keys())

    async def do_delete_all(self, namespace: Namespace | None = None) -> None:
        self.check_delete_scope(namespace)
        if namespace is not None:
            namespace_keys = [namespace.get_key()]
        else:
            namespace_keys = await self.do_list_namespaces()
        for namespace_key in namespace_keys:
            await self.do_request(
                method="POST",
                endpoint=self._get_endpoint_delete(),
                json={"deleteAll": True, "namespace": namespace_key},
                raise_on_error=True,
            )
            self.logging.info("Deleted all vectors in Pinecone namespace '%s'.", namespace_key or "<default>")
