import uuid
from typing import Any

from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.VectorRecord import RECORD_SOURCE, Namespace, RecordFilter, VectorRecord
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig


def make_point_id(record_id: str) -> str:
    """Build a deterministic UUID5 point ID for a record.

    Qdrant only accepts integers and UUIDs as point ids; UUID5 keeps the
    mapping stable so re-syncing overwrites rather than duplicates.
    """
    return str(uuid.uuid5(uuid.NAMESPACE_OID, f"chat-vector-sync:{record_id}"))


class RAGClientQdrant(RAGClientInterface):
    """Index client for Qdrant (REST).

    Qdrant has no namespaces, so every point carries its namespace key in
    the payload and every request filters on it.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._base_url = self.get_config_val("BASE_URL", default=None, val_type="string")
        self._api_key = self.get_config_val("API_KEY", default="", val_type="string")
        self._collection_name = self.get_config_val("COLLECTION", default=None, val_type="string")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Qdrant"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=None),
            EnvConfig(env_key="API_KEY", val_type="string", default=""),
            EnvConfig(env_key="COLLECTION", val_type="string", default=None),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        if self._api_key:
            return {"api-key": f"{self._api_key}"}
        else:
            return {}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return "/healthz"

    def _get_endpoint_upsert(self) -> str:
        return f"/collections/{self._collection_name}/points"

    def _get_upsert_method(self) -> str:
        return "PUT"

    def _get_endpoint_query(self) -> str:
        return f"/collections/{self._collection_name}/points/search"

    def _get_endpoint_delete(self) -> str:
        return f"/collections/{self._collection_name}/points/delete"

    def _get_endpoint_scroll(self) -> str:
        return f"/collections/{self._collection_name}/points/scroll"

    def _get_endpoint_fetch(self) -> str:
        return f"/collections/{self._collection_name}/points"

    def _get_endpoint_check_collection_existence(self) -> str:
        return f"/collections/{self._collection_name}/exists"

    def _get_endpoint_create_collection(self) -> str:
        return f"/collections/{self._collection_name}"

    ##########################################
    ########### PAYLOAD BUILDER ##############
    ##########################################

    def build_filter(self, namespace: Namespace | None, record_filter: RecordFilter | None) -> dict:
        """Translate a namespace and a RecordFilter into a Qdrant filter.

        The default namespace selects points without a namespace field, which
        were written by other tools and so carry no source marker either.
        """
        must: list[dict] = []
        must_not: list[dict] = []
        should: list[dict] = []

        if namespace is not None and namespace.is_default:
            must.append({"is_empty": {"key": "namespace"}})
        else:
            must.append({"key": "source", "match": {"value": RECORD_SOURCE}})
            if namespace is not None:
                must.append({"key": "namespace", "match": {"value": namespace.get_partition().get_key()}})
        channel_id = (namespace.channel_id if namespace else None) or (record_filter.channel_id if record_filter else None)
        if channel_id:
            must.append({"key": "channelId", "match": {"value": channel_id}})

        if record_filter is not None:
            if record_filter.workspace_id:
                must.append({"key": "workspaceId", "match": {"value": record_filter.workspace_id}})
            if record_filter.owner_id:
                must.append({"key": "ownerId", "match": {"value": record_filter.owner_id}})
            if record_filter.owner_missing:
                must.append({"is_empty": {"key": "ownerId"}})
            if record_filter.kinds:
                must.append({"key": "kind", "match": {"any": [kind.value for kind in record_filter.kinds]}})
            if record_filter.display_name:
                should.append({"key": "displayName", "match": {"value": record_filter.display_name}})
                should.append({"key": "userName", "match": {"value": record_filter.display_name}})
                should.append({"key": "userDisplayName", "match": {"value": record_filter.display_name}})
            if record_filter.profile_hash_not:
                must_not.append({"key": "profileHash", "match": {"value": record_filter.profile_hash_not}})
            if record_filter.exclude_ids:
                must_not.append({"key": "recordId", "match": {"any": list(record_filter.exclude_ids)}})

        result: dict = {"must": must}
        if must_not:
            result["must_not"] = must_not
        if should:
            result["should"] = should
        return result

    def get_upsert_payload(self, namespace: Namespace, records: list[VectorRecord]) -> dict:
        return {
            "points": [
                {"id": make_point_id(record.id), "vector": record.embedding, "payload": record.to_metadata()}
                for record in records
            ]
        }

    def get_query_payload(
        self,
        namespace: Namespace,
        query_embedding: list[float],
        top_k: int,
        record_filter: RecordFilter | None,
        include_vectors: bool,
    ) -> dict:
        return {
            "vector": query_embedding,
            "filter": self.build_filter(namespace, record_filter),
            "limit": top_k,
            "with_payload": True,
            "with_vector": include_vectors,
        }

    def get_delete_records_payload(self, namespace: Namespace, ids: list[str]) -> dict:
        # point ids are shared across namespaces, so the namespace must match as well
        point_filter = self.build_filter(namespace, None)
        point_filter["must"].append({"has_id": [make_point_id(record_id) for record_id in ids]})
        return {"filter": point_filter}

    ##########################################
    ########### RESPONSE PARSER ##############
    ##########################################

    def _normalise_point(self, point: dict) -> dict[str, Any]:
        return {
            "id": point.get("id"),
            "score": point.get("score", 0.0),
            "metadata": point.get("payload") or {},
            "values": point.get("vector") or [],
        }

    def extract_query_matches(self, raw_response: dict) -> list[dict[str, Any]]:
        return [self._normalise_point(point) for point in raw_response.get("result", [])]

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_existence_check(self) -> bool:
        """Check if the collection exists in Qdrant."""
        resp = await self.do_request(
            method="GET",
            endpoint=self._get_endpoint_check_collection_existence(),
            raise_on_error=True,
        )
        return bool(resp.json().get("result", {}).get("exists"))

    async def do_ensure_index(self) -> None:
        if await self.do_existence_check():
            self.logging.info("Qdrant collection %r already exists.", self._collection_name)
            return
        await self.do_request(
            method="PUT",
            json={"vectors": {"size": self.vector_size, "distance": "Cosine"}},
            endpoint=self._get_endpoint_create_collection(),
            raise_on_error=True,
        )
        self.logging.info("Created Qdrant collection %r (size=%d).", self._collection_name, self.vector_size)

    async def do_fetch(self, namespace: Namespace, ids: list[str]) -> list[VectorRecord]:
        if not ids:
            return []
        response = await self.do_request(
            method="POST",
            endpoint=self._get_endpoint_fetch(),
            json={"ids": [make_point_id(record_id) for record_id in ids], "with_payload": True, "with_vector": True},
            raise_on_error=True,
        )
        partition_key = namespace.get_partition().get_key()
        records: list[VectorRecord] = []
        for point in response.json().get("result", []):
            if ((point.get("payload") or {}).get("namespace") or "") != partition_key:
                continue
            record = self._to_record(self._normalise_point(point))
            if record is not None:
                records.append(record)
        return records

    async def do_scan(self, namespace: Namespace, record_filter: RecordFilter, limit: int | None = None) -> list[VectorRecord]:
        response = await self.do_request(
            method="POST",
            endpoint=self._get_endpoint_scroll(),
            json={
                "filter": self.build_filter(namespace, record_filter),
                "limit": limit or self.scan_limit,
                "with_payload": True,
                "with_vector": True,
            },
            raise_on_error=True,
        )
        points = response.json().get("result", {}).get("points", [])
        records = [self._to_record(self._normalise_point(point)) for point in points]
        return [record for record in records if record is not None]

    async def do_delete_all(self, namespace: Namespace | None = None) -> None:
        self.check_delete_scope(namespace)
        await self.do_request(
            method="POST",
            endpoint=self._get_endpoint_delete(),
            json={"filter": self.build_filter(namespace, None)},
            raise_on_error=True,
        )
        self.logging.info(
            "Deleted all points in Qdrant collection %r%s.",
            self._collection_name,
            f" for namespace '{namespace.get_key()}'" if namespace else "",
        )
