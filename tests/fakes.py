"""In-process emulators of the external services, served through httpx.MockTransport.

Each fake keeps its state in plain dicts so tests can seed and inspect it.
"""

import hashlib
import json
import math
from typing import Any
from urllib.parse import parse_qs

import httpx

VECTOR_SIZE = 4


def cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def text_vector(text: str, size: int = VECTOR_SIZE) -> list[float]:
    """Deterministic, non-zero pseudo embedding of a text."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(digest[i] + 1) / 256.0 for i in range(size)]


def _field_matches(metadata: dict, key: str, condition: Any) -> bool:
    if not isinstance(condition, dict):
        condition = {"$eq": condition}
    for op, value in condition.items():
        if op == "$eq" and not (key in metadata and metadata[key] == value):
            return False
        if op == "$ne" and metadata.get(key) == value:
            return False
        if op == "$in" and not (key in metadata and metadata[key] in value):
            return False
        if op == "$nin" and key in metadata and metadata[key] in value:
            return False
        if op == "$exists" and (key in metadata) != value:
            return False
    return True


def pinecone_filter_matches(metadata: dict, flt: dict | None) -> bool:
    """Evaluate a Pinecone metadata filter; $ne and $nin also match records lacking the field."""
    if not flt:
        return True
    for key, condition in flt.items():
        if key == "$and":
            if not all(pinecone_filter_matches(metadata, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(pinecone_filter_matches(metadata, sub) for sub in condition):
                return False
        elif not _field_matches(metadata, key, condition):
            return False
    return True


class FakePinecone:
    """Pinecone data plane: namespaces -> {id: {"values", "metadata"}}."""

    def __init__(self, dimension: int = VECTOR_SIZE) -> None:
        self.dimension = dimension
        self.namespaces: dict[str, dict[str, dict]] = {}
        self.requests: list[tuple[str, str]] = []
        self.fail_upsert_ids: set[str] = set()
        self.fail_query_namespaces: set[str] = set()
        self.unreachable = False

    ##########################################
    ################ HELPERS #################
    ##########################################

    def put(self, namespace: str, record_id: str, values: list[float], metadata: dict) -> None:
        self.namespaces.setdefault(namespace, {})[record_id] = {"values": list(values), "metadata": dict(metadata)}

    def get(self, namespace: str, record_id: str) -> dict | None:
        return self.namespaces.get(namespace, {}).get(record_id)

    def count(self, namespace: str | None = None) -> int:
        if namespace is not None:
            return len(self.namespaces.get(namespace, {}))
        return sum(len(vectors) for vectors in self.namespaces.values())

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    ##########################################
    ################ HANDLER #################
    ##########################################

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        if self.unreachable:
            raise httpx.ConnectError("index unreachable", request=request)
        body = json.loads(request.content) if request.content else {}

        if path == "/vectors/upsert":
            vectors = body.get("vectors", [])
            if any(vector["id"] in self.fail_upsert_ids for vector in vectors):
                return httpx.Response(503, json={"message": "unavailable"})
            for vector in vectors:
                if len(vector["values"]) != self.dimension:
                    return httpx.Response(400, json={"message": "dimension mismatch"})
                self.put(body.get("namespace", ""), vector["id"], vector["values"], vector.get("metadata") or {})
            return httpx.Response(200, json={"upsertedCount": len(vectors)})

        if path == "/query":
            namespace = body.get("namespace", "")
            if namespace in self.fail_query_namespaces:
                return httpx.Response(503, json={"message": "unavailable"})
            matches = []
            for record_id, vector in self.namespaces.get(namespace, {}).items():
                if not pinecone_filter_matches(vector["metadata"], body.get("filter")):
                    continue
                match = {"id": record_id, "score": cosine(body["vector"], vector["values"])}
                if body.get("includeMetadata"):
                    match["metadata"] = vector["metadata"]
                if body.get("includeValues"):
                    match["values"] = vector["values"]
                matches.append(match)
            matches.sort(key=lambda match: match["score"], reverse=True)
            return httpx.Response(200, json={"matches": matches[: body.get("topK", 10)], "namespace": namespace})

        if path == "/vectors/delete":
            namespace = body.get("namespace", "")
            if body.get("deleteAll"):
                self.namespaces.pop(namespace, None)
            else:
                for record_id in body.get("ids", []):
                    self.namespaces.get(namespace, {}).pop(record_id, None)
            return httpx.Response(200, json={})

        if path == "/vectors/fetch":
            query = parse_qs(request.url.query.decode())
            namespace = (query.get("namespace") or [""])[0]
            vectors = {
                record_id: {"id": record_id, **self.namespaces[namespace][record_id]}
                for record_id in query.get("ids", [])
                if record_id in self.namespaces.get(namespace, {})
            }
            return httpx.Response(200, json={"vectors": vectors, "namespace": namespace})

        if path == "/describe_index_stats":
            return httpx.Response(200, json={
                "namespaces": {ns: {"vectorCount": len(v)} for ns, v in self.namespaces.items() if v},
                "dimension": self.dimension,
                "totalVectorCount": self.count(),
            })

        return httpx.Response(404, json={"message": f"unknown path {path}"})


class FakeOpenAI:
    """OpenAI embeddings and chat completions."""

    def __init__(self, dimension: int = VECTOR_SIZE, reply: str = "Sounds great!") -> None:
        self.dimension = dimension
        self.reply = reply
        self.vectors: dict[str, list[float]] = {}
        self.embed_inputs: list[str] = []
        self.chat_requests: list[dict] = []
        self.fail_texts: set[str] = set()
        self.fail_embeddings = False
        self.fail_chat = False
        self.wrong_dimension = False

    def vector_for(self, text: str) -> list[float]:
        if text in self.vectors:
            return self.vectors[text]
        return text_vector(text, self.dimension)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else {}

        if path.endswith("/embeddings"):
            texts = body["input"] if isinstance(body["input"], list) else [body["input"]]
            self.embed_inputs.extend(texts)
            if self.fail_embeddings or any(text in self.fail_texts for text in texts):
                return httpx.Response(500, json={"error": {"message": "server error"}})
            data = []
            # answer in reverse order, clients must sort by index
            for index, text in reversed(list(enumerate(texts))):
                vector = self.vector_for(text)
                if self.wrong_dimension:
                    vector = vector + [0.5]
                data.append({"object": "embedding", "index": index, "embedding": vector})
            return httpx.Response(200, json={"object": "list", "data": data, "model": body.get("model")})

        if path.endswith("/chat/completions"):
            self.chat_requests.append(body)
            if self.fail_chat:
                return httpx.Response(503, json={"error": {"message": "overloaded"}})
            return httpx.Response(200, json={
                "choices": [{"index": 0, "message": {"role": "assistant", "content": self.reply}}],
            })

        if path.endswith("/models"):
            return httpx.Response(200, json={"data": []})

        return httpx.Response(404, json={"error": {"message": f"unknown path {path}"}})


class FakeFirebase:
    """Firebase Realtime Database REST API over a nested dict."""

    def __init__(self, data: dict | None = None) -> None:
        self.data: dict = data or {}
        self.streams: dict[str, str] = {}
        self.stream_status = 200
        self.auth_params: list[str | None] = []
        self.paths: list[str] = []
        # node path -> status answered instead of the node
        self.fail_paths: dict[str, int] = {}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def node(self, path: str) -> Any:
        node: Any = self.data
        for segment in [segment for segment in path.strip("/").split("/") if segment]:
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return node

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.auth_params.append(request.url.params.get("auth"))
        path = request.url.path
        if not path.endswith(".json"):
            return httpx.Response(404, json={"error": "not found"})
        node_path = path[: -len(".json")].strip("/")
        self.paths.append(node_path)
        if request.headers.get("accept") == "text/event-stream":
            body = self.streams.get(node_path, "")
            return httpx.Response(self.stream_status, headers={"content-type": "text/event-stream"}, content=body.encode())
        if node_path in self.fail_paths:
            return httpx.Response(self.fail_paths[node_path], json={"error": "failed"})
        node = self.node(node_path)
        if request.url.params.get("shallow") == "true" and isinstance(node, dict):
            node = {key: True for key in node}
        return httpx.Response(200, content=json.dumps(node).encode(), headers={"content-type": "application/json"})


def make_store_data(workspaces: dict | None = None, users: dict | None = None) -> dict:
    return {"workspaces": workspaces or {}, "users": users or {}}
