"""
Integration tests for the HTTP routes, with services wired against the in-process fakes.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from fakes import make_store_data, text_vector
from server.api_server import app
from services.chat_vector_sync.VectorRecordMapper import build_vector_record
from shared.models.chat import ChatMessage, UserProfileSnapshot

API_HEADERS = {"X-API-Key": "test-api-key"}
ADMIN_HEADERS = {"X-API-Key": "test-api-key", "X-Admin-Key": "test-admin-key"}

MESSAGE = {
    "id": "m1",
    "workspaceId": "ws1",
    "channelId": "c1",
    "userId": "u1",
    "content": "Best trail app?",
    "timestamp": 200,
    "userProfile": {"displayName": "Alice", "photoURL": "https://img/a.png"},
}


@pytest.fixture
def client(stack):
    # lifespan is not run; state is wired by hand
    asyncio.run(stack.boot())
    app.state.helper_config = stack.helper_config
    app.state.sync_service = stack.sync_service
    app.state.change_feed = stack.change_feed
    app.state.migration_service = stack.migration_service
    app.state.auto_response_service = stack.auto_response_service
    yield TestClient(app)
    asyncio.run(stack.close())


class TestAuth:
    """Tests for API and admin credentials."""

    def test_missing_api_key(self, client, stack):
        response = client.post("/sync", json=MESSAGE)

        assert response.status_code == 401
        assert stack.pinecone.count() == 0

    def test_wrong_api_key(self, client):
        response = client.post("/sync", json=MESSAGE, headers={"X-API-Key": "nope"})

        assert response.status_code == 401

    def test_admin_endpoint_without_admin_key(self, client, stack):
        stack.pinecone.put("workspace-ws1", "m1", [1.0, 0.0, 0.0, 0.0], {"content": "keep me"})

        response = client.post("/vectordb/reset", headers=API_HEADERS)

        assert response.status_code == 403
        assert response.json()["success"] is False
        assert stack.pinecone.count() == 1
        assert stack.pinecone.requests == []


class TestSyncRoutes:
    """Tests for /sync, /sync/delete and /sync-user."""

    def test_sync_message(self, client, stack):
        response = client.post("/sync", json=MESSAGE, headers=API_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"success": True}
        metadata = stack.pinecone.get("workspace-ws1", "m1")["metadata"]
        assert metadata["content"] == "Best trail app?"
        assert metadata["photoURL"] == "https://img/a.png"

    def test_empty_content_is_rejected(self, client, stack):
        response = client.post("/sync", json=MESSAGE | {"content": "   "}, headers=API_HEADERS)

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert stack.openai.embed_inputs == []

    def test_malformed_body_is_rejected(self, client):
        body = {key: value for key, value in MESSAGE.items() if key != "channelId"}

        response = client.post("/sync", json=body, headers=API_HEADERS)

        assert response.status_code == 400
        assert "channelId" in response.json()["error"]

    def test_exhausted_retries_give_500(self, client, stack):
        stack.pinecone.fail_upsert_ids.add("m1")

        response = client.post("/sync", json=MESSAGE, headers=API_HEADERS)

        assert response.status_code == 500
        assert response.json()["success"] is False
        assert "m1" in response.json()["error"]

    def test_delete_message(self, client, stack):
        client.post("/sync", json=MESSAGE, headers=API_HEADERS)

        response = client.post("/sync/delete", json={"id": "m1", "workspaceId": "ws1", "channelId": "c1"}, headers=API_HEADERS)

        assert response.status_code == 200
        assert stack.pinecone.count() == 0

    def test_sync_user_reports_counts(self, client, stack):
        stack.firebase.data = make_store_data(users={"u1": {"workspaces": {"ws1": True}}})
        old_profile = UserProfileSnapshot(displayName="Alice")
        for index in range(3):
            message = ChatMessage(id=f"m{index}", workspaceId="ws1", channelId="c1", userId="u1", content=f"text {index}")
            record = build_vector_record(message, old_profile, text_vector(message.content))
            stack.pinecone.put("workspace-ws1", record.id, record.embedding, record.to_metadata())
        stack.pinecone.fail_upsert_ids.add("m1")

        response = client.post(
            "/sync-user",
            json={"userId": "u1", "userProfile": {"displayName": "Alice Cooper"}},
            headers=API_HEADERS,
        )

        assert response.status_code == 200
        assert response.json() == {"success": False, "updatedCount": 2, "totalCount": 3, "failedIds": ["m1"], "failedScans": []}


    def test_sync_user_reports_failed_scans(self, client, stack):
        stack.firebase.data = make_store_data(users={"u1": {"workspaces": {"ws1": True}}})
        stack.pinecone.fail_query_namespaces.add("workspace-ws1")

        response = client.post("/sync-user", json={"userId": "u1", "userProfile": {"displayName": "Alice"}}, headers=API_HEADERS)

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["failedScans"] == ["workspace-ws1"]

class TestMigrationRoutes:
    """Tests for /migrate, /migrate/cancel, /ai-agent/migrate and /vectordb/reset."""

    def test_migrate(self, client, stack):
        stack.firebase.data = make_store_data(
            workspaces={"ws1": {"channels": {"c1": {"messages": {
                "m1": {"userId": "u1", "content": "I love hiking", "timestamp": 100},
            }}}}},
            users={"u1": {"displayName": "Alice", "bio": "Trail runner"}},
        )

        response = client.post("/migrate", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "totalUpdated": 2,
            "messagesSynced": 1,
            "biosSynced": 1,
            "failedIds": [],
            "cancelled": False,
        }

    def test_cancel_without_running_job(self, client):
        response = client.post("/migrate/cancel", headers=ADMIN_HEADERS)

        assert response.json() == {"success": True, "cancelled": False}

    def test_agent_migration_stats(self, client, stack):
        stack.firebase.data = make_store_data(users={"u1": {
            "displayName": "Alice",
            "bio": "Trail runner",
            "aiAgentSettings": {"workspaces": {"ws1": True}},
        }})

        response = client.post("/ai-agent/migrate", headers=ADMIN_HEADERS)

        body = response.json()
        assert body["success"] is True
        assert body["stats"]["migrated"] == 1
        assert body["stats"]["users"][0]["source"] == "bio"

    def test_reset_namespace(self, client, stack):
        stack.pinecone.put("workspace-ws1", "m1", [1.0, 0.0, 0.0, 0.0], {"content": "a"})
        stack.pinecone.put("user-u1", "bio_u1", [1.0, 0.0, 0.0, 0.0], {"content": "b"})

        response = client.post("/vectordb/reset", json={"namespace": "workspace-ws1"}, headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert stack.pinecone.count("workspace-ws1") == 0
        assert stack.pinecone.count("user-u1") == 1

    def test_reset_everything(self, client, stack):
        stack.pinecone.put("workspace-ws1", "m1", [1.0, 0.0, 0.0, 0.0], {"content": "a"})
        stack.pinecone.put("user-u1", "bio_u1", [1.0, 0.0, 0.0, 0.0], {"content": "b"})

        response = client.post("/vectordb/reset", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert stack.pinecone.count() == 0

    def test_reset_with_invalid_namespace(self, client):
        response = client.post("/vectordb/reset", json={"namespace": "channel-c1"}, headers=ADMIN_HEADERS)

        assert response.status_code == 400

    def test_reset_during_migration_is_refused(self, client, stack):
        stack.pinecone.put("workspace-ws1", "m1", [1.0, 0.0, 0.0, 0.0], {"content": "a"})
        stack.migration_service._begin("reindex")
        try:
            response = client.post("/vectordb/reset", headers=ADMIN_HEADERS)
        finally:
            stack.migration_service._end()

        assert response.status_code == 409
        assert response.json()["success"] is False
        assert stack.pinecone.count() == 1


class TestAutoResponseRoute:
    """Tests for /ai/auto-response."""

    def test_auto_response(self, client, stack):
        stack.openai.reply = "Try TrailForks!"
        stack.firebase.data = make_store_data(users={"u1": {"displayName": "Alice", "bio": "Trail runner"}})

        response = client.post(
            "/ai/auto-response",
            json={"channelId": "c1", "userId": "u1", "workspaceId": "ws1", "message": "Any hiking app suggestions?"},
            headers=API_HEADERS,
        )

        assert response.status_code == 200
        assert response.json() == {"response": "Try TrailForks!"}

    def test_switched_off_agent_answers_no_content(self, client, stack):
        stack.firebase.data = make_store_data(users={"u1": {
            "displayName": "Alice",
            "aiAgentSettings": {"dmEnabled": False, "workspaces": {"ws1": True}},
        }})

        response = client.post(
            "/ai/auto-response",
            json={"channelId": "dm1", "userId": "u1", "isDM": True, "message": "Are you there?"},
            headers=API_HEADERS,
        )

        assert response.status_code == 204
        assert response.content == b""
        assert stack.openai.chat_requests == []
