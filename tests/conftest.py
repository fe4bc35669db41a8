"""
Shared test fixtures and configuration for pytest.
"""

import logging

import pytest

from server.core.AutoResponseService import AutoResponseService
from server.core.ContextRetriever import ContextRetriever
from services.chat_vector_sync.ChangeFeed import ChangeFeed
from services.chat_vector_sync.MigrationService import MigrationService
from services.chat_vector_sync.SyncService import SyncService
from services.chat_vector_sync.VectorRecordMapper import VectorRecordMapper
from shared.clients.embed.openai.EmbedClientOpenai import EmbedClientOpenai
from shared.clients.llm.openai.LLMClientOpenai import LLMClientOpenai
from shared.clients.rag.pinecone.RAGClientPinecone import RAGClientPinecone
from shared.clients.store.firebase.StoreClientFirebase import StoreClientFirebase
from shared.helper.HelperConfig import HelperConfig
from fakes import VECTOR_SIZE, FakeFirebase, FakeOpenAI, FakePinecone


TEST_ENV = {
    "RAG_ENGINE": "pinecone",
    "RAG_PINECONE_BASE_URL": "https://chat-index.svc.pinecone.test",
    "RAG_PINECONE_API_KEY": "pinecone-key",
    "RAG_VECTOR_SIZE": str(VECTOR_SIZE),
    "EMBED_ENGINE": "openai",
    "EMBED_OPENAI_BASE_URL": "https://api.openai.test/v1",
    "EMBED_OPENAI_API_KEY": "openai-key",
    "LLM_ENGINE": "openai",
    "LLM_OPENAI_BASE_URL": "https://api.openai.test/v1",
    "LLM_OPENAI_API_KEY": "openai-key",
    "STORE_ENGINE": "firebase",
    "STORE_FIREBASE_BASE_URL": "https://chat-app.firebaseio.test",
    "STORE_FIREBASE_AUTH_TOKEN": "firebase-token",
    "SYNC_RETRY_ATTEMPTS": "3",
    "SYNC_RETRY_INITIAL_DELAY_MS": "1",
    "SYNC_RETRY_MAX_DELAY_MS": "2",
    "MIGRATION_CONCURRENCY": "4",
    "MIGRATION_DELAY_MS": "0",
    "CONTEXT_TOP_K": "5",
    "APP_API_KEY": "test-api-key",
    "APP_ADMIN_API_KEY": "test-admin-key",
}


@pytest.fixture(autouse=True)
def env(monkeypatch):
    """Point every client at the in-process fakes."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("STORE_WATCH_ENABLED", raising=False)


@pytest.fixture
def helper_config() -> HelperConfig:
    return HelperConfig(logger=logging.getLogger("chat_vector_sync.tests"))


class Stack:
    """All clients and services wired against the fakes. Boot inside the test's event loop."""

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.pinecone = FakePinecone()
        self.openai = FakeOpenAI()
        self.firebase = FakeFirebase()

        self.rag_client = RAGClientPinecone(helper_config)
        self.embed_client = EmbedClientOpenai(helper_config)
        self.llm_client = LLMClientOpenai(helper_config)
        self.store_client = StoreClientFirebase(helper_config)

        self.mapper = VectorRecordMapper(helper_config=helper_config, embed_client=self.embed_client)
        self.sync_service = SyncService(
            helper_config=helper_config,
            mapper=self.mapper,
            rag_client=self.rag_client,
            store_client=self.store_client,
        )
        self.change_feed = ChangeFeed(helper_config=helper_config)
        self.sync_service.register(self.change_feed)
        self.migration_service = MigrationService(
            helper_config=helper_config,
            sync_service=self.sync_service,
            rag_client=self.rag_client,
            store_client=self.store_client,
            llm_client=self.llm_client,
        )
        self.context_retriever = ContextRetriever(
            helper_config=helper_config,
            rag_client=self.rag_client,
            embed_client=self.embed_client,
            store_client=self.store_client,
        )
        self.auto_response_service = AutoResponseService(
            helper_config=helper_config,
            context_retriever=self.context_retriever,
            llm_client=self.llm_client,
            store_client=self.store_client,
        )

    async def boot(self) -> None:
        await self.rag_client.boot(transport=self.pinecone.transport())
        await self.embed_client.boot(transport=self.openai.transport())
        await self.llm_client.boot(transport=self.openai.transport())
        await self.store_client.boot(transport=self.firebase.transport())

    async def close(self) -> None:
        for client in (self.rag_client, self.embed_client, self.llm_client, self.store_client):
            await client.close()


@pytest.fixture
def stack(helper_config) -> Stack:
    return Stack(helper_config)
