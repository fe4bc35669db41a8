"""Migration and backfill jobs.

Full reindex walks the whole canonical store into the index; the agent
profile migration gives every user without one a bio record. Only one job
(or index reset) runs at a time. Jobs are cancellable: a cancelled job
issues no new writes, lets in-flight ones finish and reports what it did.
"""

import asyncio

from services.chat_vector_sync.SyncService import SyncService
from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.VectorRecord import Namespace
from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.exceptions import (
    ClientRequestError,
    MigrationInProgressError,
    SyncFailure,
    TransientClientError,
    TransientStoreError,
    ValidationError,
)
from shared.helper.HelperConfig import HelperConfig
from shared.helper.retry import RetryConfig, retry_async
from shared.models.chat import ChatMessage, UserProfileSnapshot
from shared.models.results import AgentMigrationResult, ReindexResult, UserMigrationTally

PERSONA_MESSAGE_LIMIT = 30  # historical messages fed into a persona summary

PERSONA_PROMPT = """Based on the following messages written by a user, create a concise summary of their persona, communication style, and typical behavior. Focus on patterns, preferences, and characteristic traits.

User Messages:
{messages}

Describe their communication style and tone, the topics they discuss, how they interact with others, and any notable expertise. Keep the summary concise."""


class MigrationService:
    """Runs the batch jobs with bounded concurrency and an inter-call delay."""

    def __init__(
        self,
        helper_config: HelperConfig,
        sync_service: SyncService,
        rag_client: RAGClientInterface,
        store_client: StoreClientInterface,
        llm_client: LLMClientInterface | None = None,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._sync_service = sync_service
        self._rag_client = rag_client
        self._store_client = store_client
        self._llm_client = llm_client
        self.concurrency = max(1, int(helper_config.get_number_val("MIGRATION_CONCURRENCY", default=4)))
        self.delay_ms = float(helper_config.get_number_val("MIGRATION_DELAY_MS", default=100))
        self._retry_config = RetryConfig.from_config(helper_config)

        self._running_job: str | None = None
        self._cancel = asyncio.Event()

    ##########################################
    ################# STATE ##################
    ##########################################

    def is_running(self) -> bool:
        return self._running_job is not None

    def get_running_job(self) -> str | None:
        return self._running_job

    def request_cancel(self) -> bool:
        """Ask the running job to stop issuing writes.

        Returns:
            bool: True if a job was running.
        """
        if not self.is_running():
            return False
        self.logging.warning("Cancellation requested for job '%s'.", self._running_job)
        self._cancel.set()
        return True

    def _begin(self, job: str) -> None:
        # check and set without an await in between
        if self._running_job is not None:
            raise MigrationInProgressError(f"Cannot start '{job}': '{self._running_job}' is running.")
        self._running_job = job
        self._cancel.clear()

    def _end(self) -> None:
        self._running_job = None
        self._cancel.clear()

    async def _do_pace(self) -> None:
        if self.delay_ms > 0:
            await asyncio.sleep(self.delay_ms / 1000.0)

    async def _do_store_read(self, operation, operation_name: str):
        return await retry_async(
            operation,
            config=self._retry_config,
            logger=self.logging,
            retry_on=(TransientStoreError,),
            operation_name=operation_name,
        )

    ##########################################
    ############## FULL REINDEX ##############
    ##########################################

    async def do_full_reindex(self) -> ReindexResult:
        """Re-sync every message (threads included) of every workspace, then every bio.

        Stable record ids make the job safe to rerun after a crash or cancel.

        Raises:
            MigrationInProgressError: If another job or a reset is running.
        """
        self._begin("reindex")
        try:
            return await self._do_full_reindex()
        finally:
            self._end()

    async def _do_full_reindex(self) -> ReindexResult:
        result = ReindexResult()
        profiles: dict[str, UserProfileSnapshot] = {}
        sem = asyncio.Semaphore(self.concurrency)
        self.logging.info("Starting full reindex...")

        try:
            workspace_ids = await self._do_store_read(self._store_client.do_fetch_workspace_ids, "fetch workspaces")
        except (TransientStoreError, ClientRequestError) as e:
            self.logging.error("Cannot list workspaces, reindexing bios only: %s", e)
            result.failed_ids.append("workspaces")
            workspace_ids = []

        for workspace_id in workspace_ids:
            if self._cancel.is_set():
                break
            result.workspaces += 1
            try:
                channel_ids = await self._do_store_read(
                    lambda: self._store_client.do_fetch_channel_ids(workspace_id),
                    f"fetch channels of {workspace_id}",
                )
            except (TransientStoreError, ClientRequestError) as e:
                self.logging.error("Cannot list channels of workspace %s, skipping it: %s", workspace_id, e)
                result.failed_ids.append(f"workspace {workspace_id}")
                continue
            for channel_id in channel_ids:
                if self._cancel.is_set():
                    break
                result.channels += 1
                try:
                    messages = await self._do_store_read(
                        lambda: self._store_client.do_fetch_messages(workspace_id, channel_id),
                        f"fetch messages of {workspace_id}/{channel_id}",
                    )
                except (TransientStoreError, ClientRequestError) as e:
                    self.logging.error("Cannot read channel %s/%s, skipping it: %s", workspace_id, channel_id, e)
                    result.failed_ids.append(f"channel {workspace_id}/{channel_id}")
                    continue
                outcomes = await asyncio.gather(
                    *[self._do_reindex_message(message, profiles, sem) for message in messages],
                    return_exceptions=True,
                )
                for message, outcome in zip(messages, outcomes):
                    if outcome is True:
                        result.messages_synced += 1
                    elif isinstance(outcome, BaseException):
                        self.logging.error("Reindex of message %s failed: %s", message.id, outcome)
                        result.failed_ids.append(message.id)
                self.logging.info(
                    "Reindexed channel %s/%s: %d message(s).", workspace_id, channel_id, len(messages)
                )

        if not self._cancel.is_set():
            try:
                user_ids = await self._do_store_read(self._store_client.do_fetch_user_ids, "fetch users")
            except (TransientStoreError, ClientRequestError) as e:
                self.logging.error("Cannot list users, no bios reindexed: %s", e)
                result.failed_ids.append("users")
                user_ids = []
            outcomes = await asyncio.gather(
                *[self._do_reindex_bio(user_id, profiles, sem) for user_id in user_ids],
                return_exceptions=True,
            )
            for user_id, outcome in zip(user_ids, outcomes):
                if outcome is True:
                    result.bios_synced += 1
                elif isinstance(outcome, BaseException):
                    self.logging.error("Reindex of bio for user %s failed: %s", user_id, outcome)
                    result.failed_ids.append(f"bio_{user_id}")

        result.cancelled = self._cancel.is_set()
        self.logging.info(
            "Full reindex %s: %d message(s), %d bio(s), %d failure(s).",
            "cancelled" if result.cancelled else "complete",
            result.messages_synced,
            result.bios_synced,
            len(result.failed_ids),
        )
        return result

    async def _do_get_profile(self, user_id: str, profiles: dict[str, UserProfileSnapshot]) -> UserProfileSnapshot:
        if user_id not in profiles:
            profile = await self._do_store_read(
                lambda: self._store_client.do_fetch_user_profile(user_id),
                f"fetch profile {user_id}",
            )
            profiles[user_id] = profile or UserProfileSnapshot()
        return profiles[user_id]

    async def _do_reindex_message(
        self,
        message: ChatMessage,
        profiles: dict[str, UserProfileSnapshot],
        sem: asyncio.Semaphore,
    ) -> bool:
        async with sem:
            if self._cancel.is_set():
                return False
            profile = await self._do_get_profile(message.user_id, profiles)
            await self._sync_service.do_sync_message(message, profile)
            await self._do_pace()
            return True

    async def _do_reindex_bio(
        self,
        user_id: str,
        profiles: dict[str, UserProfileSnapshot],
        sem: asyncio.Semaphore,
    ) -> bool:
        async with sem:
            if self._cancel.is_set():
                return False
            profile = await self._do_get_profile(user_id, profiles)
            if not profile.bio:
                return False
            await self._sync_service.do_sync_bio(user_id, profile)
            await self._do_pace()
            return True

    ##########################################
    ######## AGENT PROFILE MIGRATION #########
    ##########################################

    async def do_migrate_agent_profiles(self) -> AgentMigrationResult:
        """Give every user lacking a bio record one, built from the profile bio or a persona summary.

        One user's failure is tallied and never aborts the batch.

        Raises:
            MigrationInProgressError: If another job or a reset is running.
        """
        self._begin("migrate-agent")
        try:
            return await self._do_migrate_agent_profiles()
        finally:
            self._end()

    async def _do_migrate_agent_profiles(self) -> AgentMigrationResult:
        user_ids = await self._store_client.do_fetch_user_ids()
        result = AgentMigrationResult(total_users=len(user_ids))
        sem = asyncio.Semaphore(self.concurrency)
        self.logging.info("Starting agent profile migration for %d user(s)...", len(user_ids))

        tallies = await asyncio.gather(*[self._do_migrate_user(user_id, sem) for user_id in user_ids])
        for tally in tallies:
            if tally is not None:
                result.add(tally)

        result.cancelled = self._cancel.is_set()
        self.logging.info(
            "Agent profile migration %s: %d migrated, %d skipped, %d failed%s.",
            "cancelled" if result.cancelled else "complete",
            result.migrated,
            result.skipped,
            result.failed,
            f" ({', '.join(result.failed_ids)})" if result.failed_ids else "",
        )
        return result

    async def _do_migrate_user(self, user_id: str, sem: asyncio.Semaphore) -> UserMigrationTally | None:
        async with sem:
            if self._cancel.is_set():
                return None
            try:
                return await self._do_migrate_user_now(user_id)
            except (SyncFailure, ValidationError, TransientClientError, ClientRequestError, ValueError) as e:
                self.logging.error("Agent profile migration for user %s failed: %s", user_id, e)
                return UserMigrationTally(user_id=user_id, status="failed", error=str(e))
            finally:
                await self._do_pace()

    async def _do_migrate_user_now(self, user_id: str) -> UserMigrationTally:
        namespace = Namespace.for_user(user_id)
        if await self._rag_client.do_fetch(namespace, [f"bio_{user_id}"]):
            return UserMigrationTally(user_id=user_id, status="skipped", source="existing")

        profile = await self._store_client.do_fetch_user_profile(user_id)
        if profile is None:
            return UserMigrationTally(user_id=user_id, status="skipped", error="user has no profile")

        if profile.bio:
            await self._sync_service.do_sync_bio(user_id, profile)
            return UserMigrationTally(user_id=user_id, status="migrated", source="bio")

        persona = await self._do_generate_persona(user_id)
        if not persona:
            return UserMigrationTally(user_id=user_id, status="skipped", error="no bio and no messages")
        if self._cancel.is_set():
            return UserMigrationTally(user_id=user_id, status="skipped", error="cancelled")
        await self._sync_service.do_sync_bio(user_id, profile, bio_text=persona)
        return UserMigrationTally(user_id=user_id, status="migrated", source="persona")

    async def _do_generate_persona(self, user_id: str) -> str | None:
        """Summarise the user's recent messages into a persona text, or None without messages or LLM."""
        if self._llm_client is None:
            return None
        messages = await self._store_client.do_fetch_user_messages(user_id, limit=PERSONA_MESSAGE_LIMIT)
        if not messages:
            return None
        prompt = PERSONA_PROMPT.format(messages="\n".join(message.content for message in messages))
        persona = await self._llm_client.do_chat([
            {"role": "system", "content": "You are an expert at analyzing communication patterns and personality traits."},
            {"role": "user", "content": prompt},
        ])
        return persona.strip() or None

    ##########################################
    ################# RESET ##################
    ##########################################

    async def do_reset_index(self, namespace: Namespace | None = None) -> None:
        """Delete every record of a namespace, or of the whole index.

        Raises:
            MigrationInProgressError: If a job is running.
        """
        self._begin("reset")
        try:
            await self._rag_client.do_delete_all(namespace)
            self.logging.warning(
                "Index reset: %s cleared.", f"namespace '{namespace.get_key()}'" if namespace else "all namespaces"
            )
        finally:
            self._end()
