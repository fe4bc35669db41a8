"""Synchronisation service.

Keeps the semantic index in step with the canonical chat store: upserts a
record whenever a message or bio changes, deletes it when the message is
deleted, and rewrites every record of a user whose profile changed.
"""

import asyncio
import time

from services.chat_vector_sync.ChangeFeed import ChangeFeed
from services.chat_vector_sync.KeyedSerializer import KeyedSerializer
from services.chat_vector_sync.VectorRecordMapper import VectorRecordMapper, normalize_content
from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.VectorRecord import Namespace, RecordFilter, RecordKind, VectorRecord
from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.exceptions import (
    SyncFailure,
    TransientEmbeddingError,
    TransientIndexError,
    TransientStoreError,
    ValidationError,
)
from shared.helper.HelperConfig import HelperConfig
from shared.helper.retry import RetryConfig, retry_async
from shared.models.chat import BioSource, ChatMessage, EntityChangedEvent, EntityKind, UserBio, UserProfileSnapshot
from shared.models.results import FanOutResult, SyncResult

FAN_OUT_CONCURRENCY = 5  # parallel record rewrites during a fan-out


def _now_ms() -> int:
    return int(time.time() * 1000)


class SyncService:
    """Orchestrates mapper, embedding and index for every change of the canonical store."""

    def __init__(
        self,
        helper_config: HelperConfig,
        mapper: VectorRecordMapper,
        rag_client: RAGClientInterface,
        store_client: StoreClientInterface,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._mapper = mapper
        self._rag_client = rag_client
        self._store_client = store_client
        self._retry_config = RetryConfig.from_config(helper_config)
        self._serializer = KeyedSerializer()
        # bumped on entity writes while a fan-out runs; lets it skip records written after its scan
        self._generations: dict[str, int] = {}
        self._active_fan_outs = 0

    ##########################################
    ################ HELPERS #################
    ##########################################

    def _bump_generation(self, record_id: str) -> None:
        if self._active_fan_outs == 0:
            return
        self._generations[record_id] = self._generations.get(record_id, 0) + 1

    async def _do_with_retry(self, operation, operation_name: str, retry_on: tuple):
        return await retry_async(
            operation,
            config=self._retry_config,
            logger=self.logging,
            retry_on=retry_on,
            operation_name=operation_name,
        )

    async def _do_resolve_profile(self, user_id: str, profile: UserProfileSnapshot | None) -> UserProfileSnapshot:
        if profile is not None:
            return profile
        fetched = await self._do_with_retry(
            lambda: self._store_client.do_fetch_user_profile(user_id),
            operation_name=f"fetch profile {user_id}",
            retry_on=(TransientStoreError,),
        )
        if fetched is None:
            self.logging.warning("No profile found for user %s, using the default snapshot.", user_id)
            return UserProfileSnapshot()
        return fetched

    async def _do_upsert_record(self, record: VectorRecord) -> None:
        await self._do_with_retry(
            lambda: self._rag_client.do_upsert([record]),
            operation_name=f"upsert {record.id}",
            retry_on=(TransientIndexError,),
        )

    ##########################################
    ############ ENTITY-LEVEL SYNC ###########
    ##########################################

    async def do_sync_message(self, message: ChatMessage, profile: UserProfileSnapshot | None = None) -> SyncResult:
        """Embed and upsert one message. Calls for the same message id apply in call order.

        Args:
            message (ChatMessage): The created or updated message.
            profile (UserProfileSnapshot | None): The author's profile; fetched from the store if None.

        Returns:
            SyncResult: The successful result.

        Raises:
            ValidationError: If the message has no content.
            SyncFailure: If embedding or upsert failed after all retries.
        """
        return await self._serializer.run(message.id, lambda: self._do_sync_entity(message, message.user_id, profile))

    async def do_sync_bio(
        self,
        user_id: str,
        profile: UserProfileSnapshot,
        timestamp: int | None = None,
        bio_text: str | None = None,
    ) -> SyncResult:
        """Upsert the user's bio record, or clear it when there is no bio text.

        Without any text, a bio generated from a persona is kept and only
        gets the new profile snapshot; a profile bio is deleted.

        Args:
            user_id (str): Owner of the bio.
            profile (UserProfileSnapshot): The owner's current profile.
            timestamp (int | None): Last-modified time in ms; now if None.
            bio_text (str | None): Persona text to index instead of profile.bio.

        Raises:
            SyncFailure: If embedding, upsert or delete failed after all retries.
        """
        record_id = f"bio_{user_id}"
        if bio_text:
            bio = UserBio(user_id=user_id, bio=bio_text, timestamp=timestamp or _now_ms(), source=BioSource.PERSONA)
        elif profile.bio:
            bio = UserBio(user_id=user_id, bio=profile.bio, timestamp=timestamp or _now_ms())
        else:
            return await self._serializer.run(record_id, lambda: self._do_clear_bio(user_id, profile))
        return await self._serializer.run(record_id, lambda: self._do_sync_entity(bio, user_id, profile))

    async def do_delete_message(self, message_id: str, workspace_id: str, channel_id: str | None = None) -> SyncResult:
        """Remove a deleted message's record. Ordered with the message's other operations.

        Raises:
            SyncFailure: If the delete failed after all retries.
        """
        namespace = Namespace.for_workspace(workspace_id, channel_id)
        return await self._serializer.run(message_id, lambda: self._do_delete_record(namespace, message_id))

    async def _do_sync_entity(self, entity: ChatMessage | UserBio, owner_id: str, profile: UserProfileSnapshot | None) -> SyncResult:
        entity_id = entity.id if isinstance(entity, ChatMessage) else f"bio_{owner_id}"
        try:
            owner_profile = await self._do_resolve_profile(owner_id, profile)
            record = await self._mapper.do_to_vector_record(entity, owner_profile)
            await self._do_upsert_record(record)
        except ValidationError:
            raise
        except (TransientEmbeddingError, TransientIndexError, TransientStoreError) as e:
            self.logging.error("Sync of %s failed after retries: %s", entity_id, e)
            raise SyncFailure(entity_id, e) from e
        self._bump_generation(entity_id)
        self.logging.debug("Synced %s into namespace '%s'.", entity_id, record.namespace.get_key())
        return SyncResult(entity_id=entity_id, success=True)

    async def _do_delete_record(self, namespace: Namespace, record_id: str) -> SyncResult:
        try:
            await self._do_with_retry(
                lambda: self._rag_client.do_delete_records(namespace, [record_id]),
                operation_name=f"delete {record_id}",
                retry_on=(TransientIndexError,),
            )
        except TransientIndexError as e:
            raise SyncFailure(record_id, e) from e
        self._bump_generation(record_id)
        self.logging.debug("Deleted %s from namespace '%s'.", record_id, namespace.get_key())
        return SyncResult(entity_id=record_id, success=True)

    async def _do_clear_bio(self, user_id: str, profile: UserProfileSnapshot) -> SyncResult:
        namespace = Namespace.for_user(user_id)
        record_id = f"bio_{user_id}"
        try:
            existing = await self._do_with_retry(
                lambda: self._rag_client.do_fetch(namespace, [record_id]),
                operation_name=f"fetch {record_id}",
                retry_on=(TransientIndexError,),
            )
        except TransientIndexError as e:
            raise SyncFailure(record_id, e) from e
        persona = next((record for record in existing if record.bio_source == BioSource.PERSONA), None)
        if persona is None:
            return await self._do_delete_record(namespace, record_id)
        try:
            await self._do_restamp_record(persona, user_id, profile)
        except (TransientEmbeddingError, TransientIndexError) as e:
            raise SyncFailure(record_id, e) from e
        self._bump_generation(record_id)
        self.logging.debug("Kept persona bio of user %s with the new profile snapshot.", user_id)
        return SyncResult(entity_id=record_id, success=True)

    async def _do_restamp_record(self, record: VectorRecord, user_id: str, profile: UserProfileSnapshot) -> None:
        """Upsert a record with the owner's current snapshot, keeping its content and embedding."""
        embedding = record.embedding
        if len(embedding) != self._rag_client.vector_size:
            content = normalize_content(record.content, self._mapper.max_chars)
            embedding = await self._mapper.do_embed(content, operation_name=f"re-embed {record.id}")
        await self._do_upsert_record(record.model_copy(update={
            "owner_id": user_id,
            "profile_snapshot": profile,
            "embedding": embedding,
        }))

    ##########################################
    ############# PROFILE FAN-OUT ############
    ##########################################

    async def do_sync_user_profile(
        self,
        user_id: str,
        profile: UserProfileSnapshot,
        previous_display_name: str | None = None,
    ) -> FanOutResult:
        """Rewrite every record whose profile snapshot of this user is stale.

        Records are matched by owner id and a differing snapshot hash. Legacy
        records without an owner id live in the default namespace; they are
        matched by workspace and previous_display_name (when given), moved
        into their workspace namespace with the owner id attached, and their
        default-namespace copy is deleted. The bio record is re-synced
        separately and not counted.

        A failing record is retried, then reported in failed_ids; the rest of
        the fan-out continues. A scan or workspace listing that fails after
        its retries is reported in failed_scans.

        Returns:
            FanOutResult: "updated of total" plus the failing record ids and scans.
        """
        return await self._serializer.run(
            f"user_{user_id}",
            lambda: self._do_tracked_fan_out(user_id, profile, previous_display_name),
        )

    async def _do_tracked_fan_out(
        self,
        user_id: str,
        profile: UserProfileSnapshot,
        previous_display_name: str | None,
    ) -> FanOutResult:
        self._active_fan_outs += 1
        try:
            return await self._do_sync_user_profile(user_id, profile, previous_display_name)
        finally:
            self._active_fan_outs -= 1
            if self._active_fan_outs == 0:
                self._generations.clear()

    async def _do_sync_user_profile(
        self,
        user_id: str,
        profile: UserProfileSnapshot,
        previous_display_name: str | None,
    ) -> FanOutResult:
        result = FanOutResult(user_id=user_id)
        new_hash = profile.get_hash()

        try:
            workspace_ids = await self._do_with_retry(
                lambda: self._store_client.do_fetch_user_workspace_ids(user_id),
                operation_name=f"fetch workspaces of {user_id}",
                retry_on=(TransientStoreError,),
            )
        except TransientStoreError as e:
            self.logging.error("Cannot list workspaces of user %s, fan-out covers the bio only: %s", user_id, e)
            result.failed_scans.append(f"users/{user_id}/workspaces")
            workspace_ids = []

        for workspace_id in workspace_ids:
            namespace = Namespace.for_workspace(workspace_id)
            await self._do_fan_out_namespace(
                namespace,
                RecordFilter(owner_id=user_id, kinds=[RecordKind.MESSAGE], profile_hash_not=new_hash),
                user_id,
                profile,
                result,
                scan_label=namespace.get_key(),
            )
            if previous_display_name:
                self.logging.warning(
                    "Matching legacy records of workspace %s by display name '%s'; names are not unique.",
                    workspace_id,
                    previous_display_name,
                )
                await self._do_fan_out_namespace(
                    Namespace.default(),
                    RecordFilter(owner_missing=True, display_name=previous_display_name, workspace_id=workspace_id),
                    user_id,
                    profile,
                    result,
                    scan_label=f"legacy records of {workspace_id}",
                )

        try:
            await self.do_sync_bio(user_id, profile)
        except (SyncFailure, ValidationError) as e:
            self.logging.error("Bio re-sync for user %s failed: %s", user_id, e)

        if not result.is_complete():
            self.logging.error(
                "Profile fan-out for user %s incomplete: %s, failed ids: %s, failed scans: %s",
                user_id,
                result.summary(),
                ", ".join(result.failed_ids) or "-",
                ", ".join(result.failed_scans) or "-",
            )
        else:
            self.logging.info("Profile fan-out for user %s: %s.", user_id, result.summary())
        return result

    async def _do_fan_out_namespace(
        self,
        namespace: Namespace,
        record_filter: RecordFilter,
        user_id: str,
        profile: UserProfileSnapshot,
        result: FanOutResult,
        scan_label: str,
    ) -> None:
        """Scan pages of stale records and rewrite them until a page comes back empty."""
        processed: list[str] = []
        sem = asyncio.Semaphore(FAN_OUT_CONCURRENCY)
        while True:
            page_filter = record_filter.model_copy(update={"exclude_ids": list(processed)})
            try:
                page = await self._do_with_retry(
                    lambda: self._rag_client.do_scan(namespace, page_filter),
                    operation_name=f"scan {scan_label}",
                    retry_on=(TransientIndexError,),
                )
            except TransientIndexError as e:
                self.logging.error("Fan-out scan of %s for user %s failed: %s", scan_label, user_id, e)
                result.failed_scans.append(scan_label)
                return
            page = [record for record in page if record.id not in processed]
            if not page:
                return

            generations = {record.id: self._generations.get(record.id, 0) for record in page}
            result.total += len(page)
            processed.extend(record.id for record in page)
            outcomes = await asyncio.gather(
                *[
                    self._do_rewrite_record(record, namespace, user_id, profile, generations[record.id], sem)
                    for record in page
                ],
                return_exceptions=True,
            )
            for record, outcome in zip(page, outcomes):
                if isinstance(outcome, BaseException):
                    self.logging.error("Fan-out rewrite of %s failed: %s", record.id, outcome)
                    result.failed_ids.append(record.id)
                else:
                    result.updated += 1

    async def _do_rewrite_record(
        self,
        record: VectorRecord,
        scanned_namespace: Namespace,
        user_id: str,
        profile: UserProfileSnapshot,
        scanned_generation: int,
        sem: asyncio.Semaphore,
    ) -> None:
        async with sem:
            await self._serializer.run(
                record.id,
                lambda: self._do_rewrite_record_now(record, scanned_namespace, user_id, profile, scanned_generation),
            )

    async def _do_rewrite_record_now(
        self,
        record: VectorRecord,
        scanned_namespace: Namespace,
        user_id: str,
        profile: UserProfileSnapshot,
        scanned_generation: int,
    ) -> None:
        if self._generations.get(record.id, 0) != scanned_generation:
            # rewritten from the source after the scan, which already carries the fresh profile
            self.logging.debug("Skipping fan-out rewrite of %s, it was synced meanwhile.", record.id)
            return
        try:
            await self._do_restamp_record(record, user_id, profile)
            if scanned_namespace.get_key() != record.namespace.get_partition().get_key():
                # legacy copy, now superseded by the record in its own namespace
                await self._do_with_retry(
                    lambda: self._rag_client.do_delete_records(scanned_namespace, [record.id]),
                    operation_name=f"delete legacy {record.id}",
                    retry_on=(TransientIndexError,),
                )
        except (TransientEmbeddingError, TransientIndexError) as e:
            raise SyncFailure(record.id, e) from e
        self._bump_generation(record.id)

    ##########################################
    ############ CHANGE SUBSCRIPTION #########
    ##########################################

    def register(self, feed: ChangeFeed) -> None:
        """Subscribe the sync handlers to a change feed."""
        feed.on_entity_changed(EntityKind.MESSAGE_CREATED, self._handle_message_changed)
        feed.on_entity_changed(EntityKind.MESSAGE_UPDATED, self._handle_message_changed)
        feed.on_entity_changed(EntityKind.MESSAGE_DELETED, self._handle_message_deleted)
        feed.on_entity_changed(EntityKind.PROFILE_CHANGED, self._handle_profile_changed)

    async def _handle_message_changed(self, event: EntityChangedEvent) -> SyncResult:
        return await self.do_sync_message(event.message)

    async def _handle_message_deleted(self, event: EntityChangedEvent) -> SyncResult:
        message = event.message
        return await self.do_delete_message(message.id, message.workspace_id, message.channel_id)

    async def _handle_profile_changed(self, event: EntityChangedEvent) -> FanOutResult:
        return await self.do_sync_user_profile(
            event.user_id,
            event.profile or UserProfileSnapshot(),
            previous_display_name=event.previous_display_name,
        )
