"""Store watcher.

Follows the canonical store's change stream and publishes the changes as
EntityChangedEvents on a ChangeFeed. The first event of every stream is the
full snapshot of the watched node; it only seeds the display name cache.
"""

import asyncio

from pydantic import ValidationError as PydanticValidationError

from services.chat_vector_sync.ChangeFeed import ChangeFeed
from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.clients.store.models.StoreEvent import StoreEvent
from shared.exceptions import ServiceError, TransientStoreError
from shared.helper.HelperConfig import HelperConfig
from shared.helper.retry import RetryConfig, calculate_delay
from shared.models.chat import ChatMessage, EntityChangedEvent, EntityKind, UserProfileSnapshot

PROFILE_FIELDS = {"displayName", "photoURL", "bio", "email", "role", "status"}
WATCHED_ROOTS = ("workspaces", "users")


class StoreWatcher:
    """Turns store change events into entity events, reconnecting with backoff."""

    def __init__(self, helper_config: HelperConfig, store_client: StoreClientInterface, feed: ChangeFeed) -> None:
        self.logging = helper_config.get_logger()
        self._store_client = store_client
        self._feed = feed
        self._retry_config = RetryConfig.from_config(helper_config)
        self._stop = asyncio.Event()
        self._display_names: dict[str, str] = {}

    def stop(self) -> None:
        self._stop.set()

    def log_exit(self, task: asyncio.Task) -> None:
        """Done-callback for the task running do_run(); logs the error it died of."""
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logging.error("Store watcher stopped unexpectedly: %r", error)

    ##########################################
    ############### TRANSLATION ##############
    ##########################################

    def _message_event(self, kind: EntityKind, segments: list[str], data: dict | None) -> EntityChangedEvent | None:
        # workspaces/{ws}/channels/{ch}/messages/{id} or .../threads/{t}/messages/{id}
        workspace_id, channel_id, message_id = segments[1], segments[3], segments[-1]
        thread_id = segments[5] if segments[4] == "threads" else None
        if kind == EntityKind.MESSAGE_DELETED:
            data = {"userId": "", "content": ""}
        if not isinstance(data, dict) or data.get("type", "text") != "text":
            return None
        try:
            message = ChatMessage(
                id=message_id,
                workspace_id=workspace_id,
                channel_id=channel_id,
                user_id=data.get("userId") or "",
                content=str(data.get("content") or ""),
                timestamp=data.get("timestamp"),
                thread_id=thread_id,
            )
        except PydanticValidationError as e:
            self.logging.warning("Ignoring malformed message event for %s: %s", message_id, e)
            return None
        return EntityChangedEvent(kind=kind, message=message)

    def _profile_event(self, user_id: str, raw: dict) -> EntityChangedEvent:
        profile = UserProfileSnapshot.from_raw(raw)
        previous = self._display_names.get(user_id)
        self._display_names[user_id] = profile.display_name
        return EntityChangedEvent(
            kind=EntityKind.PROFILE_CHANGED,
            user_id=user_id,
            profile=profile,
            previous_display_name=previous if previous != profile.display_name else None,
        )

    def _seed_display_names(self, users: dict | None) -> None:
        for user_id, raw in (users or {}).items():
            if isinstance(raw, dict):
                self._display_names[user_id] = UserProfileSnapshot.from_raw(raw).display_name

    @staticmethod
    def _is_message_path(segments: list[str]) -> bool:
        if len(segments) == 6 and segments[2] == "channels" and segments[4] == "messages":
            return True
        return len(segments) == 8 and segments[2] == "channels" and segments[4] == "threads" and segments[6] == "messages"

    async def translate(self, event: StoreEvent) -> list[EntityChangedEvent]:
        """Map one store event to zero or more entity events.

        Events below a message or a user (a single field changed) are
        resolved by reading the whole node.
        """
        segments = event.get_segments()
        if not segments:
            return []

        # a patch carries several children of the node at its path
        if event.event == "patch" and isinstance(event.data, dict):
            events: list[EntityChangedEvent] = []
            for child, value in event.data.items():
                events.extend(await self.translate(
                    StoreEvent(event="put", path=f"{event.path.rstrip('/')}/{child}", data=value)
                ))
            return events

        if segments[0] == "workspaces":
            return await self._translate_workspace_event(segments, event.data)
        if segments[0] == "users" and len(segments) >= 2:
            return await self._translate_user_event(segments, event.data)
        return []

    async def _translate_workspace_event(self, segments: list[str], data) -> list[EntityChangedEvent]:
        if self._is_message_path(segments):
            kind = EntityKind.MESSAGE_DELETED if data is None else EntityKind.MESSAGE_CREATED
            event = self._message_event(kind, segments, data)
            return [event] if event else []

        # the messages node of a channel (or thread) replaced as a whole
        if len(segments) in (5, 7) and segments[-1] == "messages" and isinstance(data, dict):
            events = []
            for message_id, value in data.items():
                event = self._message_event(EntityKind.MESSAGE_CREATED, segments + [message_id], value)
                if event:
                    events.append(event)
            return events

        # a single field of a message changed
        for length in (6, 8):
            if len(segments) > length and self._is_message_path(segments[:length]):
                raw = await self._store_client.do_get("/".join(segments[:length]))
                kind = EntityKind.MESSAGE_DELETED if raw is None else EntityKind.MESSAGE_UPDATED
                event = self._message_event(kind, segments[:length], raw)
                return [event] if event else []
        return []

    async def _translate_user_event(self, segments: list[str], data) -> list[EntityChangedEvent]:
        user_id = segments[1]
        if len(segments) == 2:
            if not isinstance(data, dict):
                return []
            return [self._profile_event(user_id, data)]
        if segments[2] not in PROFILE_FIELDS:
            return []
        raw = await self._store_client.do_get(f"users/{user_id}")
        if not isinstance(raw, dict):
            return []
        return [self._profile_event(user_id, raw)]

    ##########################################
    ################ RUN LOOP ################
    ##########################################

    async def _do_follow(self, root: str) -> None:
        first = True
        async for store_event in self._store_client.do_stream(root):
            if self._stop.is_set():
                return
            if first and store_event.path.strip("/") == root:
                first = False
                if root == "users" and isinstance(store_event.data, dict):
                    self._seed_display_names(store_event.data)
                continue
            first = False
            try:
                for entity_event in await self.translate(store_event):
                    await self._feed.do_publish(entity_event)
            except (ServiceError, ValueError) as e:
                self.logging.error("Skipping store event at '%s': %s", store_event.path, e)

    async def _do_watch_root(self, root: str) -> None:
        attempt = 0
        while not self._stop.is_set():
            try:
                await self._do_follow(root)
                attempt = 0
                delay = calculate_delay(attempt, self._retry_config)
                self.logging.info("Store stream '%s' closed, reconnecting in %.1fs.", root, delay)
            except TransientStoreError as e:
                delay = calculate_delay(attempt, self._retry_config)
                attempt += 1
                self.logging.warning("Store stream '%s' dropped (%s), reconnecting in %.1fs.", root, e, delay)
            except (ServiceError, ValueError) as e:
                delay = calculate_delay(attempt, self._retry_config)
                attempt += 1
                self.logging.error("Store stream '%s' failed (%s), reconnecting in %.1fs.", root, e, delay)
            if not self._stop.is_set():
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass

    async def do_run(self) -> None:
        """Watch all roots until stop() is called or the task is cancelled."""
        self.logging.info("Store watcher started on %s.", ", ".join(WATCHED_ROOTS))
        try:
            await asyncio.gather(*[self._do_watch_root(root) for root in WATCHED_ROOTS])
        finally:
            self.logging.info("Store watcher stopped.")
