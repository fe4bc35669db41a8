from abc import abstractmethod
from typing import Any, AsyncIterator

from pydantic import ValidationError as PydanticValidationError

from shared.clients.ClientInterface import ClientInterface
from shared.clients.store.models.StoreEvent import StoreEvent
from shared.exceptions import TransientClientError, TransientStoreError
from shared.helper.HelperConfig import HelperConfig
from shared.models.chat import AgentSettings, ChatMessage, UserProfileSnapshot


class StoreClientInterface(ClientInterface):
    """Read-only view of the canonical chat store.

    Layout of the store:
        workspaces/{ws}/channels/{ch}/messages/{id}
        workspaces/{ws}/channels/{ch}/threads/{thread}/messages/{id}
        users/{uid}                  (profile fields)
        users/{uid}/workspaces/{ws}  (memberships)
        users/{uid}/persona/summary  (generated persona text)
        users/{uid}/aiAgentSettings  (auto-response switches)
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        return "store"

    def _get_transient_error_class(self) -> type[TransientClientError]:
        return TransientStoreError

    ##########################################
    ################# OTHER ##################
    ##########################################

    def _parse_messages(self, raw: Any, workspace_id: str, channel_id: str, thread_id: str | None = None) -> list[ChatMessage]:
        """Turn a raw messages node into text messages with content. Unusable entries are skipped."""
        messages: list[ChatMessage] = []
        if not isinstance(raw, dict):
            return messages
        for message_id, data in raw.items():
            if not isinstance(data, dict):
                continue
            if data.get("type", "text") != "text" or not str(data.get("content") or "").strip():
                continue
            if not data.get("userId"):
                self.logging.warning("Skipping message %s in channel %s without userId.", message_id, channel_id)
                continue
            try:
                messages.append(ChatMessage(
                    id=message_id,
                    workspace_id=workspace_id,
                    channel_id=channel_id,
                    user_id=data["userId"],
                    content=str(data["content"]),
                    type="text",
                    timestamp=data.get("timestamp"),
                    thread_id=thread_id,
                ))
            except PydanticValidationError as e:
                self.logging.warning("Skipping malformed message %s in channel %s: %s", message_id, channel_id, e)
        return messages

    ##########################################
    ############### REQUESTS #################
    ##########################################

    @abstractmethod
    async def do_get(self, path: str, shallow: bool = False) -> Any:
        """Read the value at a store path. Missing nodes give None.

        Args:
            path (str): Slash-separated path, e.g. "users/u1".
            shallow (bool): Only return the keys of the children (values become True).
        """
        pass

    @abstractmethod
    def do_stream(self, path: str = "") -> AsyncIterator[StoreEvent]:
        """Yield change events below a path until the connection closes."""
        pass

    async def _do_get_keys(self, path: str) -> list[str]:
        value = await self.do_get(path, shallow=True)
        if not isinstance(value, dict):
            return []
        return sorted(value.keys())

    async def do_fetch_workspace_ids(self) -> list[str]:
        return await self._do_get_keys("workspaces")

    async def do_fetch_channel_ids(self, workspace_id: str) -> list[str]:
        return await self._do_get_keys(f"workspaces/{workspace_id}/channels")

    async def do_fetch_user_ids(self) -> list[str]:
        return await self._do_get_keys("users")

    async def do_fetch_user_workspace_ids(self, user_id: str) -> list[str]:
        return await self._do_get_keys(f"users/{user_id}/workspaces")

    async def do_fetch_user_profile(self, user_id: str) -> UserProfileSnapshot | None:
        """Return the user's profile snapshot, or None if the user does not exist."""
        raw = await self.do_get(f"users/{user_id}")
        if not isinstance(raw, dict):
            return None
        return UserProfileSnapshot.from_raw(raw)

    async def do_fetch_user_persona(self, user_id: str) -> str | None:
        """Return the user's persona summary, or None if none was generated."""
        raw = await self.do_get(f"users/{user_id}/persona/summary")
        if not isinstance(raw, str) or not raw.strip():
            return None
        return raw.strip()

    async def do_fetch_agent_settings(self, user_id: str) -> AgentSettings | None:
        """Return the user's auto-response switches, or None if the user never set any."""
        raw = await self.do_get(f"users/{user_id}/aiAgentSettings")
        if not isinstance(raw, dict):
            return None
        return AgentSettings.model_validate(raw)

    async def do_fetch_messages(self, workspace_id: str, channel_id: str) -> list[ChatMessage]:
        """Return the channel's text messages, including messages posted in its threads."""
        base = f"workspaces/{workspace_id}/channels/{channel_id}"
        messages = self._parse_messages(await self.do_get(f"{base}/messages"), workspace_id, channel_id)
        threads = await self.do_get(f"{base}/threads")
        if isinstance(threads, dict):
            for thread_id, thread in threads.items():
                if isinstance(thread, dict):
                    messages.extend(self._parse_messages(thread.get("messages"), workspace_id, channel_id, thread_id))
        return messages

    async def do_find_channel_workspace(self, channel_id: str) -> str | None:
        """Return the id of the workspace owning a channel, or None if no workspace has it."""
        for workspace_id in await self.do_fetch_workspace_ids():
            if channel_id in await self.do_fetch_channel_ids(workspace_id):
                return workspace_id
        return None

    async def do_fetch_user_messages(self, user_id: str, limit: int = 30) -> list[ChatMessage]:
        """Return the user's most recent text messages across their workspaces, newest first."""
        messages: list[ChatMessage] = []
        for workspace_id in await self.do_fetch_user_workspace_ids(user_id):
            for channel_id in await self.do_fetch_channel_ids(workspace_id):
                for message in await self.do_fetch_messages(workspace_id, channel_id):
                    if message.user_id == user_id:
                        messages.append(message)
        messages.sort(key=lambda message: message.timestamp, reverse=True)
        return messages[:limit]
