from server.core.ContextRetriever import ContextRetriever
from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.exceptions import ClientRequestError, TransientClientError, TransientCompletionError
from shared.helper.HelperConfig import HelperConfig
from shared.helper.retry import RetryConfig, retry_async
from shared.models.chat import UserProfileSnapshot

SYSTEM_PROMPT = """You are an AI agent responding on behalf of a user. Here is their persona and communication style:

{persona}

Here is additional context from their past messages and bio:
{context}

Use this information to respond naturally, maintaining their communication style, personality, and contextual knowledge from their past messages."""


class AutoResponseService:
    """Writes a reply on behalf of a user from their persona and the retrieved context."""

    def __init__(
        self,
        helper_config: HelperConfig,
        context_retriever: ContextRetriever,
        llm_client: LLMClientInterface,
        store_client: StoreClientInterface,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._context_retriever = context_retriever
        self._llm_client = llm_client
        self._store_client = store_client
        self._retry_config = RetryConfig.from_config(helper_config)

    async def _do_is_enabled(self, user_id: str, channel_id: str, workspace_id: str | None, is_dm: bool) -> bool:
        """Check the user's auto-response switches. Missing or unreadable settings mean off."""
        try:
            settings = await self._store_client.do_fetch_agent_settings(user_id)
            if settings is not None and not is_dm and workspace_id is None:
                workspace_id = await self._store_client.do_find_channel_workspace(channel_id)
        except (TransientClientError, ClientRequestError, ValueError) as e:
            self.logging.warning("Agent settings of user %s unavailable, not replying: %s", user_id, e)
            return False
        if settings is None:
            self.logging.info("User %s has no agent settings, auto-response is off.", user_id)
            return False
        if not settings.is_enabled_for(workspace_id, is_dm):
            self.logging.info(
                "Auto-response is off for user %s in %s.",
                user_id,
                "direct messages" if is_dm else f"workspace {workspace_id}",
            )
            return False
        return True

    async def _do_get_persona(self, user_id: str) -> str:
        """The generated persona summary, falling back to the profile bio."""
        try:
            summary = await self._store_client.do_fetch_user_persona(user_id)
            if summary:
                return summary
            profile = await self._store_client.do_fetch_user_profile(user_id) or UserProfileSnapshot()
        except (TransientClientError, ClientRequestError) as e:
            self.logging.warning("Persona of user %s unavailable, answering without one: %s", user_id, e)
            return ""
        return profile.bio or ""

    def build_messages(self, persona: str, context: str, message: str | None) -> list[dict]:
        if message:
            instruction = f'Generate a response to this message: "{message}"'
        else:
            instruction = "Write a short message that fits naturally into the recent conversation of this channel."
        return [
            {"role": "system", "content": SYSTEM_PROMPT.format(persona=persona, context=context)},
            {"role": "user", "content": instruction},
        ]

    async def do_generate_response(
        self,
        user_id: str,
        channel_id: str,
        workspace_id: str | None = None,
        message: str | None = None,
        is_dm: bool = False,
    ) -> str | None:
        """Retrieve context and ask the completion backend for a reply.

        Returns:
            str | None: The reply, or None when the user has auto-response
            switched off for this channel (nothing is generated then).

        Raises:
            TransientCompletionError: If the completion call failed after all retries.
            ClientRequestError: If the completion backend rejected the request.
        """
        if not await self._do_is_enabled(user_id, channel_id, workspace_id, is_dm):
            return None
        persona = await self._do_get_persona(user_id)
        bundle = await self._context_retriever.do_get_context(
            user_id=user_id,
            channel_id=channel_id,
            workspace_id=workspace_id,
            message_text=message,
        )
        messages = self.build_messages(persona, bundle.format_for_prompt(), message)
        self.logging.info(
            "Generating auto-response for user %s in channel %s with %d context item(s).",
            user_id,
            channel_id,
            len(bundle.items),
        )
        return await retry_async(
            lambda: self._llm_client.do_chat(messages),
            config=self._retry_config,
            logger=self.logging,
            retry_on=(TransientCompletionError,),
            operation_name=f"auto-response for {user_id}",
        )
