import json
from typing import Any, AsyncIterator

import httpx

from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.clients.store.models.StoreEvent import StoreEvent
from shared.exceptions import TransientStoreError
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig

# server-sent event types carrying data changes
DATA_EVENTS = ("put", "patch")


class StoreClientFirebase(StoreClientInterface):
    """Store client for the Firebase Realtime Database REST API.

    Every node is addressable as "{base_url}/{path}.json"; credentials travel
    in the "auth" query parameter.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._base_url = self.get_config_val("BASE_URL", default=None, val_type="string")
        self._auth_token = self.get_config_val("AUTH_TOKEN", default="", val_type="string")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Firebase"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=None),
            EnvConfig(env_key="AUTH_TOKEN", val_type="string", default=""),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        return {}

    def _get_auth_params(self) -> dict:
        if self._auth_token:
            return {"auth": self._auth_token}
        return {}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return "/.json"

    def _get_endpoint_node(self, path: str) -> str:
        return f"/{path.strip('/')}.json"

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_get(self, path: str, shallow: bool = False) -> Any:
        response = await self.do_request(
            method="GET",
            endpoint=self._get_endpoint_node(path),
            params={"shallow": "true"} if shallow else None,
            raise_on_error=True,
        )
        return response.json()

    async def do_stream(self, path: str = "") -> AsyncIterator[StoreEvent]:
        """Follow the REST streaming endpoint and yield put/patch events.

        Keep-alive events are dropped. The generator ends when the server
        closes the stream or cancels it.

        Raises:
            RuntimeError: If the client was not booted.
            TransientStoreError: If the connection fails or is refused.
        """
        if self._client is None:
            raise RuntimeError("HTTP client not initialised. Call boot() before making requests.")

        url = self._build_url(self._get_endpoint_node(path))
        event_type: str | None = None
        try:
            async with self._client.stream(
                "GET",
                url,
                headers={"Accept": "text/event-stream"},
                params=self._get_auth_params() or None,
                timeout=None,
            ) as response:
                if response.status_code >= 300:
                    raise TransientStoreError(
                        f"Stream on '{path or '/'}' refused with status {response.status_code}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line:
                        event_type = None
                        continue
                    if line.startswith("event:"):
                        event_type = line[len("event:"):].strip()
                        if event_type in ("cancel", "auth_revoked"):
                            self.logging.warning("Store stream closed by server: %s", event_type)
                            return
                        continue
                    if line.startswith("data:") and event_type in DATA_EVENTS:
                        try:
                            payload = json.loads(line[len("data:"):].strip())
                        except json.JSONDecodeError as e:
                            self.logging.warning("Skipping malformed '%s' frame on '%s': %s", event_type, path or "/", e)
                            continue
                        if not isinstance(payload, dict):
                            self.logging.warning("Skipping '%s' frame on '%s' without a payload object.", event_type, path or "/")
                            continue
                        # event paths are relative to the streamed node
                        event_path = "/" + "/".join(
                            part for part in (path.strip("/"), str(payload.get("path", "")).strip("/")) if part
                        )
                        yield StoreEvent(event=event_type, path=event_path, data=payload.get("data"))
        except httpx.TransportError as e:
            self.logging.error("Store stream on '%s' failed: %s", path or "/", e)
            raise TransientStoreError(f"store backend 'firebase' stream failed: {e}") from e
