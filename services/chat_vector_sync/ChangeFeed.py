import asyncio
from typing import Any, Awaitable, Callable

from shared.helper.HelperConfig import HelperConfig
from shared.models.chat import EntityChangedEvent, EntityKind

EntityHandler = Callable[[EntityChangedEvent], Awaitable[Any]]


class ChangeFeed:
    """Explicit subscription point for change notifications of the canonical store.

    Producers (the store watcher, HTTP routes) publish events; subscribers
    register one handler per entity kind.
    """

    def __init__(self, helper_config: HelperConfig) -> None:
        self.logging = helper_config.get_logger()
        self._handlers: dict[EntityKind, list[EntityHandler]] = {}

    def on_entity_changed(self, kind: EntityKind, handler: EntityHandler) -> None:
        self._handlers.setdefault(kind, []).append(handler)

    def get_handler_count(self, kind: EntityKind) -> int:
        return len(self._handlers.get(kind, []))

    async def do_publish(self, event: EntityChangedEvent) -> list[Any]:
        """Deliver an event to every handler of its kind.

        A failing handler is logged and does not stop the others.

        Returns:
            list[Any]: One entry per handler, the handler's result or the exception it raised.
        """
        handlers = self._handlers.get(event.kind, [])
        if not handlers:
            self.logging.debug("No handler registered for %s events.", event.kind.value)
            return []
        results = await asyncio.gather(*[handler(event) for handler in handlers], return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self.logging.error(
                    "Handler for %s event on '%s' failed: %s",
                    event.kind.value,
                    event.get_entity_id(),
                    result,
                )
        return results
