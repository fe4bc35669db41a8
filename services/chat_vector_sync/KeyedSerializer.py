import asyncio
from typing import Any, Awaitable, Callable


class KeyedSerializer:
    """Runs coroutines for the same key one after another, in submission order.

    Different keys run concurrently. Nothing is held across keys, so a slow
    entity never blocks an unrelated one.
    """

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Future] = {}

    def pending_keys(self) -> list[str]:
        return list(self._tails.keys())

    async def run(self, key: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Await operation after every earlier operation submitted for key.

        The slot in the queue is taken synchronously, before the first await,
        so call order equals execution order.
        """
        loop = asyncio.get_running_loop()
        previous = self._tails.get(key)
        done: asyncio.Future = loop.create_future()
        self._tails[key] = done
        try:
            if previous is not None:
                await asyncio.shield(previous)
            return await operation()
        finally:
            done.set_result(None)
            if self._tails.get(key) is done:
                del self._tails[key]
