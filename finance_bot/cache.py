"""Short-lived cache of derived data in front of the sheet store.

The cache is never the source of truth: a miss always goes back to the
store, loader errors propagate, and nothing is cached for records that do
not exist.
"""

import inspect
from typing import Any, Awaitable, Callable

from aiocache import SimpleMemoryCache
from loguru import logger

GROUP_TTL = 300
SETTINGS_TTL = 3600
PARTICIPANT_TTL = 600
MEMORY_TTL = 300

DEFAULT_THREAD = "default"


def group_key(chat_id: int) -> str:
    return f"group:{chat_id}"


def settings_key(sheet_id: str) -> str:
    # Settings live with the spreadsheet, not with the chat.
    return f"settings:{sheet_id}"


def participant_key(sheet_id: str, user_id: int) -> str:
    return f"user:{sheet_id}:{user_id}"


def memory_key(chat_id: int, user_id: int | None = None, thread_id: str | None = None) -> str:
    if user_id is None:
        return f"memory:{chat_id}:"
    return f"memory:{chat_id}:{user_id}:{thread_id or DEFAULT_THREAD}"


class ContextCache:
    def __init__(self, backend: SimpleMemoryCache | None = None):
        self._cache = backend or SimpleMemoryCache()

    async def get(self, key: str) -> Any | None:
        return await self._cache.get(key)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        await self._cache.set(key, value, ttl=ttl)

    async def invalidate(self, *keys: str) -> None:
        for key in keys:
            await self._cache.delete(key)

    async def invalidate_prefix(self, prefix: str) -> None:
        await self._cache.clear(namespace=prefix)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any] | Any],
        ttl: int,
    ) -> Any | None:
        value = await self._cache.get(key)
        if value is not None:
            return value

        value = loader()
        if inspect.isawaitable(value):
            value = await value
        if value is not None:
            await self._cache.set(key, value, ttl=ttl)
        else:
            logger.debug("Cache loader for {} returned nothing; not caching", key)
        return value
