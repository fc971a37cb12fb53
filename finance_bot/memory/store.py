"""Rolling per-user conversation memory.

Memory is best-effort: every failure against the backing store degrades
to an empty bundle (reads) or ``False`` (writes) and is never raised.
"""

import hashlib
from datetime import datetime

from loguru import logger

from finance_bot.cache import MEMORY_TTL, ContextCache, memory_key
from finance_bot.db.repository import LedgerRepository
from finance_bot.groups import GroupContextService
from finance_bot.models.schemas import MemoryBundle, MemoryEntry, utcnow

DEFAULT_LIMIT = 10
HASH_WINDOW = 3


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def context_hash(entries: list[MemoryEntry]) -> str:
    """Digest over the most recent messages, newest first."""
    if not entries:
        return hash_text("empty")
    return hash_text("|".join(e.message for e in entries[:HASH_WINDOW]))


def summarize(entries: list[MemoryEntry]) -> str:
    if not entries:
        return "No conversation history"
    last_intent = entries[0].intent or "unknown"
    return f"Last intent: {last_intent}, {len(entries)} messages in memory"


def empty_bundle() -> MemoryBundle:
    return MemoryBundle(entries=[], summary=summarize([]), context_hash=context_hash([]))


def transcript(bundle: MemoryBundle, turns: int = 5) -> str:
    """Oldest-first transcript of the last few exchanges for a prompt."""
    if not bundle.entries:
        return "(belum ada percakapan)"
    lines = []
    for entry in reversed(bundle.entries[:turns]):
        lines.append(f"User: {entry.message}")
        if entry.reply:
            lines.append(f"Bot ({entry.intent or 'unknown'}): {entry.reply}")
    return "\n".join(lines)


class ConversationMemoryStore:
    def __init__(
        self,
        repo: LedgerRepository,
        cache: ContextCache,
        groups: GroupContextService,
        window: int = DEFAULT_LIMIT,
    ):
        self.repo = repo
        self.cache = cache
        self.groups = groups
        self.window = window

    def _load(
        self, sheet_id: str, user_id: int, thread_id: str | None, limit: int
    ) -> list[MemoryEntry]:
        entries = self.repo.read_memory(sheet_id)
        if thread_id:
            entries = [e for e in entries if e.thread_id == thread_id]
        entries = [e for e in entries if e.user_id == user_id]

        resets = [
            r
            for r in self.repo.read_memory_resets(sheet_id)
            if r.get("user_id") in (None, user_id)
        ]
        if resets:
            entries = [e for e in entries if not self._is_cleared(e, resets)]

        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    @staticmethod
    def _is_cleared(entry: MemoryEntry, resets: list[dict]) -> bool:
        for reset in resets:
            if reset.get("thread_id") not in (None, entry.thread_id):
                continue
            if entry.timestamp <= datetime.fromisoformat(reset["cleared_at"]):
                return True
        return False

    async def get_recent(
        self,
        chat_id: int,
        user_id: int,
        thread_id: str | None = None,
        limit: int | None = None,
    ) -> MemoryBundle:
        limit = limit or self.window
        key = memory_key(chat_id, user_id, thread_id)
        try:
            if limit == self.window:
                cached = await self.cache.get(key)
                if cached is not None:
                    return cached

            group = await self.groups.get_group(chat_id)
            if group is None:
                return empty_bundle()

            entries = self._load(group.sheet_id, user_id, thread_id, limit)
            bundle = MemoryBundle(
                entries=entries,
                summary=summarize(entries),
                context_hash=context_hash(entries),
            )
            if limit == self.window:
                await self.cache.set(key, bundle, ttl=MEMORY_TTL)
            return bundle
        except Exception as e:
            logger.error("Failed to load memory for {}:{}: {}", chat_id, user_id, e)
            return empty_bundle()

    async def append(self, entry: MemoryEntry) -> bool:
        try:
            group = await self.groups.get_group(entry.chat_id)
            if group is None:
                return False
            self.repo.append_memory(group.sheet_id, entry)
            # Only the exact key written to; other threads keep their view.
            await self.cache.invalidate(memory_key(entry.chat_id, entry.user_id, entry.thread_id))
            return True
        except Exception as e:
            logger.error("Failed to append memory for {}:{}: {}", entry.chat_id, entry.user_id, e)
            return False

    async def clear(
        self, chat_id: int, user_id: int | None = None, thread_id: str | None = None
    ) -> bool:
        try:
            group = await self.groups.get_group(chat_id)
            if group is None:
                return False
            self.repo.add_memory_reset(
                group.sheet_id,
                {"user_id": user_id, "thread_id": thread_id, "cleared_at": utcnow().isoformat()},
            )
            if user_id is not None and thread_id is not None:
                await self.cache.invalidate(memory_key(chat_id, user_id, thread_id))
            elif user_id is not None:
                await self.cache.invalidate_prefix(f"memory:{chat_id}:{user_id}:")
            else:
                await self.cache.invalidate_prefix(memory_key(chat_id))
            return True
        except Exception as e:
            logger.error("Failed to clear memory for {}: {}", chat_id, e)
            return False
