"""Single-use confirmation tokens gating sensitive actions.

Every entry schedules its own removal when it is created. Resolution,
discarding and expiry are terminal; a token never comes back once any of
them has happened.
"""

import asyncio
import secrets
import time
from collections import OrderedDict
from enum import Enum
from typing import Any, Callable

from loguru import logger

from finance_bot.errors import ConfirmationRejected, RejectionReason
from finance_bot.models.schemas import PendingConfirmation

DEFAULT_TTL = 300.0
MAX_TOMBSTONES = 1024


class ConfirmationStatus(str, Enum):
    RESOLVED = "resolved"
    DISCARDED = "discarded"
    EXPIRED = "expired"


class PendingConfirmationRegistry:
    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[str, PendingConfirmation] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tombstones: OrderedDict[str, ConfirmationStatus] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def _close(self, token: str, status: ConfirmationStatus) -> PendingConfirmation | None:
        entry = self._entries.pop(token, None)
        self._timers.pop(token, None)
        if entry is not None:
            self._tombstones[token] = status
            while len(self._tombstones) > MAX_TOMBSTONES:
                self._tombstones.popitem(last=False)
        return entry

    def _expire(self, token: str) -> None:
        if self._close(token, ConfirmationStatus.EXPIRED) is not None:
            logger.info("Confirmation {} expired", token)

    def create(self, owner_user_id: int, action: str, payload: dict[str, Any]) -> str:
        token = secrets.token_urlsafe(12)
        now = self.clock()
        self._entries[token] = PendingConfirmation(
            token=token,
            owner_user_id=owner_user_id,
            action=action,
            payload=payload,
            created_at=now,
            expires_at=now + self.ttl,
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._timers[token] = loop.call_later(self.ttl, self._expire, token)
        logger.debug("Confirmation {} created for user {} ({})", token, owner_user_id, action)
        return token

    def get(self, token: str) -> PendingConfirmation | None:
        entry = self._entries.get(token)
        if entry is None:
            return None
        # The timer may not have fired yet (busy loop, or no loop at all).
        if self.clock() >= entry.expires_at:
            self._expire(token)
            return None
        return entry

    def resolve(
        self,
        token: str,
        by_user: int,
        status: ConfirmationStatus = ConfirmationStatus.RESOLVED,
    ) -> PendingConfirmation:
        entry = self.get(token)
        if entry is None:
            if self._tombstones.get(token) == ConfirmationStatus.EXPIRED:
                raise ConfirmationRejected(RejectionReason.EXPIRED, token)
            raise ConfirmationRejected(RejectionReason.NOT_FOUND, token)
        if entry.owner_user_id != by_user:
            raise ConfirmationRejected(RejectionReason.NOT_OWNER, token)
        self._close(token, status)
        return entry

    def discard(self, token: str) -> bool:
        return self._close(token, ConfirmationStatus.DISCARDED) is not None
