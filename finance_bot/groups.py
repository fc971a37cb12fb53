"""Group and participant context, read through the context cache."""

import asyncio
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger
from pydantic import ValidationError

from finance_bot.cache import (
    GROUP_TTL,
    PARTICIPANT_TTL,
    SETTINGS_TTL,
    ContextCache,
    group_key,
    participant_key,
    settings_key,
)
from finance_bot.config import Settings
from finance_bot.db.repository import LedgerRepository
from finance_bot.errors import PermissionDenied
from finance_bot.models.schemas import (
    Group,
    GroupSettings,
    GroupStatus,
    Participant,
    Role,
    Transaction,
    utcnow,
)

EDITABLE_SETTINGS = {
    "currency",
    "daily_limit",
    "monthly_limit",
    "timezone",
    "enable_chat",
    "require_admin_approval",
    "big_transaction_threshold",
    "notify_on_limit",
    "exchange_rate",
}


class GroupContextService:
    def __init__(self, repo: LedgerRepository, cache: ContextCache, settings: Settings):
        self.repo = repo
        self.cache = cache
        self.settings = settings
        self._provision_locks: dict[int, asyncio.Lock] = {}

    # ── Groups ──────────────────────────────────────────────────────

    async def get_group(self, chat_id: int) -> Group | None:
        group = await self.cache.get_or_load(
            group_key(chat_id), lambda: self.repo.get_group(chat_id), GROUP_TTL
        )
        if group is None:
            return None
        group_settings = await self.get_settings(group.sheet_id)
        return group.model_copy(update={"settings": group_settings})

    async def get_or_create_group(
        self,
        chat_id: int,
        title: str | None = None,
        owner_user_id: int | None = None,
        owner_username: str = "",
    ) -> Group:
        group = await self.get_group(chat_id)
        if group is not None:
            return group
        # Two first messages arriving together must not provision twice.
        lock = self._provision_locks.setdefault(chat_id, asyncio.Lock())
        async with lock:
            group = await self.get_group(chat_id)
            if group is None:
                group = await self.provision_group(chat_id, title, owner_user_id, owner_username)
        self._provision_locks.pop(chat_id, None)
        return group

    async def provision_group(
        self,
        chat_id: int,
        title: str | None,
        owner_user_id: int | None,
        owner_username: str = "",
    ) -> Group:
        name = title or f"Group {chat_id}"
        logger.info("Provisioning new group {} ({})", name, chat_id)

        sheet_id = self.repo.new_spreadsheet(f"Finance Bot - {name}")
        group_settings = GroupSettings(
            group_name=name,
            owner_user_id=owner_user_id,
            owner_username=owner_username,
            currency=self.settings.default_currency,
            timezone=self.settings.default_timezone,
        )
        self.repo.write_settings(sheet_id, group_settings, updated_by="system")
        for currency in self.settings.supported_currencies:
            self.repo.set_balance(sheet_id, currency, 0.0, updated_by="system")

        group = Group(
            chat_id=chat_id,
            name=name,
            sheet_id=sheet_id,
            owner_user_id=owner_user_id,
            settings=group_settings,
        )
        self.repo.register_group(group)
        await self.cache.invalidate(group_key(chat_id), settings_key(sheet_id))
        logger.info("Group {} registered with sheet {}", chat_id, sheet_id)
        return group

    async def get_settings(self, sheet_id: str) -> GroupSettings:
        return await self.cache.get_or_load(
            settings_key(sheet_id), lambda: self.repo.get_settings(sheet_id), SETTINGS_TTL
        )

    async def update_setting(self, chat_id: int, key: str, value: Any, updated_by: int) -> GroupSettings:
        if key not in EDITABLE_SETTINGS:
            raise ValueError(f"Unknown setting: {key}")

        group = await self.get_group(chat_id)
        if group is None:
            raise LookupError(f"Group {chat_id} not found")

        current = group.settings.model_dump()
        current[key] = value
        try:
            updated = GroupSettings.model_validate(current)
        except ValidationError as e:
            raise ValueError(f"Invalid value for {key}: {value}") from e
        if key == "currency" and updated.currency not in self.settings.supported_currencies:
            raise ValueError(f"Unsupported currency: {value}")
        if key == "timezone":
            try:
                ZoneInfo(updated.timezone)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"Unknown timezone: {value}") from e

        coerced = updated.model_dump(mode="json")[key]
        self.repo.set_setting(group.sheet_id, key, coerced, updated_by=str(updated_by))
        await self.cache.invalidate(group_key(chat_id), settings_key(group.sheet_id))
        return updated

    def list_groups(self) -> list[Group]:
        return self.repo.list_groups()

    async def set_status(self, chat_id: int, status: GroupStatus) -> None:
        self.repo.update_group(chat_id, status=status)
        await self.cache.invalidate(group_key(chat_id))

    # ── Participants ────────────────────────────────────────────────

    def _effective_role(self, participant: Participant) -> Role:
        if participant.user_id in self.settings.super_admin_ids:
            return "super_admin"
        return participant.role

    async def get_participant(
        self,
        group: Group,
        user_id: int,
        username: str = "",
        display_name: str = "",
    ) -> Participant:
        key = participant_key(group.sheet_id, user_id)
        participant = await self.cache.get_or_load(
            key, lambda: self.repo.get_participant(group.sheet_id, user_id), PARTICIPANT_TTL
        )
        if participant is None:
            participant = Participant(
                user_id=user_id,
                username=username,
                display_name=display_name or username,
                role="admin" if user_id == group.owner_user_id else "member",
            )
            self.repo.save_participant(group.sheet_id, participant)
            await self.cache.invalidate(key)
            logger.info("New participant {} in group {}", user_id, group.chat_id)
        return participant.model_copy(update={"role": self._effective_role(participant)})

    async def find_participant(self, group: Group, user_id: int) -> Participant | None:
        """Like ``get_participant`` but never creates a profile."""
        participant = await self.cache.get_or_load(
            participant_key(group.sheet_id, user_id),
            lambda: self.repo.get_participant(group.sheet_id, user_id),
            PARTICIPANT_TTL,
        )
        if participant is None:
            if user_id in self.settings.super_admin_ids:
                return Participant(user_id=user_id, role="super_admin")
            return None
        return participant.model_copy(update={"role": self._effective_role(participant)})

    async def set_role(self, group: Group, actor: Participant, user_id: int, role: Role) -> Participant:
        if not actor.is_admin:
            raise PermissionDenied("Only admins can change roles")
        if role == "super_admin":
            raise PermissionDenied("Super admins are configured, not assigned")
        target = await self.get_participant(group, user_id)
        updated = target.model_copy(update={"role": role})
        self.repo.save_participant(group.sheet_id, updated)
        await self.cache.invalidate(participant_key(group.sheet_id, user_id))
        return updated

    async def record_activity(self, group: Group, txn: Transaction) -> Participant:
        participant = await self.get_participant(group, txn.user_id, txn.username)
        stored = self.repo.get_participant(group.sheet_id, txn.user_id) or participant
        totals = dict(stored.totals)
        totals[txn.currency] = totals.get(txn.currency, 0.0) + txn.amount
        updated = stored.model_copy(
            update={
                "total_transactions": stored.total_transactions + 1,
                "totals": totals,
                "last_active": utcnow(),
            }
        )
        self.repo.save_participant(group.sheet_id, updated)
        await self.cache.invalidate(participant_key(group.sheet_id, txn.user_id))
        return updated
