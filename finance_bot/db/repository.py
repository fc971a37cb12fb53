from datetime import datetime
from typing import Any

from finance_bot.db.sheets import REGISTRY_SHEET_ID, SheetStore
from finance_bot.models.schemas import (
    Group,
    GroupSettings,
    MemoryEntry,
    Participant,
    Transaction,
    utcnow,
)


class LedgerRepository:
    """Typed access to the registry and per-group sheets."""

    def __init__(self, store: SheetStore):
        self.store = store

    # ── Registry ────────────────────────────────────────────────────

    def get_group(self, chat_id: int) -> Group | None:
        rows = self.store.read(REGISTRY_SHEET_ID, "Groups", {"chat_id": chat_id})
        if not rows:
            return None
        return Group.model_validate(rows[-1])

    def register_group(self, group: Group) -> Group:
        data = group.model_dump(mode="json", exclude={"settings"})
        self.store.append(REGISTRY_SHEET_ID, "Groups", [data])
        return group

    def list_groups(self) -> list[Group]:
        latest = {row["chat_id"]: row for row in self.store.read(REGISTRY_SHEET_ID, "Groups")}
        return [Group.model_validate(row) for row in latest.values()]

    def update_group(self, chat_id: int, **fields: Any) -> int:
        return self.store.update(REGISTRY_SHEET_ID, "Groups", {"chat_id": chat_id}, fields)

    def new_spreadsheet(self, title: str) -> str:
        return self.store.create_spreadsheet(title)

    def append_log(self, sheet: str, row: dict[str, Any]) -> None:
        self.store.append(REGISTRY_SHEET_ID, sheet, [row])

    def read_log(self, sheet: str) -> list[dict[str, Any]]:
        return self.store.read(REGISTRY_SHEET_ID, sheet)

    # ── Settings ────────────────────────────────────────────────────

    def get_settings(self, sheet_id: str) -> GroupSettings:
        rows = self.store.read(sheet_id, "Settings")
        values = {row["key"]: row["value"] for row in rows}
        return GroupSettings.model_validate(values)

    def write_settings(self, sheet_id: str, settings: GroupSettings, updated_by: str) -> None:
        now = utcnow().isoformat()
        for key, value in settings.model_dump(mode="json").items():
            self.store.upsert(
                sheet_id,
                "Settings",
                {"key": key},
                {"value": value, "last_updated": now, "updated_by": updated_by},
            )

    def set_setting(self, sheet_id: str, key: str, value: Any, updated_by: str) -> None:
        self.store.upsert(
            sheet_id,
            "Settings",
            {"key": key},
            {"value": value, "last_updated": utcnow().isoformat(), "updated_by": updated_by},
        )

    # ── Participants ────────────────────────────────────────────────

    def get_participant(self, sheet_id: str, user_id: int) -> Participant | None:
        rows = self.store.read(sheet_id, "Users", {"user_id": user_id})
        if not rows:
            return None
        return Participant.model_validate(rows[0])

    def save_participant(self, sheet_id: str, participant: Participant) -> Participant:
        data = participant.model_dump(mode="json")
        self.store.upsert(sheet_id, "Users", {"user_id": participant.user_id}, data)
        return participant

    # ── Transactions ────────────────────────────────────────────────

    def append_transaction(self, sheet_id: str, txn: Transaction) -> Transaction:
        self.store.append(sheet_id, "Transactions", [txn.model_dump(mode="json")])
        return txn

    def list_transactions(self, sheet_id: str) -> list[Transaction]:
        rows = self.store.read(sheet_id, "Transactions")
        txns = [Transaction.model_validate(row) for row in rows]
        return sorted(txns, key=lambda t: t.timestamp)

    def get_transaction(self, sheet_id: str, txn_id: str) -> Transaction | None:
        rows = self.store.read(sheet_id, "Transactions", {"id": txn_id})
        if not rows:
            return None
        return Transaction.model_validate(rows[0])

    def update_transaction(self, sheet_id: str, txn_id: str, **fields: Any) -> int:
        data = {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in fields.items()
        }
        return self.store.update(sheet_id, "Transactions", {"id": txn_id}, data)

    # ── Wallet ──────────────────────────────────────────────────────

    def get_wallet(self, sheet_id: str) -> dict[str, float]:
        rows = self.store.read(sheet_id, "Wallet")
        return {row["currency"]: float(row["balance"]) for row in rows}

    def set_balance(self, sheet_id: str, currency: str, balance: float, updated_by: str) -> None:
        self.store.upsert(
            sheet_id,
            "Wallet",
            {"currency": currency},
            {
                "balance": balance,
                "last_updated": utcnow().isoformat(),
                "updated_by": updated_by,
            },
        )

    def add_to_balance(self, sheet_id: str, currency: str, delta: float, updated_by: str) -> float:
        balance = self.get_wallet(sheet_id).get(currency, 0.0) + delta
        self.set_balance(sheet_id, currency, balance, updated_by)
        return balance

    # ── Limit counters ──────────────────────────────────────────────

    def get_spent(self, sheet_id: str, sheet: str, period: str) -> float:
        rows = self.store.read(sheet_id, sheet, {"period": period})
        return float(rows[0]["spent"]) if rows else 0.0

    def list_spent(self, sheet_id: str, sheet: str) -> dict[str, float]:
        return {row["period"]: float(row["spent"]) for row in self.store.read(sheet_id, sheet)}

    def set_spent(self, sheet_id: str, sheet: str, period: str, spent: float, limit: float) -> None:
        self.store.upsert(
            sheet_id,
            sheet,
            {"period": period},
            {"spent": spent, "limit": limit, "last_updated": utcnow().isoformat()},
        )

    def add_spent(self, sheet_id: str, sheet: str, period: str, amount: float, limit: float) -> float:
        spent = self.get_spent(sheet_id, sheet, period) + amount
        self.set_spent(sheet_id, sheet, period, spent, limit)
        return spent

    # ── Memory ──────────────────────────────────────────────────────

    def append_memory(self, sheet_id: str, entry: MemoryEntry) -> None:
        self.store.append(sheet_id, "AI_Memory", [entry.model_dump(mode="json")])

    def read_memory(self, sheet_id: str) -> list[MemoryEntry]:
        return [MemoryEntry.model_validate(row) for row in self.store.read(sheet_id, "AI_Memory")]

    def add_memory_reset(self, sheet_id: str, row: dict[str, Any]) -> None:
        self.store.append(sheet_id, "Memory_Resets", [row])

    def read_memory_resets(self, sheet_id: str) -> list[dict[str, Any]]:
        return self.store.read(sheet_id, "Memory_Resets")
