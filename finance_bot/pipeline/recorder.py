"""Records confirmed transactions and keeps wallet and limit aggregates.

The ledger is the source of truth. Wallet rows and limit counters are
derived: balance per currency is the fold of the signed effects of every
non-canceled transaction. The ledger append and the aggregate updates are
separate store calls with no cross-row transaction; when an aggregate
update fails after the append succeeded, the group is marked dirty and the
next balance read recomputes the wallet from the ledger.

Overdraft is allowed: balances may go negative.
"""

from collections import defaultdict
from datetime import datetime
from typing import Iterable
from zoneinfo import ZoneInfo

from loguru import logger
from pydantic import BaseModel

from finance_bot.audit import AuditLog
from finance_bot.db.repository import LedgerRepository
from finance_bot.errors import FinanceBotError, PermissionDenied, TransactionValidationError
from finance_bot.formatters import convert_amount
from finance_bot.groups import GroupContextService
from finance_bot.models.schemas import Group, Participant, Transaction, TransactionDraft, utcnow
from finance_bot.pipeline.validation import draft_problems

LIMIT_CURRENCY = "USD"


class RecordResult(BaseModel):
    transaction: Transaction
    aggregates_updated: bool = True
    notify_on_limit: bool = True
    daily_spent: float = 0.0
    monthly_spent: float = 0.0
    daily_limit: float = 0.0
    monthly_limit: float = 0.0

    @property
    def daily_limit_exceeded(self) -> bool:
        return self.transaction.counts_to_daily_limit and self.daily_spent > self.daily_limit

    @property
    def monthly_limit_exceeded(self) -> bool:
        return self.transaction.counts_to_daily_limit and self.monthly_spent > self.monthly_limit


class GroupStats(BaseModel):
    transactions: int = 0
    canceled: int = 0
    awaiting_approval: int = 0
    # type -> currency -> amount, non-canceled only
    totals: dict[str, dict[str, float]] = {}


def wallet_effects(txn: Transaction) -> dict[str, float]:
    """Signed effect of one transaction on each wallet currency."""
    if txn.canceled:
        return {}
    if txn.type == "income":
        return {txn.currency: txn.amount}
    if txn.type == "expense":
        return {txn.currency: -txn.amount}
    if txn.type == "convert":
        return {txn.currency: -txn.amount, txn.target_currency: txn.target_amount or 0.0}
    # Transfers move money between members, not in or out of the group.
    return {}


def fold_balances(transactions: Iterable[Transaction], currencies: Iterable[str] = ()) -> dict[str, float]:
    balances: dict[str, float] = defaultdict(float)
    for currency in currencies:
        balances[currency] += 0.0
    for txn in transactions:
        for currency, delta in wallet_effects(txn).items():
            balances[currency] += delta
    return dict(balances)


def period_keys(moment: datetime, tz_name: str) -> tuple[str, str]:
    local = moment.astimezone(ZoneInfo(tz_name))
    return local.strftime("%Y-%m-%d"), local.strftime("%Y-%m")


def spend_in_limit_currency(group: Group, txn: Transaction) -> float:
    try:
        return convert_amount(txn.amount, txn.currency, LIMIT_CURRENCY, group.settings.exchange_rate)
    except ValueError:
        return txn.amount


def fold_spend(transactions: Iterable[Transaction], group: Group) -> tuple[dict[str, float], dict[str, float]]:
    """Limit spend per day and per month, folded from non-canceled transactions."""
    daily: dict[str, float] = defaultdict(float)
    monthly: dict[str, float] = defaultdict(float)
    for txn in transactions:
        if txn.canceled or not txn.counts_to_daily_limit:
            continue
        day, month = period_keys(txn.timestamp, group.settings.timezone)
        spent = spend_in_limit_currency(group, txn)
        daily[day] += spent
        monthly[month] += spent
    return dict(daily), dict(monthly)


class TransactionRecorder:
    def __init__(
        self,
        repo: LedgerRepository,
        groups: GroupContextService,
        audit: AuditLog,
        supported_currencies: list[str],
    ):
        self.repo = repo
        self.groups = groups
        self.audit = audit
        self.supported_currencies = supported_currencies
        self._dirty: set[str] = set()

    def is_dirty(self, group: Group) -> bool:
        return group.sheet_id in self._dirty

    def build_transaction(
        self, group: Group, draft: TransactionDraft, user_id: int, username: str = ""
    ) -> Transaction:
        if (
            draft.type == "convert"
            and draft.target_amount is None
            and draft.amount
            and draft.exchange_rate
            and {draft.currency, draft.target_currency} == {"IDR", "USD"}
        ):
            target = convert_amount(draft.amount, draft.currency, draft.target_currency, draft.exchange_rate)
            draft = draft.model_copy(update={"target_amount": target})

        problems = draft_problems(draft, self.supported_currencies)
        if problems:
            raise TransactionValidationError(list(problems.values()))

        settings = group.settings

        counts = draft.counts_to_daily_limit
        if counts is None:
            counts = draft.type == "expense"

        try:
            in_group_currency = convert_amount(
                draft.amount, draft.currency, settings.currency, settings.exchange_rate
            )
        except ValueError:
            in_group_currency = draft.amount
        big = in_group_currency >= settings.big_transaction_threshold

        return Transaction(
            user_id=user_id,
            username=username,
            type=draft.type,
            amount=draft.amount,
            currency=draft.currency,
            target_currency=draft.target_currency if draft.type == "convert" else None,
            target_amount=draft.target_amount if draft.type == "convert" else None,
            exchange_rate=draft.exchange_rate if draft.type == "convert" else None,
            description=draft.description or "",
            category=draft.category,
            counts_to_daily_limit=counts,
            requires_admin_approval=big and settings.require_admin_approval,
            tags=draft.tags,
            notes=draft.notes,
        )

    async def record(
        self, group: Group, draft: TransactionDraft, user_id: int, username: str = ""
    ) -> RecordResult:
        txn = self.build_transaction(group, draft, user_id, username)

        # StorageUnavailable from the append propagates: nothing was recorded.
        self.repo.append_transaction(group.sheet_id, txn)
        logger.info(
            "Recorded {} {} {} {} in group {}",
            txn.id, txn.type, txn.amount, txn.currency, group.chat_id,
        )
        self.audit.record(
            "create_transaction",
            chat_id=group.chat_id,
            user_id=user_id,
            entity_type="transaction",
            entity_id=txn.id,
            new_value=txn.model_dump(mode="json"),
        )

        result = RecordResult(
            transaction=txn,
            daily_limit=group.settings.daily_limit,
            monthly_limit=group.settings.monthly_limit,
            notify_on_limit=group.settings.notify_on_limit,
        )
        try:
            self._apply_aggregates(group, txn, result)
        except FinanceBotError as e:
            self._dirty.add(group.sheet_id)
            result.aggregates_updated = False
            self.audit.error("update_aggregates", e, chat_id=group.chat_id, user_id=user_id, entity_id=txn.id)

        try:
            await self.groups.record_activity(group, txn)
        except FinanceBotError as e:
            self.audit.error("update_participant", e, chat_id=group.chat_id, user_id=user_id)
        return result

    def _apply_aggregates(self, group: Group, txn: Transaction, result: RecordResult) -> None:
        by = str(txn.user_id)
        for currency, delta in wallet_effects(txn).items():
            self.repo.add_to_balance(group.sheet_id, currency, delta, updated_by=by)

        day, month = period_keys(txn.timestamp, group.settings.timezone)
        if txn.counts_to_daily_limit:
            spent = spend_in_limit_currency(group, txn)
            result.daily_spent = self.repo.add_spent(
                group.sheet_id, "Daily_Limits", day, spent, group.settings.daily_limit
            )
            result.monthly_spent = self.repo.add_spent(
                group.sheet_id, "Monthly_Limits", month, spent, group.settings.monthly_limit
            )
        else:
            result.daily_spent = self.repo.get_spent(group.sheet_id, "Daily_Limits", day)
            result.monthly_spent = self.repo.get_spent(group.sheet_id, "Monthly_Limits", month)

    # ── Reads and repairs ───────────────────────────────────────────

    def spent_today(self, group: Group, now: datetime | None = None) -> tuple[float, float]:
        if self.is_dirty(group):
            self.reconcile(group)
        day, month = period_keys(now or utcnow(), group.settings.timezone)
        return (
            self.repo.get_spent(group.sheet_id, "Daily_Limits", day),
            self.repo.get_spent(group.sheet_id, "Monthly_Limits", month),
        )

    def reconcile(self, group: Group) -> dict[str, float]:
        """Recompute wallet rows and limit counters from the ledger and overwrite them.

        Returns the wallet balances.
        """
        transactions = self.repo.list_transactions(group.sheet_id)
        stored = self.repo.get_wallet(group.sheet_id)
        balances = fold_balances(transactions, currencies=list(stored) + self.supported_currencies)
        for currency, balance in balances.items():
            if abs(stored.get(currency, 0.0) - balance) > 1e-6:
                logger.warning(
                    "Wallet {} in group {} was {}, ledger says {}",
                    currency, group.chat_id, stored.get(currency, 0.0), balance,
                )
            self.repo.set_balance(group.sheet_id, currency, balance, updated_by="reconcile")

        daily, monthly = fold_spend(transactions, group)
        self._rewrite_counters(group, "Daily_Limits", daily, group.settings.daily_limit)
        self._rewrite_counters(group, "Monthly_Limits", monthly, group.settings.monthly_limit)
        self._dirty.discard(group.sheet_id)
        return balances

    def _rewrite_counters(self, group: Group, sheet: str, folded: dict[str, float], limit: float) -> None:
        stored = self.repo.list_spent(group.sheet_id, sheet)
        for period in set(stored) | set(folded):
            spent = folded.get(period, 0.0)
            if abs(stored.get(period, 0.0) - spent) > 1e-6:
                logger.warning(
                    "{} {} in group {} was {}, ledger says {}",
                    sheet, period, group.chat_id, stored.get(period, 0.0), spent,
                )
                self.repo.set_spent(group.sheet_id, sheet, period, spent, limit)

    def get_balances(self, group: Group) -> dict[str, float]:
        if self.is_dirty(group):
            return self.reconcile(group)
        return self.repo.get_wallet(group.sheet_id)

    def recent(self, group: Group, limit: int = 10) -> list[Transaction]:
        return self.repo.list_transactions(group.sheet_id)[-limit:][::-1]

    def pending_approvals(self, group: Group) -> list[Transaction]:
        return [t for t in self.repo.list_transactions(group.sheet_id) if t.awaiting_approval]

    def stats(self, group: Group) -> GroupStats:
        stats = GroupStats()
        for txn in self.repo.list_transactions(group.sheet_id):
            if txn.canceled:
                stats.canceled += 1
                continue
            stats.transactions += 1
            stats.awaiting_approval += txn.awaiting_approval
            by_currency = stats.totals.setdefault(txn.type, {})
            by_currency[txn.currency] = by_currency.get(txn.currency, 0.0) + txn.amount
        return stats

    def cancel(self, group: Group, txn_id: str, actor: Participant) -> Transaction:
        txn = self.repo.get_transaction(group.sheet_id, txn_id)
        if txn is None:
            raise LookupError(f"Transaction {txn_id} not found")
        if txn.user_id != actor.user_id and not actor.is_admin:
            raise PermissionDenied("Only the creator or an admin can cancel a transaction")
        if txn.canceled:
            return txn

        now = utcnow()
        self.repo.update_transaction(
            group.sheet_id, txn_id, canceled=True, canceled_at=now, canceled_by=actor.user_id
        )
        canceled = txn.model_copy(update={"canceled": True, "canceled_at": now, "canceled_by": actor.user_id})
        self.audit.record(
            "cancel_transaction",
            chat_id=group.chat_id,
            user_id=actor.user_id,
            entity_type="transaction",
            entity_id=txn_id,
            old_value={"canceled": False},
            new_value={"canceled": True},
        )
        try:
            self.reconcile(group)
        except FinanceBotError as e:
            self._dirty.add(group.sheet_id)
            self.audit.error("reconcile_after_cancel", e, chat_id=group.chat_id, user_id=actor.user_id)
        return canceled

    def approve(self, group: Group, txn_id: str, actor: Participant) -> Transaction:
        if not actor.can("approve"):
            raise PermissionDenied("Only admins can approve transactions")
        txn = self.repo.get_transaction(group.sheet_id, txn_id)
        if txn is None:
            raise LookupError(f"Transaction {txn_id} not found")
        if txn.approved_by is not None:
            # Approval fields only move from unset to set.
            return txn
        now = utcnow()
        self.repo.update_transaction(group.sheet_id, txn_id, approved_by=actor.user_id, approved_at=now)
        self.audit.record(
            "approve_transaction",
            chat_id=group.chat_id,
            user_id=actor.user_id,
            entity_type="transaction",
            entity_id=txn_id,
            new_value={"approved_by": actor.user_id},
        )
        return txn.model_copy(update={"approved_by": actor.user_id, "approved_at": now})
