from datetime import datetime, timezone

import pytest

from finance_bot.errors import PermissionDenied, StorageUnavailable, TransactionValidationError
from finance_bot.models.schemas import Participant, Transaction, TransactionDraft
from finance_bot.pipeline.recorder import fold_balances, period_keys, wallet_effects

CHAT = 200
OWNER = 1
MEMBER = 2


def expense(amount: float, currency: str = "IDR", description: str = "makan siang") -> TransactionDraft:
    return TransactionDraft(type="expense", amount=amount, currency=currency, description=description)


def income(amount: float, currency: str = "IDR") -> TransactionDraft:
    return TransactionDraft(type="income", amount=amount, currency=currency, description="gaji")


@pytest.fixture
def recorder(services):
    return services.recorder


async def setup_group(services):
    group = await services.groups.get_or_create_group(CHAT, "Kas", owner_user_id=OWNER, owner_username="owner")
    admin = await services.groups.get_participant(group, OWNER)
    member = await services.groups.get_participant(group, MEMBER)
    return group, admin, member


class TestRecord:
    @pytest.mark.asyncio
    async def test_expense_updates_wallet_and_counters(self, services, recorder):
        group, _, _ = await setup_group(services)

        result = await recorder.record(group, expense(75000), OWNER, "owner")

        assert result.aggregates_updated
        assert result.transaction.id.startswith("txn_")
        assert result.transaction.counts_to_daily_limit
        assert result.daily_spent == pytest.approx(5.0)
        assert result.monthly_spent == pytest.approx(5.0)
        assert not result.daily_limit_exceeded
        assert services.repo.get_wallet(group.sheet_id)["IDR"] == -75000
        assert len(services.repo.list_transactions(group.sheet_id)) == 1

    @pytest.mark.asyncio
    async def test_overdraft_is_allowed(self, services, recorder):
        group, _, _ = await setup_group(services)
        await recorder.record(group, income(50000), OWNER)
        await recorder.record(group, expense(75000), OWNER)

        assert recorder.get_balances(group)["IDR"] == -25000

    @pytest.mark.asyncio
    async def test_income_does_not_count_towards_limits(self, services, recorder):
        group, _, _ = await setup_group(services)
        result = await recorder.record(group, income(5_000_000), OWNER)

        assert not result.transaction.counts_to_daily_limit
        assert result.daily_spent == 0

    @pytest.mark.asyncio
    async def test_daily_limit_exceeded(self, services, recorder):
        group, _, _ = await setup_group(services)
        # 450.000 IDR is 30 USD against a 20 USD daily limit.
        result = await recorder.record(group, expense(450_000), OWNER)

        assert result.daily_limit_exceeded
        assert not result.monthly_limit_exceeded

    @pytest.mark.asyncio
    async def test_convert_touches_both_wallets(self, services, recorder):
        group, _, _ = await setup_group(services)
        draft = TransactionDraft(
            type="convert",
            amount=100,
            currency="USD",
            target_currency="IDR",
            exchange_rate=15500,
            description="tukar dolar",
        )
        result = await recorder.record(group, draft, OWNER)

        assert result.transaction.target_amount == 1_550_000
        wallet = services.repo.get_wallet(group.sheet_id)
        assert wallet["USD"] == -100
        assert wallet["IDR"] == 1_550_000

    @pytest.mark.asyncio
    async def test_invalid_draft_is_rejected(self, services, recorder):
        group, _, _ = await setup_group(services)

        with pytest.raises(TransactionValidationError) as exc:
            await recorder.record(group, expense(-5), OWNER)
        assert exc.value.problems

        with pytest.raises(TransactionValidationError):
            await recorder.record(group, expense(10, currency="EUR"), OWNER)
        assert services.repo.list_transactions(group.sheet_id) == []

    @pytest.mark.asyncio
    async def test_records_participant_activity(self, services, recorder):
        group, _, _ = await setup_group(services)
        await recorder.record(group, expense(75000), MEMBER)
        await recorder.record(group, expense(25000), MEMBER)

        stored = services.repo.get_participant(group.sheet_id, MEMBER)
        assert stored.total_transactions == 2
        assert stored.totals == {"IDR": 100000}


class TestPartialFailure:
    @pytest.mark.asyncio
    async def test_ledger_append_failure_propagates(self, services, recorder, monkeypatch):
        group, _, _ = await setup_group(services)

        def broken(sheet_id, txn):
            raise StorageUnavailable("sheet down")

        monkeypatch.setattr(services.repo, "append_transaction", broken)
        with pytest.raises(StorageUnavailable):
            await recorder.record(group, expense(75000), OWNER)
        assert services.repo.get_wallet(group.sheet_id)["IDR"] == 0

    @pytest.mark.asyncio
    async def test_aggregate_failure_keeps_ledger_and_reconciles(self, services, recorder, monkeypatch):
        group, _, _ = await setup_group(services)

        def broken(*args, **kwargs):
            raise StorageUnavailable("wallet sheet down")

        monkeypatch.setattr(services.repo, "add_to_balance", broken)
        result = await recorder.record(group, expense(75000), OWNER)

        assert not result.aggregates_updated
        assert recorder.is_dirty(group)
        assert len(services.repo.list_transactions(group.sheet_id)) == 1
        assert services.repo.get_wallet(group.sheet_id)["IDR"] == 0
        errors = services.repo.read_log("Error_Logs")
        assert errors[-1]["action"] == "update_aggregates"

        monkeypatch.undo()
        assert recorder.get_balances(group)["IDR"] == -75000
        assert not recorder.is_dirty(group)

    @pytest.mark.asyncio
    async def test_wallet_is_reconstructable_from_ledger(self, services, recorder):
        group, _, _ = await setup_group(services)
        await recorder.record(group, income(1_000_000), OWNER)
        await recorder.record(group, expense(75000), OWNER)
        await recorder.record(group, expense(12, currency="USD"), MEMBER)

        stored = services.repo.get_wallet(group.sheet_id)
        folded = fold_balances(services.repo.list_transactions(group.sheet_id), ["IDR", "USD"])
        assert folded == pytest.approx(stored)

        # Corrupt the stored row; reconciliation restores it from the ledger.
        services.repo.set_balance(group.sheet_id, "IDR", 1, updated_by="test")
        assert recorder.reconcile(group) == pytest.approx(stored)
        assert services.repo.get_wallet(group.sheet_id) == pytest.approx(stored)


class TestApproval:
    @pytest.mark.asyncio
    async def test_big_transaction_needs_admin_approval(self, services, recorder):
        group, admin, member = await setup_group(services)
        result = await recorder.record(group, expense(2_000_000, description="laptop"), MEMBER)
        txn = result.transaction

        assert txn.requires_admin_approval
        assert [t.id for t in recorder.pending_approvals(group)] == [txn.id]

        with pytest.raises(PermissionDenied):
            recorder.approve(group, txn.id, member)

        approved = recorder.approve(group, txn.id, admin)
        assert approved.approved_by == OWNER
        assert recorder.pending_approvals(group) == []

    @pytest.mark.asyncio
    async def test_approval_is_set_once(self, services, recorder):
        group, admin, _ = await setup_group(services)
        txn = (await recorder.record(group, expense(2_000_000), OWNER)).transaction
        recorder.approve(group, txn.id, admin)

        other_admin = admin.model_copy(update={"user_id": 77})
        again = recorder.approve(group, txn.id, other_admin)
        assert again.approved_by == OWNER

    @pytest.mark.asyncio
    async def test_approval_can_be_switched_off(self, services, recorder):
        group, _, _ = await setup_group(services)
        await services.groups.update_setting(CHAT, "require_admin_approval", False, OWNER)
        group = await services.groups.get_group(CHAT)

        result = await recorder.record(group, expense(2_000_000), OWNER)
        assert not result.transaction.requires_admin_approval


class TestCancel:
    @pytest.mark.asyncio
    async def test_creator_can_cancel_and_wallet_is_restored(self, services, recorder):
        group, _, member = await setup_group(services)
        txn = (await recorder.record(group, expense(75000), MEMBER)).transaction

        canceled = recorder.cancel(group, txn.id, member)

        assert canceled.canceled and canceled.canceled_by == MEMBER
        assert services.repo.get_transaction(group.sheet_id, txn.id).canceled
        assert services.repo.get_wallet(group.sheet_id)["IDR"] == 0

    @pytest.mark.asyncio
    async def test_other_members_cannot_cancel(self, services, recorder):
        group, admin, member = await setup_group(services)
        txn = (await recorder.record(group, expense(75000), OWNER)).transaction

        with pytest.raises(PermissionDenied):
            recorder.cancel(group, txn.id, member)

        # Admins can cancel anyone's transaction.
        other = (await recorder.record(group, expense(1000), MEMBER)).transaction
        assert recorder.cancel(group, other.id, admin).canceled

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, services, recorder):
        group, admin, _ = await setup_group(services)
        with pytest.raises(LookupError):
            recorder.cancel(group, "txn_missing", admin)


def test_wallet_effects():
    def txn(**kwargs):
        return Transaction(user_id=1, currency="IDR", amount=100, description="x", **kwargs)

    assert wallet_effects(txn(type="income")) == {"IDR": 100}
    assert wallet_effects(txn(type="expense")) == {"IDR": -100}
    assert wallet_effects(txn(type="transfer")) == {}
    assert wallet_effects(txn(type="expense", canceled=True)) == {}
    assert wallet_effects(txn(type="convert", target_currency="USD", target_amount=0.5)) == {
        "IDR": -100,
        "USD": 0.5,
    }


def test_period_keys_follow_group_timezone():
    moment = datetime(2024, 1, 31, 20, 0, tzinfo=timezone.utc)
    assert period_keys(moment, "Asia/Jakarta") == ("2024-02-01", "2024-02")
    assert period_keys(moment, "UTC") == ("2024-01-31", "2024-01")


class TestLimitCounters:
    @pytest.mark.asyncio
    async def test_cancel_releases_the_limit(self, services, recorder):
        group, admin, _ = await setup_group(services)
        txn = (await recorder.record(group, expense(450_000), OWNER)).transaction
        assert recorder.spent_today(group) == pytest.approx((30.0, 30.0))

        recorder.cancel(group, txn.id, admin)

        assert recorder.spent_today(group) == pytest.approx((0.0, 0.0))

    @pytest.mark.asyncio
    async def test_counter_failure_is_repaired_from_the_ledger(self, services, recorder, monkeypatch):
        group, _, _ = await setup_group(services)

        def broken(*args, **kwargs):
            raise StorageUnavailable("limit sheet down")

        monkeypatch.setattr(services.repo, "add_spent", broken)
        result = await recorder.record(group, expense(150_000), OWNER)
        assert not result.aggregates_updated
        monkeypatch.undo()

        recorder.reconcile(group)
        assert recorder.spent_today(group) == pytest.approx((10.0, 10.0))

    @pytest.mark.asyncio
    async def test_dirty_group_is_repaired_on_limit_read(self, services, recorder, monkeypatch):
        group, _, _ = await setup_group(services)

        def broken(*args, **kwargs):
            raise StorageUnavailable("limit sheet down")

        monkeypatch.setattr(services.repo, "add_spent", broken)
        await recorder.record(group, expense(150_000), OWNER)
        monkeypatch.undo()

        assert recorder.spent_today(group) == pytest.approx((10.0, 10.0))
        assert not recorder.is_dirty(group)

    @pytest.mark.asyncio
    async def test_counters_are_reconstructable_from_ledger(self, services, recorder):
        group, _, _ = await setup_group(services)
        await recorder.record(group, expense(75_000), OWNER)
        await recorder.record(group, expense(3, currency="USD"), OWNER)
        await recorder.record(group, income(1_000_000), OWNER)
        stored = recorder.spent_today(group)

        for sheet in ("Daily_Limits", "Monthly_Limits"):
            for period in services.repo.list_spent(group.sheet_id, sheet):
                services.repo.set_spent(group.sheet_id, sheet, period, 999, limit=20)
        recorder.reconcile(group)

        assert stored == pytest.approx((8.0, 8.0))
        assert recorder.spent_today(group) == pytest.approx(stored)


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_skip_canceled_transactions(self, services, recorder):
        group, admin, _ = await setup_group(services)
        await recorder.record(group, income(500_000), OWNER)
        await recorder.record(group, expense(75_000), MEMBER)
        await recorder.record(group, expense(5, currency="USD"), MEMBER)
        wrong = (await recorder.record(group, expense(20_000), MEMBER)).transaction
        recorder.cancel(group, wrong.id, admin)

        stats = recorder.stats(group)

        assert stats.transactions == 3
        assert stats.canceled == 1
        assert stats.totals == {"income": {"IDR": 500_000}, "expense": {"IDR": 75_000, "USD": 5}}


class TestPermissions:
    def test_flags_follow_the_role(self):
        assert not Participant(user_id=1, role="viewer").can("record")
        assert Participant(user_id=1, role="member").can("record")
        assert not Participant(user_id=1, role="member").can("approve")
        assert Participant(user_id=1, role="admin").can("approve")
        assert not Participant(user_id=1, role="admin").can("moderate")
        assert Participant(user_id=1, role="super_admin").permissions >= Participant(user_id=1, role="admin").permissions
