from datetime import datetime, timezone

import pytest
from tinydb.storages import MemoryStorage

from finance_bot.db.repository import LedgerRepository
from finance_bot.db.sheets import SheetStore
from finance_bot.errors import StorageBackpressure, StorageUnavailable
from finance_bot.models.schemas import Group, GroupSettings, Transaction
from finance_bot.retry import RetryPolicy

FAST = RetryPolicy(max_attempts=3, min_wait=0, max_wait=0, multiplier=0)


class FlakyStorage(MemoryStorage):
    """Raises the queued errors on reads before behaving normally."""

    failures: list[Exception] = []

    def read(self):
        if FlakyStorage.failures:
            raise FlakyStorage.failures.pop(0)
        return super().read()


@pytest.fixture
def store():
    FlakyStorage.failures = []
    store = SheetStore(storage=FlakyStorage, retry=FAST)
    yield store
    store.close()


@pytest.fixture
def repo():
    store = SheetStore(storage=MemoryStorage, retry=FAST)
    yield LedgerRepository(store)
    store.close()


class TestRetry:
    def test_backpressure_is_retried(self, store):
        store.append("s1", "Wallet", [{"currency": "IDR", "balance": 0}])
        FlakyStorage.failures = [StorageBackpressure("429"), StorageBackpressure("429")]

        assert store.read("s1", "Wallet") == [{"currency": "IDR", "balance": 0}]
        assert FlakyStorage.failures == []

    def test_gives_up_after_max_attempts(self, store):
        FlakyStorage.failures = [StorageBackpressure("429")] * 4

        with pytest.raises(StorageBackpressure):
            store.read("s1", "Wallet")
        assert len(FlakyStorage.failures) == 1

    def test_unavailable_is_not_retried(self, store):
        FlakyStorage.failures = [StorageUnavailable("down"), StorageUnavailable("down")]

        with pytest.raises(StorageUnavailable):
            store.read("s1", "Wallet")
        assert len(FlakyStorage.failures) == 1

    def test_io_errors_become_storage_unavailable(self, store):
        FlakyStorage.failures = [OSError("disk gone")]

        with pytest.raises(StorageUnavailable) as exc:
            store.read("s1", "Wallet")
        assert "disk gone" in str(exc.value)

    @pytest.mark.asyncio
    async def test_async_calls_share_the_policy(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise StorageBackpressure("slow down")
            return "ok"

        assert await FAST.acall(flaky) == "ok"
        assert len(attempts) == 3


class TestRepository:
    def test_registry_returns_latest_row(self, repo):
        repo.register_group(Group(chat_id=1, name="Kas", sheet_id="s1", owner_user_id=5))
        repo.update_group(1, status="INACTIVE")

        group = repo.get_group(1)
        assert group.sheet_id == "s1"
        assert group.status == "INACTIVE"
        assert repo.get_group(2) is None

    def test_settings_round_trip(self, repo):
        repo.write_settings("s1", GroupSettings(group_name="Kas", daily_limit=30), updated_by="system")
        repo.set_setting("s1", "enable_chat", False, updated_by="1")

        settings = repo.get_settings("s1")
        assert settings.daily_limit == 30
        assert settings.enable_chat is False
        assert len(repo.store.read("s1", "Settings", {"key": "enable_chat"})) == 1

    def test_wallet_and_counters(self, repo):
        repo.set_balance("s1", "IDR", 0, updated_by="system")
        assert repo.add_to_balance("s1", "IDR", -75000, updated_by="1") == -75000
        assert repo.add_to_balance("s1", "USD", 10, updated_by="1") == 10
        assert repo.get_wallet("s1") == {"IDR": -75000, "USD": 10}

        repo.add_spent("s1", "Daily_Limits", "2024-05-01", 5, limit=20)
        assert repo.add_spent("s1", "Daily_Limits", "2024-05-01", 2.5, limit=20) == 7.5
        assert repo.get_spent("s1", "Daily_Limits", "2024-05-02") == 0

    def test_transactions_sorted_and_updatable(self, repo):
        late = Transaction(
            user_id=1, type="expense", amount=5, currency="USD", description="b",
            timestamp=datetime(2024, 5, 2, tzinfo=timezone.utc),
        )
        early = Transaction(
            user_id=1, type="income", amount=10, currency="USD", description="a",
            timestamp=datetime(2024, 5, 1, tzinfo=timezone.utc),
        )
        repo.append_transaction("s1", late)
        repo.append_transaction("s1", early)

        assert [t.id for t in repo.list_transactions("s1")] == [early.id, late.id]

        when = datetime(2024, 5, 3, tzinfo=timezone.utc)
        assert repo.update_transaction("s1", late.id, canceled=True, canceled_at=when, canceled_by=1) == 1
        stored = repo.get_transaction("s1", late.id)
        assert stored.canceled and stored.canceled_at == when
        assert repo.get_transaction("s1", "txn_missing") is None
