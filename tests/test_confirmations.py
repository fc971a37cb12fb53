import asyncio

import pytest

from finance_bot.errors import ConfirmationRejected, RejectionReason
from finance_bot.pipeline.confirmations import PendingConfirmationRegistry


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def registry(clock):
    return PendingConfirmationRegistry(ttl=300, clock=clock)


def test_tokens_are_unique_and_long(registry):
    tokens = {registry.create(1, "create_transaction", {}) for _ in range(50)}
    assert len(tokens) == 50
    assert all(len(t) >= 16 for t in tokens)
    assert len(registry) == 50


def test_resolve_returns_payload(registry):
    token = registry.create(1, "create_transaction", {"draft": {"amount": 75000}})
    entry = registry.resolve(token, by_user=1)
    assert entry.payload == {"draft": {"amount": 75000}}
    assert entry.expires_at == entry.created_at + 300


def test_confirmation_is_single_use(registry):
    token = registry.create(1, "create_transaction", {})
    registry.resolve(token, by_user=1)

    with pytest.raises(ConfirmationRejected) as exc:
        registry.resolve(token, by_user=1)
    assert exc.value.reason == RejectionReason.NOT_FOUND


def test_only_owner_can_resolve(registry):
    token = registry.create(1, "create_transaction", {})

    with pytest.raises(ConfirmationRejected) as exc:
        registry.resolve(token, by_user=2)
    assert exc.value.reason == RejectionReason.NOT_OWNER

    # The owner's prompt survives someone else pressing the button.
    assert registry.get(token) is not None
    registry.resolve(token, by_user=1)


def test_expires_after_ttl(registry, clock):
    token = registry.create(1, "create_transaction", {})

    clock.now += 299.9
    assert registry.get(token) is not None

    clock.now += 0.2
    with pytest.raises(ConfirmationRejected) as exc:
        registry.resolve(token, by_user=1)
    assert exc.value.reason == RejectionReason.EXPIRED
    assert len(registry) == 0


def test_discard(registry):
    token = registry.create(1, "create_transaction", {})
    assert registry.discard(token) is True
    assert registry.discard(token) is False

    with pytest.raises(ConfirmationRejected) as exc:
        registry.resolve(token, by_user=1)
    assert exc.value.reason == RejectionReason.NOT_FOUND


def test_unknown_token(registry):
    with pytest.raises(ConfirmationRejected) as exc:
        registry.resolve("made-up", by_user=1)
    assert exc.value.reason == RejectionReason.NOT_FOUND


@pytest.mark.asyncio
async def test_timer_removes_entry_without_a_read():
    registry = PendingConfirmationRegistry(ttl=0.05)
    token = registry.create(1, "create_transaction", {})
    assert len(registry) == 1

    await asyncio.sleep(0.15)

    assert len(registry) == 0
    with pytest.raises(ConfirmationRejected) as exc:
        registry.resolve(token, by_user=1)
    assert exc.value.reason == RejectionReason.EXPIRED
