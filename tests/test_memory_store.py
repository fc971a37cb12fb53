from datetime import timedelta

import pytest

from finance_bot.errors import StorageUnavailable
from finance_bot.memory.store import context_hash, hash_text, transcript
from finance_bot.models.schemas import MemoryBundle, MemoryEntry, utcnow

CHAT = 100


def entry(i: int, user_id: int = 1, thread_id: str | None = None, base=None) -> MemoryEntry:
    base = base or utcnow() - timedelta(hours=1)
    return MemoryEntry(
        chat_id=CHAT,
        user_id=user_id,
        thread_id=thread_id,
        message=f"msg {i}",
        reply=f"reply {i}",
        intent="chat",
        timestamp=base + timedelta(seconds=i),
    )


@pytest.fixture
def memory(services):
    return services.memory


async def provision(services):
    return await services.groups.get_or_create_group(CHAT, "Kas", owner_user_id=1, owner_username="owner")


@pytest.mark.asyncio
async def test_recent_window_is_newest_first(services, memory):
    await provision(services)
    for i in range(12):
        assert await memory.append(entry(i))

    bundle = await memory.get_recent(CHAT, 1)
    assert len(bundle.entries) == 10
    assert bundle.entries[0].message == "msg 11"
    assert bundle.entries[-1].message == "msg 2"
    assert bundle.summary.startswith("Last intent: chat")


@pytest.mark.asyncio
async def test_filters_by_user_and_thread(services, memory):
    await provision(services)
    await memory.append(entry(1, user_id=1))
    await memory.append(entry(2, user_id=1, thread_id="t1"))
    await memory.append(entry(3, user_id=2, thread_id="t1"))

    assert [e.message for e in (await memory.get_recent(CHAT, 1, "t1")).entries] == ["msg 2"]
    assert [e.message for e in (await memory.get_recent(CHAT, 1)).entries] == ["msg 2", "msg 1"]
    assert [e.message for e in (await memory.get_recent(CHAT, 2)).entries] == ["msg 3"]


@pytest.mark.asyncio
async def test_append_invalidates_cached_bundle(services, memory):
    await provision(services)
    await memory.append(entry(1))
    first = await memory.get_recent(CHAT, 1)

    await memory.append(entry(2))
    second = await memory.get_recent(CHAT, 1)

    assert len(second.entries) == 2
    assert first.context_hash != second.context_hash


@pytest.mark.asyncio
async def test_clear_hides_earlier_entries_only(services, memory):
    await provision(services)
    await memory.append(entry(1))
    await memory.get_recent(CHAT, 1)

    assert await memory.clear(CHAT, 1)
    assert (await memory.get_recent(CHAT, 1)).entries == []

    await memory.append(entry(2, base=utcnow() + timedelta(seconds=5)))
    assert [e.message for e in (await memory.get_recent(CHAT, 1)).entries] == ["msg 2"]


@pytest.mark.asyncio
async def test_clear_for_one_user_keeps_others(services, memory):
    await provision(services)
    await memory.append(entry(1, user_id=1))
    await memory.append(entry(2, user_id=2))

    await memory.clear(CHAT, 1)

    assert (await memory.get_recent(CHAT, 1)).entries == []
    assert len((await memory.get_recent(CHAT, 2)).entries) == 1


@pytest.mark.asyncio
async def test_store_failure_degrades_to_empty(services, memory, monkeypatch):
    await provision(services)

    def broken(sheet_id):
        raise StorageUnavailable("sheet down")

    monkeypatch.setattr(services.repo, "read_memory", broken)
    bundle = await memory.get_recent(CHAT, 1)
    assert bundle.entries == []
    assert bundle.summary == "No conversation history"


@pytest.mark.asyncio
async def test_append_failure_returns_false(services, memory, monkeypatch):
    await provision(services)

    def broken(sheet_id, entry):
        raise StorageUnavailable("sheet down")

    monkeypatch.setattr(services.repo, "append_memory", broken)
    assert await memory.append(entry(1)) is False


@pytest.mark.asyncio
async def test_unknown_group_has_no_memory(memory):
    bundle = await memory.get_recent(404, 1)
    assert bundle.entries == []


def test_context_hash_covers_three_latest_messages():
    entries = [entry(i) for i in (5, 4, 3, 2)]
    assert context_hash([]) == hash_text("empty")
    assert context_hash(entries) == context_hash(entries[:3])
    assert context_hash(entries) != context_hash(entries[1:])


def test_transcript_is_oldest_first():
    bundle = MemoryBundle(entries=[entry(2), entry(1)])
    lines = transcript(bundle).splitlines()
    assert lines[0] == "User: msg 1"
    assert lines[-1] == "Bot (chat): reply 2"
