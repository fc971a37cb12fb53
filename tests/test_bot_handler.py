from types import SimpleNamespace

import pytest

from finance_bot.bot.handler import _answer_callback, _callback_event
from finance_bot.errors import RejectionReason
from finance_bot.models.schemas import OutboundReply
from finance_bot.pipeline.orchestrator import REJECTION_REPLIES


class FakeQuery:
    def __init__(self, data: str = "confirm:abc:confirm", user_id: int = 1):
        self.data = data
        self.from_user = SimpleNamespace(id=user_id)
        self.answers = []
        self.edits = []

    async def answer(self, text=None, show_alert=False):
        self.answers.append((text, show_alert))

    async def edit_message_text(self, text, parse_mode=None, reply_markup=None):
        self.edits.append(text)


def update_with(query: FakeQuery):
    return SimpleNamespace(callback_query=query, effective_chat=SimpleNamespace(id=500))


class TestCallbacks:
    def test_button_data_becomes_an_event(self):
        event = _callback_event(update_with(FakeQuery("confirm:tok:cancel", user_id=7)))

        assert (event.conversation_id, event.token, event.action, event.by_user) == (500, "tok", "cancel", 7)

    def test_foreign_button_data_is_ignored(self):
        assert _callback_event(update_with(FakeQuery("vote:1"))) is None

    @pytest.mark.asyncio
    async def test_not_owner_gets_an_alert_and_prompt_stays(self):
        query = FakeQuery()
        reply = OutboundReply(text=REJECTION_REPLIES[RejectionReason.NOT_OWNER], rejection=RejectionReason.NOT_OWNER)

        await _answer_callback(update_with(query), reply)

        assert query.answers == [(reply.text, True)]
        assert query.edits == []

    @pytest.mark.asyncio
    async def test_alert_follows_the_code_not_the_wording(self):
        query = FakeQuery()
        reply = OutboundReply(text="Tombol ini bukan milik Anda.", rejection=RejectionReason.NOT_OWNER)

        await _answer_callback(update_with(query), reply)

        assert query.answers == [("Tombol ini bukan milik Anda.", True)]

    @pytest.mark.asyncio
    async def test_other_outcomes_replace_the_prompt(self):
        query = FakeQuery()
        expired = OutboundReply(text=REJECTION_REPLIES[RejectionReason.EXPIRED], rejection=RejectionReason.EXPIRED)

        await _answer_callback(update_with(query), expired)

        assert query.answers == [(None, False)]
        assert query.edits == [expired.text]
