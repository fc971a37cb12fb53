"""Conversation pipeline: inbound event in, outbound reply out.

Per message::

    received -> context-loaded -> intent-extracted
             -> direct-reply | clarification-sent | confirmation-requested

and per confirmation callback::

    confirmed -> recorded | canceled | expired

Transactions are never recorded without an explicit confirmation from the
member who asked for them.
"""

import inspect
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from finance_bot.audit import AuditLog
from finance_bot.config import Settings
from finance_bot.errors import (
    ConfirmationRejected,
    PermissionDenied,
    ProviderError,
    RateLimited,
    RejectionReason,
    StorageUnavailable,
    TransactionValidationError,
)
from finance_bot.formatters import (
    TYPE_LABELS,
    format_balances,
    format_currency,
    format_stats,
    format_transaction,
    progress_bar,
)
from finance_bot.groups import GroupContextService
from finance_bot.llm.parser import ExtractionContext, IntentParser
from finance_bot.llm.voice import VoiceTranscriber
from finance_bot.memory.store import ConversationMemoryStore
from finance_bot.models.intents import (
    ChatIntent,
    ClarificationIntent,
    CreateTransactionIntent,
    Intent,
    OtherIntent,
    intent_entities,
)
from finance_bot.models.schemas import (
    CommandEvent,
    ConfirmationCallback,
    Group,
    InboundMessage,
    MemoryEntry,
    MessageType,
    OutboundReply,
    Participant,
    ReplyAction,
    TransactionDraft,
)
from finance_bot.pipeline.confirmations import ConfirmationStatus, PendingConfirmationRegistry
from finance_bot.pipeline.recorder import LIMIT_CURRENCY, GroupStats, RecordResult, TransactionRecorder
from finance_bot.ratelimit import UserRateLimiter

CREATE_TRANSACTION = "create_transaction"
GROUP_STATUSES = ("ACTIVE", "INACTIVE", "BANNED")

INTERNAL_ERROR_REPLY = "❌ Terjadi kesalahan internal. Tim kami sudah diberitahu."
STORAGE_READ_ERROR_REPLY = "❌ Data grup sedang tidak bisa diakses. Coba lagi sebentar lagi."

REJECTION_REPLIES = {
    RejectionReason.NOT_FOUND: "❌ Konfirmasi sudah kadaluarsa atau sudah diproses.",
    RejectionReason.EXPIRED: "❌ Konfirmasi sudah kadaluarsa. Kirim ulang transaksinya.",
    RejectionReason.NOT_OWNER: "❌ Ini bukan konfirmasi untuk Anda.",
}

HELP_TEXT = """\
Halo! Saya bot keuangan grup ini.

Kirim pesan biasa untuk mencatat transaksi, misalnya:
• "makan siang 75rb"
• "gaji masuk 5 juta"
• "tukar 100 dolar ke rupiah kurs 15500"

Perintah:
/saldo — saldo dompet grup
/riwayat — transaksi terakhir
/limit — pemakaian limit harian dan bulanan
/batal <id> — batalkan transaksi
/lupa — hapus ingatan percakapan Anda
Admin: /approve <id>, /pending, /setlimit daily|monthly <jumlah>, /config [kunci nilai], /reconcile,
/addadmin <user_id>, /removeadmin <user_id>, /status active|inactive, /stats"""


class EventKind(str, Enum):
    MESSAGE = "message"
    VOICE = "voice"
    COMMAND = "command"
    CALLBACK = "callback"


def event_kind(event: Any) -> EventKind:
    if isinstance(event, ConfirmationCallback):
        return EventKind.CALLBACK
    if isinstance(event, CommandEvent):
        return EventKind.COMMAND
    if isinstance(event, InboundMessage):
        return EventKind.VOICE if event.voice_ref and not event.text else EventKind.MESSAGE
    raise TypeError(f"Unsupported event: {type(event).__name__}")


def confirmation_actions(token: str) -> list[ReplyAction]:
    return [
        ReplyAction(label="✅ Ya, simpan", callback_data=f"confirm:{token}:confirm"),
        ReplyAction(label="❌ Batal", callback_data=f"confirm:{token}:cancel"),
    ]


def confirmation_prompt(draft: TransactionDraft, needs_approval: bool = False) -> str:
    lines = [
        "Mohon konfirmasi transaksi berikut:",
        f"- Jenis: {TYPE_LABELS.get(draft.type, draft.type)}",
        f"- Jumlah: {format_currency(draft.amount, draft.currency)}",
    ]
    if draft.type == "convert" and draft.target_currency and draft.target_amount:
        lines.append(f"- Menjadi: {format_currency(draft.target_amount, draft.target_currency)}")
    lines.append(f"- Deskripsi: {draft.description}")
    if draft.category:
        lines.append(f"- Kategori: {draft.category}")
    if needs_approval:
        lines.append("⚠️ Transaksi besar: perlu persetujuan admin setelah disimpan.")
    return "\n".join(lines)


class ConversationOrchestrator:
    def __init__(
        self,
        groups: GroupContextService,
        memory: ConversationMemoryStore,
        parser: IntentParser,
        confirmations: PendingConfirmationRegistry,
        recorder: TransactionRecorder,
        limiter: UserRateLimiter,
        audit: AuditLog,
        settings: Settings,
        transcriber: VoiceTranscriber | None = None,
    ):
        self.groups = groups
        self.memory = memory
        self.parser = parser
        self.confirmations = confirmations
        self.recorder = recorder
        self.limiter = limiter
        self.audit = audit
        self.settings = settings
        self.transcriber = transcriber

        self.handlers: dict[EventKind, Callable[[Any], Awaitable[OutboundReply | None]]] = {
            EventKind.MESSAGE: self.handle_message,
            EventKind.VOICE: self.handle_voice,
            EventKind.COMMAND: self.handle_command,
            EventKind.CALLBACK: self.handle_callback,
        }
        self.commands: dict[str, Callable[..., Awaitable[OutboundReply]]] = {
            "start": self._cmd_help,
            "help": self._cmd_help,
            "saldo": self._cmd_balance,
            "riwayat": self._cmd_history,
            "limit": self._cmd_limit,
            "batal": self._cmd_cancel,
            "approve": self._cmd_approve,
            "pending": self._cmd_pending,
            "setlimit": self._cmd_setlimit,
            "config": self._cmd_config,
            "reconcile": self._cmd_reconcile,
            "lupa": self._cmd_forget,
            "addadmin": self._cmd_add_admin,
            "removeadmin": self._cmd_remove_admin,
            "status": self._cmd_status,
            "stats": self._cmd_stats,
        }

    # ── Entry point ─────────────────────────────────────────────────

    async def dispatch(self, event: Any) -> OutboundReply | None:
        kind = event_kind(event)
        user_id = event.by_user if kind == EventKind.CALLBACK else event.user_id
        try:
            if kind != EventKind.CALLBACK:
                self.limiter.check(user_id)
            return await self.handlers[kind](event)
        except RateLimited as e:
            logger.info("User {} rate limited for {}s", user_id, e.retry_after)
            return OutboundReply(text=f"⚠️ Terlalu banyak permintaan. Tunggu {e.retry_after} detik lagi.")
        except Exception as e:
            self.audit.error(f"handle_{kind.value}", e, chat_id=event.conversation_id, user_id=user_id)
            return OutboundReply(text=INTERNAL_ERROR_REPLY)

    # ── Context ─────────────────────────────────────────────────────

    async def _load_context(
        self,
        chat_id: int,
        user_id: int,
        username: str = "",
        display_name: str = "",
        chat_title: str | None = None,
    ) -> tuple[Group, Participant]:
        group = await self.groups.get_or_create_group(
            chat_id, chat_title, owner_user_id=user_id, owner_username=username
        )
        participant = await self.groups.get_participant(group, user_id, username, display_name)
        return group, participant

    def _default_context(self, msg: InboundMessage) -> tuple[Group, Participant]:
        """Transient context used when the store cannot be read. Never saved."""
        group = Group(chat_id=msg.conversation_id, name=msg.chat_title or f"Group {msg.conversation_id}", sheet_id="")
        group.settings.currency = self.settings.default_currency
        group.settings.timezone = self.settings.default_timezone
        participant = Participant(user_id=msg.user_id, username=msg.username)
        if msg.user_id in self.settings.super_admin_ids:
            participant.role = "super_admin"
        return group, participant

    # ── Messages ────────────────────────────────────────────────────

    async def handle_message(
        self,
        msg: InboundMessage,
        message_type: MessageType = "text",
        scenario: str = "transaction_analysis",
    ) -> OutboundReply | None:
        text = (msg.text or "").strip()
        if not text:
            return None

        try:
            group, participant = await self._load_context(
                msg.conversation_id, msg.user_id, msg.username, msg.display_name, msg.chat_title
            )
        except StorageUnavailable as e:
            self.audit.error("load_context", e, chat_id=msg.conversation_id, user_id=msg.user_id)
            group, participant = self._default_context(msg)

        if group.status != "ACTIVE":
            logger.info("Ignoring message in {} group {}", group.status, group.chat_id)
            return OutboundReply(text="⛔ Bot tidak aktif di grup ini.")

        memory = await self.memory.get_recent(
            msg.conversation_id, msg.user_id, msg.thread_id, limit=self.settings.memory_window
        )
        context = ExtractionContext(
            group_settings=group.settings,
            memory=memory,
            user_role=participant.role,
            scenario=scenario,
            supported_currencies=self.settings.supported_currencies,
        )

        intent: Intent | None = None
        try:
            intent = await self.parser.parse_message(text, context)
            reply = await self._route(intent, msg, group, participant)
        except Exception as e:
            self.audit.error("process_message", e, chat_id=msg.conversation_id, user_id=msg.user_id)
            reply = OutboundReply(text="Maaf, terjadi kendala saat memproses pesan Anda. Silakan coba lagi.")

        await self._remember(msg, text, intent, reply, message_type)
        return reply

    async def _remember(
        self,
        msg: InboundMessage,
        text: str,
        intent: Intent | None,
        reply: OutboundReply | None,
        message_type: MessageType,
    ) -> None:
        entry = MemoryEntry(
            chat_id=msg.conversation_id,
            user_id=msg.user_id,
            username=msg.username,
            thread_id=msg.thread_id,
            message=text,
            reply=reply.text if reply else "",
            intent=intent.intent if intent else "error",
            entities=intent_entities(intent) if intent else {},
            confidence=intent.confidence if intent else 0.0,
            sentiment=intent.sentiment if intent else "neutral",
            message_type=message_type,
            tokens_used=intent.usage.tokens if intent else 0,
            model=intent.usage.model if intent else "",
        )
        if not await self.memory.append(entry):
            logger.warning("Memory not saved for {}:{}", msg.conversation_id, msg.user_id)

    async def _route(
        self, intent: Intent, msg: InboundMessage, group: Group, participant: Participant
    ) -> OutboundReply | None:
        if isinstance(intent, CreateTransactionIntent) and intent.entities.amount:
            return self._request_confirmation(intent, msg, group, participant)

        if isinstance(intent, ClarificationIntent):
            return OutboundReply(text=intent.reply)

        if isinstance(intent, ChatIntent):
            if not group.settings.enable_chat:
                return None
            return OutboundReply(text=intent.reply or "🙂")

        if isinstance(intent, OtherIntent) and intent.intent == "query_balance":
            return await self._cmd_balance(group, participant)
        if isinstance(intent, OtherIntent) and intent.intent == "query_history":
            return await self._cmd_history(group, participant)

        return OutboundReply(text=intent.reply or "Maaf, saya tidak mengerti maksud Anda.")

    def _request_confirmation(
        self,
        intent: CreateTransactionIntent,
        msg: InboundMessage,
        group: Group,
        participant: Participant,
    ) -> OutboundReply:
        if not participant.can("record"):
            return OutboundReply(text="🔒 Anda hanya memiliki akses lihat dan tidak bisa mencatat transaksi.")

        draft = intent.entities
        preview = self.recorder.build_transaction(group, draft, msg.user_id, msg.username)
        token = self.confirmations.create(
            msg.user_id,
            CREATE_TRANSACTION,
            {
                "chat_id": msg.conversation_id,
                "username": msg.username,
                "draft": draft.model_dump(mode="json"),
            },
        )
        logger.info("Confirmation {} requested by {} in {}", token, msg.user_id, msg.conversation_id)
        return OutboundReply(
            text=confirmation_prompt(draft, preview.requires_admin_approval),
            actions=confirmation_actions(token),
        )

    async def handle_voice(self, msg: InboundMessage) -> OutboundReply | None:
        if self.transcriber is None or msg.voice_data is None:
            return OutboundReply(
                text="🎤 Pesan suara belum bisa diproses. Mohon ketik pesannya."
            )
        try:
            text = await self.transcriber.transcribe(msg.voice_data)
        except ProviderError as e:
            self.audit.error("transcribe_voice", e, chat_id=msg.conversation_id, user_id=msg.user_id)
            text = ""
        if not text:
            return OutboundReply(text="🎤 Maaf, suaranya tidak terdengar jelas. Coba ketik pesannya.")

        reply = await self.handle_message(
            msg.model_copy(update={"text": text}), message_type="voice", scenario="voice_transcript"
        )
        if reply is None:
            return None
        return reply.model_copy(update={"text": f"🎤 \"{text}\"\n\n{reply.text}"})

    # ── Confirmation callbacks ──────────────────────────────────────

    async def handle_callback(self, cb: ConfirmationCallback) -> OutboundReply:
        status = ConfirmationStatus.DISCARDED if cb.action == "cancel" else ConfirmationStatus.RESOLVED
        try:
            entry = self.confirmations.resolve(cb.token, cb.by_user, status=status)
        except ConfirmationRejected as e:
            logger.info("Confirmation {} rejected for {}: {}", cb.token, cb.by_user, e.reason.value)
            return OutboundReply(text=REJECTION_REPLIES[e.reason], rejection=e.reason)

        if cb.action == "cancel":
            logger.info("Confirmation {} canceled by {}", cb.token, cb.by_user)
            return OutboundReply(text="❌ Transaksi dibatalkan.")

        if entry.action != CREATE_TRANSACTION:
            return OutboundReply(text="Aksi tidak diketahui.")
        return await self._commit(entry.owner_user_id, entry.action, entry.payload)

    async def _commit(self, owner_user_id: int, action: str, payload: dict[str, Any]) -> OutboundReply:
        chat_id = payload["chat_id"]
        try:
            draft = TransactionDraft.model_validate(payload["draft"])
            group = await self.groups.get_group(chat_id)
            if group is None:
                raise StorageUnavailable(f"group {chat_id} is not registered")
            result = await self.recorder.record(group, draft, owner_user_id, payload.get("username", ""))
        except TransactionValidationError as e:
            return OutboundReply(
                text=f"Transaksi tidak bisa dicatat: {'; '.join(e.problems)}. Bisa tolong perjelas?"
            )
        except StorageUnavailable as e:
            self.audit.error("commit_transaction", e, chat_id=chat_id, user_id=owner_user_id)
            # Keep the draft so the member can try again instead of losing it.
            token = self.confirmations.create(owner_user_id, action, payload)
            return OutboundReply(
                text="❌ Gagal menyimpan transaksi: penyimpanan sedang tidak bisa diakses. "
                "Transaksi BELUM tercatat. Coba lagi?",
                actions=confirmation_actions(token),
            )
        return self._recorded_reply(result)

    def _recorded_reply(self, result: RecordResult) -> OutboundReply:
        txn = result.transaction
        lines = ["✅ Transaksi berhasil dicatat.", format_transaction(txn)]
        if txn.requires_admin_approval:
            lines.append("⏳ Menunggu persetujuan admin (/approve " + txn.id + ").")
        if result.notify_on_limit and result.daily_limit_exceeded:
            lines.append(
                "⚠️ Limit harian terlampaui: "
                f"{format_currency(result.daily_spent, LIMIT_CURRENCY)} / "
                f"{format_currency(result.daily_limit, LIMIT_CURRENCY)}"
            )
        if result.notify_on_limit and result.monthly_limit_exceeded:
            lines.append(
                "⚠️ Limit bulanan terlampaui: "
                f"{format_currency(result.monthly_spent, LIMIT_CURRENCY)} / "
                f"{format_currency(result.monthly_limit, LIMIT_CURRENCY)}"
            )
        if not result.aggregates_updated:
            lines.append("ℹ️ Saldo akan diperbarui otomatis sebentar lagi.")
        return OutboundReply(text="\n".join(lines), parse_mode="Markdown")

    # ── Commands ────────────────────────────────────────────────────

    async def handle_command(self, cmd: CommandEvent) -> OutboundReply:
        handler = self.commands.get(cmd.command.lower())
        if handler is None:
            return OutboundReply(text="Perintah tidak dikenal. Ketik /help.")
        try:
            inspect.signature(handler).bind(None, None, *cmd.args)
        except TypeError:
            return OutboundReply(text="Format perintah salah. Ketik /help.")

        try:
            group, participant = await self._load_context(
                cmd.conversation_id, cmd.user_id, cmd.username, chat_title=cmd.chat_title
            )
        except StorageUnavailable as e:
            self.audit.error("load_context", e, chat_id=cmd.conversation_id, user_id=cmd.user_id)
            return OutboundReply(text=STORAGE_READ_ERROR_REPLY)
        # Inactive groups keep their commands so an admin can reactivate them.
        if group.status == "BANNED" and not participant.can("moderate"):
            return OutboundReply(text="⛔ Bot tidak aktif di grup ini.")

        try:
            return await handler(group, participant, *cmd.args)
        except PermissionDenied:
            return OutboundReply(text="🔒 Perintah ini hanya untuk admin.")
        except ValueError:
            return OutboundReply(text="Format perintah salah. Ketik /help.")
        except StorageUnavailable as e:
            self.audit.error(f"command_{cmd.command}", e, chat_id=cmd.conversation_id, user_id=cmd.user_id)
            return OutboundReply(text=STORAGE_READ_ERROR_REPLY)

    @staticmethod
    def _require_admin(participant: Participant) -> None:
        if not participant.is_admin:
            raise PermissionDenied(f"user {participant.user_id} is not an admin")

    async def _cmd_help(self, group: Group, participant: Participant) -> OutboundReply:
        return OutboundReply(text=HELP_TEXT)

    async def _cmd_balance(self, group: Group, participant: Participant) -> OutboundReply:
        balances = self.recorder.get_balances(group)
        return OutboundReply(text=format_balances(balances), parse_mode="Markdown")

    async def _cmd_history(self, group: Group, participant: Participant, limit: str = "10") -> OutboundReply:
        transactions = self.recorder.recent(group, limit=max(1, min(int(limit), 50)))
        if not transactions:
            return OutboundReply(text="Belum ada transaksi.")
        lines = ["*Transaksi terakhir:*"] + [format_transaction(t) for t in transactions]
        return OutboundReply(text="\n".join(lines), parse_mode="Markdown")

    async def _cmd_limit(self, group: Group, participant: Participant) -> OutboundReply:
        daily, monthly = self.recorder.spent_today(group)
        settings = group.settings
        lines = [
            f"Harian: {format_currency(daily, LIMIT_CURRENCY)} / "
            f"{format_currency(settings.daily_limit, LIMIT_CURRENCY)}",
            progress_bar(daily, settings.daily_limit),
            f"Bulanan: {format_currency(monthly, LIMIT_CURRENCY)} / "
            f"{format_currency(settings.monthly_limit, LIMIT_CURRENCY)}",
            progress_bar(monthly, settings.monthly_limit),
        ]
        return OutboundReply(text="\n".join(lines))

    async def _cmd_cancel(self, group: Group, participant: Participant, txn_id: str) -> OutboundReply:
        try:
            txn = self.recorder.cancel(group, txn_id, participant)
        except LookupError:
            return OutboundReply(text=f"Transaksi {txn_id} tidak ditemukan.")
        except PermissionDenied:
            return OutboundReply(text="🔒 Hanya pembuat transaksi atau admin yang bisa membatalkan.")
        return OutboundReply(text="🗑 Dibatalkan:\n" + format_transaction(txn), parse_mode="Markdown")

    async def _cmd_approve(self, group: Group, participant: Participant, txn_id: str) -> OutboundReply:
        self._require_admin(participant)
        try:
            txn = self.recorder.approve(group, txn_id, participant)
        except LookupError:
            return OutboundReply(text=f"Transaksi {txn_id} tidak ditemukan.")
        return OutboundReply(text="👍 Disetujui:\n" + format_transaction(txn), parse_mode="Markdown")

    async def _cmd_pending(self, group: Group, participant: Participant) -> OutboundReply:
        self._require_admin(participant)
        pending = self.recorder.pending_approvals(group)
        if not pending:
            return OutboundReply(text="Tidak ada transaksi yang menunggu persetujuan.")
        lines = ["*Menunggu persetujuan:*"] + [format_transaction(t) for t in pending]
        return OutboundReply(text="\n".join(lines), parse_mode="Markdown")

    async def _cmd_setlimit(
        self, group: Group, participant: Participant, period: str, amount: str
    ) -> OutboundReply:
        self._require_admin(participant)
        key = {"daily": "daily_limit", "harian": "daily_limit",
               "monthly": "monthly_limit", "bulanan": "monthly_limit"}.get(period.lower())
        if key is None:
            return OutboundReply(text="Gunakan: /setlimit daily|monthly <jumlah>")
        return await self._update_setting(group, participant, key, amount)

    async def _cmd_config(self, group: Group, participant: Participant, *args: str) -> OutboundReply:
        self._require_admin(participant)
        if not args:
            settings = group.settings.model_dump()
            lines = ["*Pengaturan grup:*"] + [f"• {k}: {v}" for k, v in settings.items()]
            return OutboundReply(text="\n".join(lines), parse_mode="Markdown")
        if len(args) != 2:
            return OutboundReply(text="Gunakan: /config <kunci> <nilai>")
        return await self._update_setting(group, participant, args[0], args[1])

    async def _update_setting(self, group: Group, participant: Participant, key: str, value: str) -> OutboundReply:
        old = getattr(group.settings, key, None)
        try:
            await self.groups.update_setting(group.chat_id, key, value, participant.user_id)
        except ValueError as e:
            return OutboundReply(text=f"❌ {e}")
        self.audit.record(
            "update_setting",
            chat_id=group.chat_id,
            user_id=participant.user_id,
            entity_type="setting",
            entity_id=key,
            old_value=old,
            new_value=value,
        )
        return OutboundReply(text=f"✅ {key} diubah menjadi {value}.")

    async def _cmd_reconcile(self, group: Group, participant: Participant) -> OutboundReply:
        self._require_admin(participant)
        balances = self.recorder.reconcile(group)
        return OutboundReply(text="🔄 Saldo dihitung ulang dari buku besar.\n" + format_balances(balances),
                             parse_mode="Markdown")

    async def _cmd_forget(self, group: Group, participant: Participant) -> OutboundReply:
        cleared = await self.memory.clear(group.chat_id, participant.user_id)
        if not cleared:
            return OutboundReply(text="Ingatan percakapan tidak bisa dihapus sekarang.")
        return OutboundReply(text="🧹 Ingatan percakapan Anda sudah dihapus.")

    async def _set_role(self, group: Group, participant: Participant, user_id: str, role: str) -> OutboundReply:
        self._require_admin(participant)
        target_id = int(user_id)
        if target_id == group.owner_user_id and role != "admin":
            return OutboundReply(text="❌ Pemilik grup selalu admin.")
        before = await self.groups.get_participant(group, target_id)
        updated = await self.groups.set_role(group, participant, target_id, role)
        self.audit.record(
            "set_role",
            chat_id=group.chat_id,
            user_id=participant.user_id,
            entity_type="participant",
            entity_id=str(target_id),
            old_value=before.role,
            new_value=updated.role,
        )
        return OutboundReply(text=f"✅ Peran {target_id} sekarang {updated.role}.")

    async def _cmd_add_admin(self, group: Group, participant: Participant, user_id: str) -> OutboundReply:
        return await self._set_role(group, participant, user_id, "admin")

    async def _cmd_remove_admin(self, group: Group, participant: Participant, user_id: str) -> OutboundReply:
        return await self._set_role(group, participant, user_id, "member")

    async def _cmd_status(self, group: Group, participant: Participant, status: str) -> OutboundReply:
        self._require_admin(participant)
        new_status = status.upper()
        if new_status not in GROUP_STATUSES:
            return OutboundReply(text="Gunakan: /status active|inactive|banned")
        # Bans are set and lifted by super admins only.
        if "BANNED" in (new_status, group.status) and not participant.can("moderate"):
            raise PermissionDenied("only super admins can ban or unban a group")
        await self.groups.set_status(group.chat_id, new_status)
        self.audit.record(
            "set_status",
            chat_id=group.chat_id,
            user_id=participant.user_id,
            entity_type="group",
            entity_id=str(group.chat_id),
            old_value=group.status,
            new_value=new_status,
        )
        return OutboundReply(text=f"✅ Status grup: {new_status}.")

    async def _cmd_stats(self, group: Group, participant: Participant, scope: str = "") -> OutboundReply:
        self._require_admin(participant)
        if scope == "all":
            if not participant.can("moderate"):
                raise PermissionDenied("only super admins can see every group")
            return self._global_stats()
        if scope:
            raise ValueError(scope)
        return OutboundReply(text=format_stats("📊 Statistik grup:", self.recorder.stats(group)))

    def _global_stats(self) -> OutboundReply:
        groups = self.groups.list_groups()
        by_status: dict[str, int] = {}
        combined = GroupStats()
        for group in groups:
            by_status[group.status] = by_status.get(group.status, 0) + 1
            stats = self.recorder.stats(group)
            combined.transactions += stats.transactions
            combined.canceled += stats.canceled
            combined.awaiting_approval += stats.awaiting_approval
            for tx_type, by_currency in stats.totals.items():
                bucket = combined.totals.setdefault(tx_type, {})
                for currency, amount in by_currency.items():
                    bucket[currency] = bucket.get(currency, 0.0) + amount
        header = f"📊 Statistik semua grup ({len(groups)} grup: " + ", ".join(
            f"{status} {count}" for status, count in sorted(by_status.items())
        ) + ")"
        return OutboundReply(text=format_stats(header, combined))
