import json
import re
import time
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from finance_bot.errors import ProviderError, ProviderUnavailable
from finance_bot.formatters import TYPE_LABELS, format_currency, parse_amount
from finance_bot.llm.prompts import Prompt, PromptBuilder
from finance_bot.llm.providers import LLMProvider, ProviderResponse
from finance_bot.memory.store import hash_text, transcript
from finance_bot.models.intents import (
    ChatIntent,
    ClarificationIntent,
    CreateTransactionIntent,
    Intent,
    OtherIntent,
    Usage,
)
from finance_bot.models.schemas import GroupSettings, MemoryBundle, TransactionDraft
from finance_bot.pipeline.validation import complete_draft, draft_problems

FAILED_CONTEXT_TTL = 60.0
SENTIMENTS = ("positive", "neutral", "negative")

DEFAULT_UNKNOWN_REPLY = "Maaf, saya tidak mengerti maksud Anda."
FALLBACK_REPLY = (
    "Maaf, asisten AI sedang tidak tersedia. Untuk mencatat transaksi, "
    'kirim pesan seperti "makan siang 75rb" atau "gaji 5 juta".'
)

INCOME_KEYWORDS = ("gaji", "terima", "dapat", "masuk", "pemasukan", "income", "bonus", "jual")
EXPENSE_KEYWORDS = (
    "beli", "bayar", "makan", "jajan", "belanja", "keluar", "pengeluaran",
    "expense", "spent", "ongkos", "bensin", "parkir",
)
GREETING_KEYWORDS = ("halo", "hai", "hi", "hello", "pagi", "siang", "sore", "malam", "terima kasih", "makasih")
BALANCE_KEYWORDS = ("saldo", "sisa uang", "balance")


class ExtractionContext(BaseModel):
    group_settings: GroupSettings = GroupSettings()
    memory: MemoryBundle = MemoryBundle()
    user_role: str = "member"
    scenario: str = "transaction_analysis"
    supported_currencies: list[str] = ["IDR", "USD"]


def _has_keyword(text: str, keywords: tuple[str, ...]) -> bool:
    return any(re.search(rf"\b{re.escape(k)}\b", text) for k in keywords)


def _confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(confidence, 0.0), 1.0)


def _settings_summary(settings: GroupSettings) -> str:
    return json.dumps(
        {
            "group_name": settings.group_name,
            "currency": settings.currency,
            "daily_limit_usd": settings.daily_limit,
            "monthly_limit_usd": settings.monthly_limit,
            "exchange_rate_idr_per_usd": settings.exchange_rate,
            "timezone": settings.timezone,
        },
        ensure_ascii=False,
    )


def confirmation_text(draft: TransactionDraft) -> str:
    label = TYPE_LABELS.get(draft.type or "", draft.type or "transaksi")
    text = f"{label} {draft.description or ''} {format_currency(draft.amount or 0, draft.currency or 'IDR')}"
    return " ".join(text.split()) + ". Simpan?"


class IntentParser:
    """Turns a chat message into a typed intent.

    Tries the configured providers in order, then a keyword fallback. Never
    raises for language-understanding failures.
    """

    def __init__(
        self,
        providers: list[LLMProvider],
        prompts: PromptBuilder | None = None,
        max_tokens: int = 500,
        temperature: float = 0.3,
        clock=time.monotonic,
    ):
        self.providers = providers
        self.prompts = prompts or PromptBuilder()
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.clock = clock
        self._failed_contexts: dict[str, float] = {}

    # ── Provider calls ──────────────────────────────────────────────

    def _failure_key(self, text: str, context: ExtractionContext) -> str:
        return f"{context.memory.context_hash}:{hash_text(text)}"

    def _recently_failed(self, key: str) -> bool:
        failed_at = self._failed_contexts.get(key)
        if failed_at is None:
            return False
        if self.clock() - failed_at > FAILED_CONTEXT_TTL:
            self._failed_contexts.pop(key, None)
            return False
        return True

    def _remember_failure(self, key: str) -> None:
        now = self.clock()
        # Entries are kept in failure order, so expired ones sit at the front.
        for old in list(self._failed_contexts):
            if now - self._failed_contexts[old] <= FAILED_CONTEXT_TTL:
                break
            del self._failed_contexts[old]
        self._failed_contexts.pop(key, None)
        self._failed_contexts[key] = now

    async def _complete(self, prompt: Prompt) -> tuple[ProviderResponse, str]:
        errors = []
        for index, provider in enumerate(self.providers):
            try:
                response = await provider.complete(prompt, self.max_tokens, self.temperature)
                return response, "primary" if index == 0 else "secondary"
            except ProviderError as e:
                logger.warning("Provider {} failed: {}", provider.name, e)
                errors.append(str(e))
        raise ProviderUnavailable("; ".join(errors) or "no providers configured")

    def build_prompt(self, text: str, context: ExtractionContext) -> Prompt:
        memory_summary = f"{context.memory.summary}\n{transcript(context.memory)}"
        return self.prompts.build(
            context.scenario,
            message=text,
            group_settings=_settings_summary(context.group_settings),
            memory_summary=memory_summary,
            user_role=context.user_role,
        )

    async def parse_message(self, text: str, context: ExtractionContext | None = None) -> Intent:
        context = context or ExtractionContext()
        key = self._failure_key(text, context)
        if self._recently_failed(key):
            logger.info("Same message and context failed recently; using keyword fallback")
            return self.fallback_intent(text, context)

        prompt = self.build_prompt(text, context)
        try:
            response, source = await self._complete(prompt)
        except ProviderUnavailable as e:
            logger.error("All providers failed: {}", e)
            self._remember_failure(key)
            return self.fallback_intent(text, context)

        usage = Usage(tokens=response.tokens, model=response.model, source=source)
        return self.parse_response(response.data, text, context, usage)

    # ── Response parsing ────────────────────────────────────────────

    def parse_response(
        self,
        data: dict[str, Any],
        text: str,
        context: ExtractionContext,
        usage: Usage | None = None,
    ) -> Intent:
        intent = self._intent_from(data, text, context, usage or Usage())
        sentiment = data.get("sentiment")
        if sentiment in SENTIMENTS:
            intent.sentiment = sentiment
        return intent

    def _intent_from(
        self,
        data: dict[str, Any],
        text: str,
        context: ExtractionContext,
        usage: Usage,
    ) -> Intent:
        name = data.get("intent")
        reply = data.get("reply") if isinstance(data.get("reply"), str) else ""
        confidence = _confidence(data.get("confidence"))
        entities = data.get("entities") if isinstance(data.get("entities"), dict) else {}

        if not name or not isinstance(name, str):
            return OtherIntent(
                intent="unknown",
                reply=reply or DEFAULT_UNKNOWN_REPLY,
                confidence=confidence,
                usage=usage,
            )

        if name == "create_transaction":
            return self._parse_create_transaction(data, entities, reply, confidence, text, context, usage)
        if name == "clarification_needed":
            return ClarificationIntent(
                reply=reply or "Bisa tolong perjelas?",
                confidence=confidence,
                original=data,
                usage=usage,
            )
        if name == "chat":
            return ChatIntent(reply=reply, confidence=confidence, usage=usage)
        return OtherIntent(
            intent=name,
            entities=entities,
            reply=reply,
            confidence=confidence,
            usage=usage,
        )

    def _parse_create_transaction(
        self,
        data: dict[str, Any],
        entities: dict[str, Any],
        reply: str,
        confidence: float,
        text: str,
        context: ExtractionContext,
        usage: Usage,
    ) -> Intent:
        try:
            draft = TransactionDraft.model_validate(entities)
        except ValidationError as e:
            logger.warning("AI returned malformed transaction entities: {}", e)
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            return ClarificationIntent(
                reply=(
                    "Sepertinya ada informasi yang tidak valid untuk transaksi "
                    f"({', '.join(fields)}). Bisa tolong perjelas?"
                ),
                missing=fields,
                confidence=confidence,
                original=data,
                usage=usage,
            )

        draft = complete_draft(draft, context.group_settings.currency, text)
        problems = draft_problems(draft, context.supported_currencies)
        if problems:
            logger.warning("AI returned incomplete transaction data: {}", problems)
            return ClarificationIntent(
                reply=(
                    "Sepertinya ada informasi yang kurang untuk transaksi: "
                    f"{'; '.join(problems.values())}. Bisa tolong perjelas?"
                ),
                missing=list(problems),
                confidence=confidence,
                original=data,
                usage=usage,
            )

        return CreateTransactionIntent(
            entities=draft,
            reply=reply or confirmation_text(draft),
            confidence=confidence,
            usage=usage,
        )

    # ── Keyword fallback ────────────────────────────────────────────

    def fallback_intent(self, text: str, context: ExtractionContext | None = None) -> Intent:
        """Deterministic intent from keywords, used when no provider answers."""
        context = context or ExtractionContext()
        usage = Usage(source="fallback")
        lowered = text.lower()
        found = parse_amount(text)

        if found is None:
            if _has_keyword(lowered, BALANCE_KEYWORDS):
                return OtherIntent(
                    intent="query_balance",
                    reply="Saya cek saldo dompet grup dulu.",
                    confidence=0.5,
                    usage=usage,
                )
            if _has_keyword(lowered, GREETING_KEYWORDS):
                return ChatIntent(
                    reply='Halo! Kirim pesan seperti "makan siang 75rb" untuk mencatat pengeluaran.',
                    confidence=0.5,
                    usage=usage,
                )
            return OtherIntent(intent="unknown", reply=FALLBACK_REPLY, usage=usage)

        amount, currency = found
        if _has_keyword(lowered, INCOME_KEYWORDS):
            tx_type = "income"
        elif _has_keyword(lowered, EXPENSE_KEYWORDS):
            tx_type = "expense"
        else:
            tx_type = None

        draft = complete_draft(
            TransactionDraft(type=tx_type, amount=amount, currency=currency),
            context.group_settings.currency,
            text,
        )
        if tx_type is None:
            return ClarificationIntent(
                reply=(
                    f"Saya menemukan jumlah {format_currency(amount, draft.currency)}. "
                    "Apakah ini pemasukan atau pengeluaran?"
                ),
                missing=["type"],
                confidence=0.3,
                original={"intent": "create_transaction", "entities": draft.model_dump(exclude_none=True)},
                usage=usage,
            )
        if draft_problems(draft, context.supported_currencies):
            return OtherIntent(intent="unknown", reply=FALLBACK_REPLY, usage=usage)
        return CreateTransactionIntent(
            entities=draft,
            reply=confirmation_text(draft),
            confidence=0.4,
            usage=usage,
        )
