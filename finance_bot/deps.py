from dataclasses import dataclass

from tinydb.storages import Storage

from finance_bot.audit import AuditLog
from finance_bot.cache import ContextCache
from finance_bot.config import Settings
from finance_bot.db.repository import LedgerRepository
from finance_bot.db.sheets import SheetStore
from finance_bot.groups import GroupContextService
from finance_bot.llm.parser import IntentParser
from finance_bot.llm.prompts import PromptBuilder
from finance_bot.llm.providers import LLMProvider
from finance_bot.llm.voice import VoiceTranscriber
from finance_bot.memory.store import ConversationMemoryStore
from finance_bot.pipeline.confirmations import PendingConfirmationRegistry
from finance_bot.pipeline.orchestrator import ConversationOrchestrator
from finance_bot.pipeline.recorder import TransactionRecorder
from finance_bot.ratelimit import UserRateLimiter


@dataclass
class Services:
    settings: Settings
    store: SheetStore
    repo: LedgerRepository
    cache: ContextCache
    groups: GroupContextService
    memory: ConversationMemoryStore
    parser: IntentParser
    confirmations: PendingConfirmationRegistry
    recorder: TransactionRecorder
    audit: AuditLog
    orchestrator: ConversationOrchestrator

    def close(self) -> None:
        self.store.close()


def build_providers(settings: Settings) -> list[LLMProvider]:
    """Primary then secondary provider; a provider without a key is skipped."""
    candidates = [
        LLMProvider(
            "openai",
            settings.openai_api_key,
            settings.llm_model,
            base_url=settings.openai_base_url,
            timeout=settings.ai_timeout_seconds,
        ),
        LLMProvider(
            "deepseek",
            settings.fallback_api_key,
            settings.fallback_model,
            base_url=settings.fallback_base_url,
            timeout=settings.ai_timeout_seconds,
        ),
    ]
    return [p for p in candidates if p.enabled]


def build_services(
    settings: Settings,
    storage: type[Storage] | None = None,
    providers: list[LLMProvider] | None = None,
    transcriber: VoiceTranscriber | None = None,
) -> Services:
    """Wire every component once per process. Tests pass their own storage and providers."""
    store = SheetStore(settings.db_path, storage=storage)
    repo = LedgerRepository(store)
    cache = ContextCache()
    audit = AuditLog(repo)
    groups = GroupContextService(repo, cache, settings)
    memory = ConversationMemoryStore(repo, cache, groups, window=settings.memory_window)

    prompts = PromptBuilder()
    prompts.validate()
    parser = IntentParser(
        build_providers(settings) if providers is None else providers,
        prompts=prompts,
        max_tokens=settings.ai_max_tokens,
        temperature=settings.ai_temperature,
    )

    if transcriber is None and settings.enable_voice and settings.openai_api_key:
        transcriber = VoiceTranscriber(
            settings.openai_api_key, settings.transcription_model, base_url=settings.openai_base_url
        )

    confirmations = PendingConfirmationRegistry(ttl=settings.confirmation_ttl_seconds)
    recorder = TransactionRecorder(repo, groups, audit, settings.supported_currencies)
    limiter = UserRateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_seconds)
    orchestrator = ConversationOrchestrator(
        groups=groups,
        memory=memory,
        parser=parser,
        confirmations=confirmations,
        recorder=recorder,
        limiter=limiter,
        audit=audit,
        settings=settings,
        transcriber=transcriber,
    )
    return Services(
        settings=settings,
        store=store,
        repo=repo,
        cache=cache,
        groups=groups,
        memory=memory,
        parser=parser,
        confirmations=confirmations,
        recorder=recorder,
        audit=audit,
        orchestrator=orchestrator,
    )
