from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    telegram_bot_token: str = ""

    # Primary provider
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"

    # Secondary provider, OpenAI-compatible endpoint
    fallback_api_key: str = ""
    fallback_base_url: str = "https://api.deepseek.com"
    fallback_model: str = "deepseek-chat"

    ai_max_tokens: int = 500
    ai_temperature: float = 0.3
    ai_timeout_seconds: float = 30.0

    enable_voice: bool = True
    transcription_model: str = "whisper-1"

    db_path: str = "finance_ledger.json"

    super_admin_ids: list[int] = []

    rate_limit_window_seconds: float = 60.0
    rate_limit_max_requests: int = 30
    confirmation_ttl_seconds: float = 300.0
    memory_window: int = 10

    default_currency: str = "IDR"
    default_timezone: str = "Asia/Jakarta"
    supported_currencies: list[str] = ["IDR", "USD"]

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
