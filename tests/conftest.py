import pytest
from tinydb.storages import MemoryStorage

from fakes import FakeProvider
from finance_bot.config import Settings
from finance_bot.deps import build_services

SUPER_ADMIN_ID = 9000


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        telegram_bot_token="",
        openai_api_key="",
        fallback_api_key="",
        enable_voice=False,
        super_admin_ids=[SUPER_ADMIN_ID],
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def services(settings, provider):
    services = build_services(settings, storage=MemoryStorage, providers=[provider])
    yield services
    services.close()
