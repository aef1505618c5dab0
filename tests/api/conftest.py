"""Фикстуры для тестов HTTP API.

Приложение собирается через create_app() с тестовой БД и фейковыми
провайдерами; lifespan запускается вручную, запросы идут через
httpx.ASGITransport без сети.
"""

from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.app.factory import create_app
from src.config.models import (
    AuthSettings,
    BotSettings,
    LedgerSettings,
    StreamSettings,
)
from src.config.settings import Settings
from src.config.yaml_config import YamlConfig
from tests.fakes import FakeAdapter, make_provider_manager
from tests.helpers import BOT_TOKEN, JWT_SECRET


@pytest.fixture
def api_settings() -> Settings:
    return Settings(
        auth=AuthSettings(jwt_secret=SecretStr(JWT_SECRET)),
        bot=BotSettings(token=SecretStr(BOT_TOKEN)),
        ledger=LedgerSettings(
            refund_base_delay=0.0,
            refund_max_delay=0.0,
            signup_bonus={"text": 50, "image": 10, "video": 0, "audio": 0},
        ),
        stream=StreamSettings(heartbeat_seconds=0.05),
    )


@pytest.fixture
def api_yaml_config() -> YamlConfig:
    """chat: alpha → beta (5 кредитов), picture: alpha (20 кредитов)."""
    return YamlConfig.model_validate(
        {
            "routes": {
                "chat": {
                    "category": "text",
                    "providers": [
                        {"name": "alpha", "model_id": "alpha-chat"},
                        {"name": "beta", "model_id": "beta-chat"},
                    ],
                },
                "picture": {
                    "category": "image",
                    "providers": [{"name": "alpha", "model_id": "alpha-picture"}],
                },
            },
            "pricing": {
                "models": {
                    "chat": {"credits_per_unit": 5},
                    "picture": {"credits_per_unit": 20, "unit_type": "1_image"},
                }
            },
        }
    )


@pytest.fixture
def alpha() -> FakeAdapter:
    return FakeAdapter("alpha")


@pytest.fixture
def beta() -> FakeAdapter:
    return FakeAdapter("beta")


@pytest_asyncio.fixture
async def app(
    api_settings: Settings,
    api_yaml_config: YamlConfig,
    session_factory: async_sessionmaker[AsyncSession],
    alpha: FakeAdapter,
    beta: FakeAdapter,
) -> AsyncGenerator[FastAPI, None]:
    """Приложение с выполненным startup (и shutdown после теста)."""
    application = create_app(
        api_settings,
        api_yaml_config,
        session_factory=session_factory,
        provider_manager=make_provider_manager([alpha, beta]),
    )
    async with application.router.lifespan_context(application):
        yield application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
