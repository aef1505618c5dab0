"""Factory для создания FastAPI приложения.

Функция create_app() создаёт и настраивает FastAPI app:
- Подключает роутеры (generations, wallet, stream, health)
- Настраивает CORS middleware
- Подключает lifecycle manager
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.generations import router as generations_router
from src.api.health import router as health_router
from src.api.stream import router as stream_router
from src.api.wallet import router as wallet_router
from src.app.lifecycle import ApplicationLifecycle
from src.utils.logging import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from src.config.settings import Settings
    from src.config.yaml_config import YamlConfig
    from src.services.provider_manager import ProviderManager

logger = get_logger(__name__)


def create_app(
    settings: "Settings | None" = None,
    yaml_config: "YamlConfig | None" = None,
    *,
    session_factory: "async_sessionmaker[AsyncSession] | None" = None,
    provider_manager: "ProviderManager | None" = None,
) -> FastAPI:
    """Создать и настроить FastAPI приложение.

    Args:
        settings: Настройки. По умолчанию — глобальные из .env.
        yaml_config: Конфигурация моделей. По умолчанию — из config.yaml.
        session_factory: Фабрика сессий (для тестов).
        provider_manager: Менеджер провайдеров (для тестов).

    Returns:
        Настроенное FastAPI приложение готовое к запуску
    """
    if settings is None:
        from src.config.settings import settings as global_settings

        settings = global_settings
    if yaml_config is None:
        from src.config.yaml_config import yaml_config as global_yaml_config

        yaml_config = global_yaml_config

    lifecycle = ApplicationLifecycle(
        settings,
        yaml_config,
        session_factory=session_factory,
        provider_manager=provider_manager,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        """Управление жизненным циклом приложения."""
        await lifecycle.startup(app)

        yield

        await lifecycle.shutdown()

    app = FastAPI(
        title="GenLedger",
        description="Маршрутизация AI-генераций и леджер кредитов",
        version="0.1.0",
        lifespan=lifespan,
    )
    # Доступно для зависимостей и до завершения startup
    app.state.settings = settings

    # Порядок middleware в FastAPI обратный: последний добавленный
    # выполняется первым. CORS обрабатывает запросы до роутеров.
    if settings.cors.is_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.allow_origins,
            allow_credentials=settings.cors.allow_credentials,
            allow_methods=settings.cors.allow_methods,
            allow_headers=settings.cors.allow_headers,
        )
        logger.info(
            "CORS включён для доменов: %s",
            ", ".join(settings.cors.allow_origins),
        )

    app.include_router(generations_router)
    app.include_router(wallet_router)
    app.include_router(stream_router)
    app.include_router(health_router)

    return app
