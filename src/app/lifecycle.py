"""Управление жизненным циклом приложения.

Класс ApplicationLifecycle инкапсулирует всю логику startup и shutdown:
- Проверка ревизии миграций БД
- Сборка сервисов (маршруты, прайс, леджер, провайдеры, шлюз, роутер)
- Возврат кредитов за запросы, прерванные прошлым перезапуском
- Корректная остановка фоновых генераций и HTTP-клиентов
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from src.core.exceptions import LedgerWriteError
from src.db.base import dispose_engine, get_async_session_factory, get_engine
from src.db.migrations import check_migrations
from src.db.models.generation import GenerationDBStatus
from src.db.models.wallet import WalletTransactionType
from src.db.repositories.generation_repo import GenerationRepository
from src.providers.ai.base import Category
from src.services.event_stream import EventStreamGateway
from src.services.generation_router import GenerationRouter
from src.services.ledger_service import LedgerService
from src.services.pricing_service import CostCalculator
from src.services.provider_manager import ProviderManager
from src.services.routing_service import create_route_registry
from src.utils.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from src.config.settings import Settings
    from src.config.yaml_config import YamlConfig

logger = get_logger(__name__)

# Причина возврата для запросов, которые не пережили перезапуск
INTERRUPTED_MESSAGE = "Генерация прервана перезапуском сервиса. Кредиты возвращены."


class ApplicationLifecycle:
    """Управление жизненным циклом приложения.

    Attributes:
        settings: Настройки приложения из .env
        yaml_config: Конфигурация из config.yaml
        session_factory: Фабрика сессий БД
        provider_manager: Менеджер адаптеров провайдеров
        generation_router: Роутер генераций (создаётся при startup)
    """

    def __init__(
        self,
        settings: Settings,
        yaml_config: YamlConfig,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        provider_manager: ProviderManager | None = None,
    ) -> None:
        """Инициализировать lifecycle manager.

        Args:
            settings: Настройки приложения.
            yaml_config: Конфигурация из config.yaml.
            session_factory: Готовая фабрика сессий (схему готовит вызывающий).
                По умолчанию — глобальный engine из настроек.
            provider_manager: Готовый менеджер провайдеров.
                По умолчанию создаётся из settings.ai.
        """
        self.settings = settings
        self.yaml_config = yaml_config
        self.session_factory = session_factory
        self.provider_manager = provider_manager
        self.generation_router: GenerationRouter | None = None
        self.gateway: EventStreamGateway | None = None

        self._owns_engine = session_factory is None

    async def startup(self, app: FastAPI) -> None:
        """Собрать сервисы и сохранить их в app.state.

        Args:
            app: FastAPI приложение.
        """
        logger.info("Запуск приложения...")

        if self.session_factory is None:
            await check_migrations(get_engine())
            self.session_factory = get_async_session_factory()

        if self.provider_manager is None:
            # Импорт пакета регистрирует фабрики адаптеров
            import src.providers.ai  # noqa: F401

            self.provider_manager = ProviderManager(
                self.settings.ai,
                proxy_url=self.settings.proxy,
            )

        registry = create_route_registry(self.yaml_config)
        calculator = CostCalculator(self.yaml_config.pricing)
        ledger = LedgerService(self.session_factory, self.settings.ledger)
        self.gateway = EventStreamGateway(
            retention_seconds=self.settings.stream.retention_seconds,
            subscriber_queue_size=self.settings.stream.subscriber_queue_size,
        )
        self.generation_router = GenerationRouter(
            registry,
            calculator,
            ledger,
            self.provider_manager,
            self.gateway,
            timeouts=self.yaml_config.generation_timeouts,
            session_factory=self.session_factory,
        )

        app.state.settings = self.settings
        app.state.session_factory = self.session_factory
        app.state.route_registry = registry
        app.state.cost_calculator = calculator
        app.state.ledger = ledger
        app.state.provider_manager = self.provider_manager
        app.state.gateway = self.gateway
        app.state.generation_router = self.generation_router

        await self._refund_interrupted_generations(ledger)

        logger.info(
            "✅ Приложение запущено: моделей=%d, провайдеров=%s",
            len(registry),
            ", ".join(self.provider_manager.available_providers()) or "нет",
        )

    async def shutdown(self) -> None:
        """Остановить фоновые генерации и освободить ресурсы."""
        logger.info("Остановка приложения...")

        if self.generation_router is not None:
            await self.generation_router.shutdown()
        if self.gateway is not None:
            self.gateway.close_all()
        if self.provider_manager is not None:
            await self.provider_manager.aclose()
        if self._owns_engine:
            await dispose_engine()

        logger.info("Приложение остановлено")

    async def _refund_interrupted_generations(self, ledger: LedgerService) -> None:
        """Вернуть кредиты за запросы, прерванные прошлым перезапуском.

        При старте ни один запрос ещё не выполняется, поэтому все записи
        журнала без терминального статуса — осиротевшие. Для каждой
        выполняется возврат (если его ещё не было) и статус FAILED.
        """
        assert self.session_factory is not None

        try:
            async with self.session_factory() as session:
                unfinished = await GenerationRepository(session).list_unfinished()
        except SQLAlchemyError as e:
            logger.error("Не удалось прочитать незавершённые генерации: %s", e)
            return

        for generation in unfinished:
            refund_tx_id = generation.refund_transaction_id
            if generation.charge_transaction_id is not None and refund_tx_id is None:
                # Возврат мог пройти, а запись журнала о нём потеряться
                try:
                    refund_tx_id = await self._find_refund(
                        ledger, generation.request_id
                    )
                except SQLAlchemyError as e:
                    logger.error(
                        "Не удалось проверить возврат по запросу %s: %s",
                        generation.request_id,
                        e,
                    )
                    continue

            if generation.charge_transaction_id is not None and refund_tx_id is None:
                try:
                    refund_tx_id = await ledger.refund(
                        generation.user_id,
                        Category(generation.category),
                        generation.priced_cost,
                        f"Возврат за запрос {generation.request_id}: "
                        f"{INTERRUPTED_MESSAGE}",
                        request_id=generation.request_id,
                    )
                except LedgerWriteError:
                    # Уже залогировано как CRITICAL; запись остаётся незавершённой,
                    # возврат повторится при следующем старте
                    continue

            async with self.session_factory() as session:
                await GenerationRepository(session).finish(
                    generation.request_id,
                    GenerationDBStatus.FAILED,
                    error=INTERRUPTED_MESSAGE,
                    refund_transaction_id=refund_tx_id,
                )

        if unfinished:
            logger.warning(
                "⚠️  Прерванных генераций возвращено: %d", len(unfinished)
            )

    @staticmethod
    async def _find_refund(ledger: LedgerService, request_id: str) -> int | None:
        """ID уже записанного в леджер возврата по запросу, если он есть."""
        for tx in await ledger.get_request_transactions(request_id):
            if tx.type == WalletTransactionType.REFUND.value:
                logger.info(
                    "Возврат по запросу %s уже в леджере: tx_id=%d", request_id, tx.id
                )
                return tx.id
        return None
