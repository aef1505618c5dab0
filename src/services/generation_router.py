"""Роутер генераций: цена → списание → перебор провайдеров → результат.

Жизненный цикл запроса:
    PRICED → CHARGED → (попытки провайдеров) → STREAMING → COMPLETED
    PRICED → CHARGED → (попытки исчерпаны) → REFUNDED → FAILED
    PRICED → списание отклонено → FAILED (провайдеры не вызываются)

Правила перебора кандидатов:
- Кандидаты пробуются строго по порядку маршрута, по одному
- Каждая попытка ограничена таймаутом категории
- RetryableProviderError, таймаут и любая неожиданная ошибка адаптера →
  следующий кандидат
- FatalProviderError → перебор прекращается (проблема во входных данных)

На каждый запрос — ровно одно списание и не больше одного возврата.
Возврат всегда на полную сумму списания и с тем же request_id.

Пример использования:
    router = GenerationRouter(registry, calculator, ledger, providers, gateway)
    request = await router.submit(user_id=42, slug="flux-schnell", prompt="кот")
    # Бизнес-ошибки (UnknownModelError, InsufficientBalanceError)
    # выбрасываются сразу, генерация идёт в фоне.
"""

import asyncio
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config.yaml_config import GenerationTimeouts
from src.core.exceptions import (
    FatalProviderError,
    InsufficientBalanceError,
    ProviderNotAvailableError,
    RetryableProviderError,
)
from src.db.models.generation import GenerationDBStatus
from src.db.repositories.generation_repo import GenerationRepository
from src.providers.ai.base import Category, GenerationResult
from src.services.event_stream import EventStreamGateway, StreamEvent
from src.services.generation_settings import GenerationSettings, resolve_settings
from src.services.ledger_service import LedgerService
from src.services.pricing_service import CostCalculator
from src.services.provider_manager import ProviderManager
from src.services.routing_service import ProviderCandidate, RouteRegistry
from src.utils.logging import get_logger

logger = get_logger(__name__)


class RequestState(StrEnum):
    """Состояние запроса внутри роутера."""

    PRICED = "priced"
    CHARGED = "charged"
    STREAMING = "streaming"
    REFUNDED = "refunded"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.FAILED)


@dataclass
class GenerationRequest:
    """Запрос генерации.

    Attributes:
        request_id: Публичный ID запроса.
        user_id: ID пользователя.
        slug: Slug модели.
        prompt: Промпт пользователя.
        category: Категория баланса.
        settings: Итоговые настройки (дефолты модели + пользовательские).
        priced_cost: Стоимость в кредитах.
        candidates: Кандидаты с настроенными адаптерами, в порядке маршрута.
        state: Текущее состояние.
        attempted_providers: Провайдеры в порядке попыток.
        cancelled: Пользователь отменил запрос.
        refund_task: Запись возврата. Отмена задачи запроса её не прерывает.
    """

    request_id: str
    user_id: int
    slug: str
    prompt: str
    category: Category
    settings: GenerationSettings
    priced_cost: int
    candidates: tuple[ProviderCandidate, ...]
    state: RequestState = RequestState.PRICED
    charge_transaction_id: int | None = None
    refund_transaction_id: int | None = None
    attempted_providers: list[str] = field(default_factory=list)
    provider_name: str | None = None
    content: str | None = None
    file_url: str | None = None
    error: str | None = None
    cancelled: bool = False
    refund_task: "asyncio.Task[int] | None" = field(default=None, repr=False)


# Сообщения пользователю при неудаче
EXHAUSTED_MESSAGE = "Все провайдеры недоступны. Кредиты возвращены."
STREAM_BROKEN_MESSAGE = "Генерация прервалась. Кредиты возвращены."
CANCELLED_MESSAGE = "Запрос отменён. Кредиты возвращены."
SHUTDOWN_MESSAGE = "Сервис остановлен. Кредиты возвращены."

# Повторы записи терминального статуса в журнал
JOURNAL_FINISH_ATTEMPTS = 3
JOURNAL_RETRY_DELAY = 0.2


class GenerationRouter:
    """Оркестратор запросов генерации.

    Attributes:
        _active: Запросы, которые ещё выполняются (по request_id).
        _tasks: Фоновые задачи запросов (по request_id).
    """

    def __init__(
        self,
        registry: RouteRegistry,
        calculator: CostCalculator,
        ledger: LedgerService,
        providers: ProviderManager,
        gateway: EventStreamGateway,
        *,
        timeouts: GenerationTimeouts | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        """Инициализировать роутер.

        Args:
            registry: Реестр маршрутов.
            calculator: Калькулятор стоимости.
            ledger: Леджер.
            providers: Менеджер адаптеров.
            gateway: Шлюз событий.
            timeouts: Таймауты попытки по категориям.
            session_factory: Фабрика сессий для журнала генераций.
                Без неё журнал не ведётся.
        """
        self._registry = registry
        self._calculator = calculator
        self._ledger = ledger
        self._providers = providers
        self._gateway = gateway
        self._timeouts = timeouts or GenerationTimeouts()
        self._session_factory = session_factory

        self._active: dict[str, GenerationRequest] = {}
        self._tasks: dict[str, asyncio.Task[GenerationRequest]] = {}

    # =========================================================================
    # ПУБЛИЧНЫЙ API
    # =========================================================================

    async def submit(
        self,
        user_id: int,
        slug: str,
        prompt: str,
        settings: Mapping[str, Any] | None = None,
    ) -> GenerationRequest:
        """Оплатить запрос и запустить генерацию в фоне.

        Разрешение маршрута, расчёт цены и списание выполняются сразу,
        поэтому бизнес-ошибки получает вызывающий код.

        Raises:
            UnknownModelError: Модели нет в реестре.
            ProviderNotAvailableError: Ни один провайдер модели не настроен.
            InsufficientBalanceError: Недостаточно кредитов.
            LedgerWriteError: Сбой записи списания.
            pydantic.ValidationError / ValueError: Неверные настройки.
        """
        request = await self.prepare(user_id, slug, prompt, settings)

        task = asyncio.create_task(
            self.run(request), name=f"generation-{request.request_id}"
        )
        self._tasks[request.request_id] = task
        task.add_done_callback(self._on_task_done)
        return request

    async def prepare(
        self,
        user_id: int,
        slug: str,
        prompt: str,
        settings: Mapping[str, Any] | None = None,
    ) -> GenerationRequest:
        """Шаги до обращения к провайдерам: маршрут, цена, списание."""
        route = self._registry.get_route(slug)
        resolved_settings = resolve_settings(slug, route.category, settings)

        candidates = tuple(
            candidate
            for candidate in route.candidates
            if self._is_candidate_available(candidate, route.category)
        )
        if not candidates:
            raise ProviderNotAvailableError(
                f"Для модели {slug} не настроен ни один провайдер"
            )

        request = GenerationRequest(
            request_id=uuid.uuid4().hex,
            user_id=user_id,
            slug=slug,
            prompt=prompt,
            category=route.category,
            settings=resolved_settings,
            # Без настроек пользователя действует плоская цена модели,
            # дефолты модели нужны только адаптеру
            priced_cost=self._calculator.price(
                slug, resolved_settings if settings else None
            ),
            candidates=candidates,
        )

        try:
            request.charge_transaction_id = await self._ledger.charge(
                user_id,
                request.category,
                request.priced_cost,
                request_id=request.request_id,
                description=f"Генерация {slug}, запрос {request.request_id}",
            )
        except InsufficientBalanceError as e:
            request.state = RequestState.FAILED
            request.error = str(e)
            logger.info(
                "Недостаточно кредитов: user_id=%d, model=%s, нужно %d, есть %d",
                user_id,
                slug,
                e.required,
                e.available,
            )
            raise

        request.state = RequestState.CHARGED
        self._active[request.request_id] = request

        logger.info(
            "Запрос оплачен: request_id=%s, user_id=%d, model=%s, cost=%d, "
            "кандидаты=%s",
            request.request_id,
            user_id,
            slug,
            request.priced_cost,
            [c.provider_name for c in candidates],
        )

        await self._journal_create(request)
        self._gateway.publish(
            StreamEvent(request_id=request.request_id, status=GenerationDBStatus.PENDING)
        )
        return request

    async def run(self, request: GenerationRequest) -> GenerationRequest:
        """Перебрать кандидатов и довести запрос до терминального состояния.

        Raises:
            LedgerWriteError: Возврат не удалось записать (уже залогирован
                как CRITICAL).
        """
        try:
            await self._run(request)
        except asyncio.CancelledError:
            if not request.state.is_terminal:
                await self._fail(request, SHUTDOWN_MESSAGE)
            raise
        finally:
            self._active.pop(request.request_id, None)
        return request

    def cancel(self, request_id: str) -> bool:
        """Отменить запрос.

        Вызов провайдера, который уже идёт, не прерывается. Новые события
        не публикуются, следующие кандидаты не пробуются. Если текущая
        попытка закончится неудачей, кредиты будут возвращены.

        Returns:
            True если запрос был активен и отменён.
        """
        request = self._active.get(request_id)
        if request is None or request.state.is_terminal or request.cancelled:
            return False

        request.cancelled = True
        self._gateway.close(request_id)
        logger.info("Запрос отменён пользователем: request_id=%s", request_id)
        return True

    def get_active(self, request_id: str) -> GenerationRequest | None:
        """Активный запрос по ID."""
        return self._active.get(request_id)

    async def shutdown(self) -> None:
        """Отменить фоновые задачи и дождаться их завершения."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Остановлено фоновых генераций: %d", len(tasks))
        self._tasks.clear()

    # =========================================================================
    # ПЕРЕБОР КАНДИДАТОВ
    # =========================================================================

    def _is_candidate_available(
        self, candidate: ProviderCandidate, category: Category
    ) -> bool:
        adapter = self._providers.get_adapter(candidate.provider_name)
        return adapter is not None and adapter.supports_category(category)

    async def _run(self, request: GenerationRequest) -> None:
        timeout = self._timeouts.for_category(request.category)
        options = request.settings.to_options()
        fatal_error: FatalProviderError | None = None

        for candidate in request.candidates:
            if request.cancelled:
                break

            adapter = self._providers.get_adapter(candidate.provider_name)
            if adapter is None:
                continue

            request.attempted_providers.append(candidate.provider_name)
            await self._journal_attempt(request, candidate.provider_name)

            try:
                async with asyncio.timeout(timeout):
                    result = await adapter.generate(
                        candidate.provider_model_id,
                        request.prompt,
                        category=request.category,
                        options={**candidate.extra_options, **options},
                    )
            except FatalProviderError as e:
                logger.warning(
                    "Фатальная ошибка провайдера, перебор остановлен: "
                    "request_id=%s, %s",
                    request.request_id,
                    e,
                )
                fatal_error = e
                break
            except RetryableProviderError as e:
                logger.warning(
                    "Временный сбой провайдера: request_id=%s, %s",
                    request.request_id,
                    e,
                )
                continue
            except TimeoutError:
                logger.warning(
                    "Таймаут провайдера %s (%.0fs): request_id=%s",
                    candidate.provider_name,
                    timeout,
                    request.request_id,
                )
                continue
            except Exception:
                logger.exception(
                    "Неожиданная ошибка адаптера %s: request_id=%s",
                    candidate.provider_name,
                    request.request_id,
                )
                continue

            await self._deliver(request, candidate, result, timeout)
            return

        if fatal_error is not None:
            reason = f"Запрос отклонён: {fatal_error.message}. Кредиты возвращены."
        elif request.cancelled:
            reason = CANCELLED_MESSAGE
        else:
            reason = EXHAUSTED_MESSAGE
        await self._fail(request, reason)

    async def _deliver(
        self,
        request: GenerationRequest,
        candidate: ProviderCandidate,
        result: GenerationResult,
        timeout: float,
    ) -> None:
        """Переслать результат клиенту и завершить запрос."""
        request.state = RequestState.STREAMING
        request.provider_name = candidate.provider_name
        await self._journal_streaming(request)
        self._publish(
            request,
            StreamEvent(request.request_id, status=GenerationDBStatus.STREAMING),
        )

        parts: list[str] = []
        if result.content:
            parts.append(result.content)
            self._publish(
                request,
                StreamEvent(request.request_id, content_delta=result.content),
            )

        if result.stream is not None:
            try:
                async with asyncio.timeout(timeout):
                    async for delta in result.stream:
                        if request.cancelled:
                            break
                        if not delta:
                            continue
                        parts.append(delta)
                        self._publish(
                            request,
                            StreamEvent(request.request_id, content_delta=delta),
                        )
            except Exception:
                logger.exception(
                    "Поток результата прервался: request_id=%s, provider=%s",
                    request.request_id,
                    candidate.provider_name,
                )
                request.content = "".join(parts) or None
                await self._fail(request, STREAM_BROKEN_MESSAGE)
                return

        request.content = "".join(parts) or None
        request.file_url = result.file_url
        if result.file_url:
            self._publish(
                request,
                StreamEvent(request.request_id, file_url=result.file_url),
            )

        request.state = RequestState.COMPLETED
        await self._journal_finish(request, GenerationDBStatus.COMPLETED)
        self._publish(
            request,
            StreamEvent(request.request_id, status=GenerationDBStatus.COMPLETED),
        )

        logger.info(
            "Генерация завершена: request_id=%s, provider=%s, попытки=%s",
            request.request_id,
            candidate.provider_name,
            request.attempted_providers,
        )

    async def _fail(self, request: GenerationRequest, reason: str) -> None:
        """Вернуть кредиты и перевести запрос в FAILED."""
        request.error = reason

        refund_error: Exception | None = None
        if (
            request.charge_transaction_id is not None
            and request.refund_transaction_id is None
        ):
            if request.refund_task is None:
                request.refund_task = asyncio.create_task(
                    self._ledger.refund(
                        request.user_id,
                        request.category,
                        request.priced_cost,
                        f"Возврат за запрос {request.request_id}: {reason}",
                        request_id=request.request_id,
                    ),
                    name=f"refund-{request.request_id}",
                )
            try:
                # Остановка сервиса прерывает ожидание, но не сам возврат:
                # повторный _fail из run() дождётся той же задачи
                request.refund_transaction_id = await asyncio.shield(
                    request.refund_task
                )
                request.state = RequestState.REFUNDED
            except Exception as e:
                # Уже залогировано леджером как CRITICAL
                refund_error = e

        request.state = RequestState.FAILED
        await self._journal_finish(request, GenerationDBStatus.FAILED)
        self._publish(
            request,
            StreamEvent(
                request.request_id,
                status=GenerationDBStatus.FAILED,
                error=reason,
            ),
        )

        logger.warning(
            "Генерация не удалась: request_id=%s, попытки=%s, причина: %s",
            request.request_id,
            request.attempted_providers,
            reason,
        )

        if refund_error is not None:
            raise refund_error

    def _publish(self, request: GenerationRequest, event: StreamEvent) -> None:
        # После отмены клиенту ничего не отправляем
        if not request.cancelled:
            self._gateway.publish(event)

    def _on_task_done(self, task: "asyncio.Task[GenerationRequest]") -> None:
        for request_id, tracked in list(self._tasks.items()):
            if tracked is task:
                del self._tasks[request_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Фоновая генерация завершилась ошибкой: %s", error)

    # =========================================================================
    # ЖУРНАЛ
    # =========================================================================
    # Журнал вспомогательный: его сбой не должен ломать оплату и доставку,
    # поэтому ошибки БД здесь логируются и не пробрасываются.

    async def _journal_create(self, request: GenerationRequest) -> None:
        if self._session_factory is None:
            return
        try:
            async with self._session_factory() as session:
                await GenerationRepository(session).create_generation(
                    request_id=request.request_id,
                    user_id=request.user_id,
                    model_slug=request.slug,
                    category=request.category.value,
                    priced_cost=request.priced_cost,
                    charge_transaction_id=request.charge_transaction_id,
                )
        except SQLAlchemyError:
            logger.exception("Не удалось записать генерацию: %s", request.request_id)

    async def _journal_attempt(
        self, request: GenerationRequest, provider_name: str
    ) -> None:
        if self._session_factory is None:
            return
        try:
            async with self._session_factory() as session:
                await GenerationRepository(session).record_attempt(
                    request.request_id, provider_name
                )
        except SQLAlchemyError:
            logger.exception("Не удалось записать попытку: %s", request.request_id)

    async def _journal_streaming(self, request: GenerationRequest) -> None:
        if self._session_factory is None or request.provider_name is None:
            return
        try:
            async with self._session_factory() as session:
                await GenerationRepository(session).mark_streaming(
                    request.request_id, request.provider_name
                )
        except SQLAlchemyError:
            logger.exception("Не удалось обновить статус: %s", request.request_id)

    async def _journal_finish(
        self, request: GenerationRequest, status: GenerationDBStatus
    ) -> None:
        """Записать терминальный статус, с повторами.

        Незавершённая запись журнала при следующем старте считается
        прерванной и получает возврат, поэтому здесь сбой повторяется.
        """
        if self._session_factory is None:
            return
        for attempt in range(JOURNAL_FINISH_ATTEMPTS):
            try:
                async with self._session_factory() as session:
                    await GenerationRepository(session).finish(
                        request.request_id,
                        status,
                        provider_name=request.provider_name,
                        content=request.content,
                        file_url=request.file_url,
                        error=request.error,
                        refund_transaction_id=request.refund_transaction_id,
                    )
                return
            except SQLAlchemyError:
                if attempt == JOURNAL_FINISH_ATTEMPTS - 1:
                    logger.exception(
                        "Не удалось завершить генерацию: %s", request.request_id
                    )
                    return
                logger.warning(
                    "Сбой записи статуса генерации %s (попытка %d/%d)",
                    request.request_id,
                    attempt + 1,
                    JOURNAL_FINISH_ATTEMPTS,
                )
                await asyncio.sleep(JOURNAL_RETRY_DELAY * 2**attempt)
