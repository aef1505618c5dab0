"""Тесты роутера генераций (GenerationRouter).

Проверяют главный денежный контракт: ровно одно списание на запрос
и не больше одного возврата на полную сумму.

Сценарии:
- Fallback на следующего кандидата при временном сбое и таймауте
- Исчерпание кандидатов → возврат и FAILED
- Фатальная ошибка останавливает перебор
- Бизнес-ошибки до списания (неизвестная модель, нет провайдеров)
- Потоковая доставка и обрыв потока
- Отмена запроса и остановка сервиса
"""

import asyncio
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config.models import LedgerSettings
from src.config.yaml_config import GenerationTimeouts, PricingConfig, PricingEntry
from src.core.exceptions import (
    InsufficientBalanceError,
    ProviderNotAvailableError,
    UnknownModelError,
)
from src.db.models.generation import GenerationDBStatus
from src.db.models.wallet import WalletTransactionType
from src.db.repositories.generation_repo import GenerationRepository
from src.providers.ai.base import Category, GenerationResult
from src.services.event_stream import EventStreamGateway, StreamEvent
from src.services.generation_router import (
    CANCELLED_MESSAGE,
    EXHAUSTED_MESSAGE,
    SHUTDOWN_MESSAGE,
    STREAM_BROKEN_MESSAGE,
    GenerationRouter,
    GenerationRequest,
    RequestState,
)
from src.services.generation_settings import resolve_settings
from src.services.ledger_service import LedgerService
from src.services.pricing_service import CostCalculator
from src.services.routing_service import ModelRoute, ProviderCandidate, RouteRegistry
from tests.fakes import FakeAdapter, iter_deltas, make_provider_manager

USER_ID = 7
CHAT_COST = 5
PICTURE_COST = 20


# ==============================================================================
# ФИКСТУРЫ
# ==============================================================================


@pytest.fixture
def route_registry() -> RouteRegistry:
    """Маршруты: chat (три кандидата), picture (один), ghost (не настроен)."""
    return RouteRegistry(
        {
            "chat": ModelRoute(
                "chat",
                Category.TEXT,
                (
                    ProviderCandidate("alpha", "alpha-chat"),
                    ProviderCandidate("beta", "beta-chat", {"mode": "fast"}),
                    ProviderCandidate("gamma", "gamma-chat"),
                ),
            ),
            "picture": ModelRoute(
                "picture",
                Category.IMAGE,
                (ProviderCandidate("alpha", "alpha-picture"),),
            ),
            "ghost": ModelRoute(
                "ghost",
                Category.TEXT,
                (
                    ProviderCandidate("unconfigured", "x"),
                    ProviderCandidate("unregistered", "y"),
                ),
            ),
        }
    )


@pytest.fixture
def calculator() -> CostCalculator:
    return CostCalculator(
        PricingConfig(
            models={
                "chat": PricingEntry(credits_per_unit=CHAT_COST),
                "picture": PricingEntry(credits_per_unit=PICTURE_COST),
            }
        )
    )


@pytest.fixture
def gateway() -> EventStreamGateway:
    return EventStreamGateway(retention_seconds=60.0)


@pytest_asyncio.fixture
async def funded_ledger(ledger: LedgerService) -> LedgerService:
    await ledger.credit(
        USER_ID,
        Category.TEXT,
        100,
        "Пополнение",
        transaction_type=WalletTransactionType.PURCHASE,
    )
    return ledger


def _make_router(
    adapters: list[FakeAdapter],
    registry: RouteRegistry,
    calculator: CostCalculator,
    ledger: LedgerService,
    gateway: EventStreamGateway,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    timeouts: GenerationTimeouts | None = None,
) -> GenerationRouter:
    return GenerationRouter(
        registry,
        calculator,
        ledger,
        make_provider_manager(adapters, unconfigured=["unconfigured"]),
        gateway,
        timeouts=timeouts,
        session_factory=session_factory,
    )


async def _run_and_collect(
    router: GenerationRouter,
    gateway: EventStreamGateway,
    request: GenerationRequest,
) -> list[StreamEvent]:
    """Выполнить запрос и вернуть события канала (снимок + живые)."""
    async with gateway.subscribe(request.request_id) as events:
        await router.run(request)
        return [event async for event in events]


async def _history_types(
    ledger: LedgerService, category: Category = Category.TEXT
) -> list[WalletTransactionType]:
    history = await ledger.get_transaction_history(USER_ID, category)
    return [tx.type for tx in reversed(history)]


# ==============================================================================
# FALLBACK
# ==============================================================================


@pytest.mark.asyncio
async def test_fallback_to_next_candidate(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    """alpha — временный сбой, beta — успех: одно списание, без возврата."""
    alpha = FakeAdapter("alpha", ["retry"])
    beta = FakeAdapter("beta", [GenerationResult(content="Привет")])
    gamma = FakeAdapter("gamma", [GenerationResult(content="не должен")])
    router = _make_router(
        [alpha, beta, gamma], route_registry, calculator, funded_ledger, gateway
    )

    request = await router.prepare(USER_ID, "chat", "скажи привет")
    await router.run(request)

    assert request.state == RequestState.COMPLETED
    assert request.attempted_providers == ["alpha", "beta"]
    assert request.provider_name == "beta"
    assert request.content == "Привет"
    assert gamma.calls == []
    assert await funded_ledger.get_balance(USER_ID, Category.TEXT) == 100 - CHAT_COST
    assert await _history_types(funded_ledger) == [
        WalletTransactionType.PURCHASE,
        WalletTransactionType.CHARGE,
    ]


@pytest.mark.asyncio
async def test_unexpected_adapter_error_falls_through(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    alpha = FakeAdapter("alpha", [RuntimeError("boom")])
    beta = FakeAdapter("beta", [GenerationResult(content="ok")])
    router = _make_router(
        [alpha, beta], route_registry, calculator, funded_ledger, gateway
    )

    request = await router.prepare(USER_ID, "chat", "q")
    await router.run(request)

    assert request.state == RequestState.COMPLETED
    assert request.provider_name == "beta"


@pytest.mark.asyncio
async def test_timeout_moves_to_next_candidate(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    async def hang(prompt: str, options: dict[str, Any]) -> GenerationResult:
        await asyncio.sleep(10)
        return GenerationResult(content="слишком поздно")

    alpha = FakeAdapter("alpha", [hang])
    beta = FakeAdapter("beta", [GenerationResult(content="вовремя")])
    router = _make_router(
        [alpha, beta],
        route_registry,
        calculator,
        funded_ledger,
        gateway,
        timeouts=GenerationTimeouts(text=0.05),
    )

    request = await router.prepare(USER_ID, "chat", "q")
    await router.run(request)

    assert request.attempted_providers == ["alpha", "beta"]
    assert request.content == "вовремя"


@pytest.mark.asyncio
async def test_all_candidates_exhausted_refunds(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    """Все кандидаты упали: одно списание и один возврат на ту же сумму."""
    adapters = [FakeAdapter(name) for name in ("alpha", "beta", "gamma")]
    router = _make_router(adapters, route_registry, calculator, funded_ledger, gateway)

    request = await router.prepare(USER_ID, "chat", "q")
    events = await _run_and_collect(router, gateway, request)

    assert request.state == RequestState.FAILED
    assert request.error == EXHAUSTED_MESSAGE
    assert request.attempted_providers == ["alpha", "beta", "gamma"]
    assert request.refund_transaction_id is not None
    assert await funded_ledger.get_balance(USER_ID, Category.TEXT) == 100

    history = await funded_ledger.get_transaction_history(USER_ID, Category.TEXT)
    charges = [tx for tx in history if tx.type == WalletTransactionType.CHARGE]
    refunds = [tx for tx in history if tx.type == WalletTransactionType.REFUND]
    assert len(charges) == 1
    assert len(refunds) == 1
    assert charges[0].amount == refunds[0].amount == CHAT_COST
    assert charges[0].request_id == refunds[0].request_id == request.request_id

    assert events[-1].status == GenerationDBStatus.FAILED
    assert events[-1].error == EXHAUSTED_MESSAGE


@pytest.mark.asyncio
async def test_fatal_error_stops_fallback(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    alpha = FakeAdapter("alpha", ["fatal"])
    beta = FakeAdapter("beta", [GenerationResult(content="ok")])
    router = _make_router(
        [alpha, beta], route_registry, calculator, funded_ledger, gateway
    )

    request = await router.prepare(USER_ID, "chat", "запрещённый промпт")
    await router.run(request)

    assert request.state == RequestState.FAILED
    assert request.attempted_providers == ["alpha"]
    assert beta.calls == []
    assert request.error is not None
    assert request.error.startswith("Запрос отклонён: prompt rejected")
    assert await funded_ledger.get_balance(USER_ID, Category.TEXT) == 100


# ==============================================================================
# ДО СПИСАНИЯ
# ==============================================================================


@pytest.mark.asyncio
async def test_unknown_model_charges_nothing(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    alpha = FakeAdapter("alpha")
    router = _make_router([alpha], route_registry, calculator, funded_ledger, gateway)

    with pytest.raises(UnknownModelError):
        await router.prepare(USER_ID, "gpt-7", "q")

    assert alpha.calls == []
    assert await _history_types(funded_ledger) == [WalletTransactionType.PURCHASE]


@pytest.mark.asyncio
async def test_no_configured_providers_charges_nothing(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    router = _make_router([], route_registry, calculator, funded_ledger, gateway)

    with pytest.raises(ProviderNotAvailableError):
        await router.prepare(USER_ID, "ghost", "q")

    assert await funded_ledger.get_balance(USER_ID, Category.TEXT) == 100


@pytest.mark.asyncio
async def test_candidate_without_category_support_is_skipped(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    alpha = FakeAdapter("alpha", categories=frozenset({Category.IMAGE}))
    beta = FakeAdapter("beta", [GenerationResult(content="ok")])
    router = _make_router(
        [alpha, beta], route_registry, calculator, funded_ledger, gateway
    )

    request = await router.prepare(USER_ID, "chat", "q")

    assert [c.provider_name for c in request.candidates] == ["beta"]


@pytest.mark.asyncio
async def test_insufficient_balance_calls_no_provider(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    """На image-балансе 0 кредитов: отказ без обращения к провайдеру."""
    alpha = FakeAdapter("alpha", [GenerationResult(file_url="https://cdn/x.png")])
    router = _make_router([alpha], route_registry, calculator, funded_ledger, gateway)

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await router.submit(USER_ID, "picture", "кот")

    assert exc_info.value.required == PICTURE_COST
    assert exc_info.value.available == 0
    assert alpha.calls == []
    assert await funded_ledger.get_transaction_history(USER_ID, Category.IMAGE) == []


# ==============================================================================
# ДОСТАВКА РЕЗУЛЬТАТА
# ==============================================================================


@pytest.mark.asyncio
async def test_stream_deltas_published_in_order(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    alpha = FakeAdapter(
        "alpha", [GenerationResult(stream=iter_deltas("Раз", "", " два", " три"))]
    )
    router = _make_router([alpha], route_registry, calculator, funded_ledger, gateway)

    request = await router.prepare(USER_ID, "chat", "посчитай")
    events = await _run_and_collect(router, gateway, request)

    assert events[0].status == GenerationDBStatus.PENDING
    assert events[1].status == GenerationDBStatus.STREAMING
    assert [e.content_delta for e in events if e.content_delta] == [
        "Раз",
        " два",
        " три",
    ]
    assert events[-1].status == GenerationDBStatus.COMPLETED
    assert request.content == "Раз два три"


@pytest.mark.asyncio
async def test_file_result_published(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    await ledger.credit(
        USER_ID,
        Category.IMAGE,
        PICTURE_COST,
        "Пополнение",
        transaction_type=WalletTransactionType.PURCHASE,
    )
    alpha = FakeAdapter("alpha", [GenerationResult(file_url="https://cdn/cat.png")])
    router = _make_router([alpha], route_registry, calculator, ledger, gateway)

    request = await router.prepare(USER_ID, "picture", "кот")
    events = await _run_and_collect(router, gateway, request)

    assert request.file_url == "https://cdn/cat.png"
    assert any(e.file_url == "https://cdn/cat.png" for e in events)
    assert await ledger.get_balance(USER_ID, Category.IMAGE) == 0


@pytest.mark.asyncio
async def test_broken_stream_refunds(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    """Обрыв потока после первых дельт: возврат, следующий кандидат не пробуется."""

    async def broken_stream():
        yield "Нача"
        raise ConnectionError("connection reset")

    alpha = FakeAdapter("alpha", [GenerationResult(stream=broken_stream())])
    beta = FakeAdapter("beta", [GenerationResult(content="ok")])
    router = _make_router(
        [alpha, beta], route_registry, calculator, funded_ledger, gateway
    )

    request = await router.prepare(USER_ID, "chat", "q")
    events = await _run_and_collect(router, gateway, request)

    assert request.state == RequestState.FAILED
    assert request.error == STREAM_BROKEN_MESSAGE
    assert request.content == "Нача"
    assert beta.calls == []
    assert events[-1].status == GenerationDBStatus.FAILED
    assert await funded_ledger.get_balance(USER_ID, Category.TEXT) == 100


@pytest.mark.asyncio
async def test_candidate_options_merged_with_settings(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    alpha = FakeAdapter("alpha", ["retry"])
    beta = FakeAdapter("beta", [GenerationResult(content="ok")])
    router = _make_router(
        [alpha, beta], route_registry, calculator, funded_ledger, gateway
    )

    request = await router.prepare(
        USER_ID, "chat", "q", {"temperature": 0.3, "max_tokens": 200}
    )
    await router.run(request)

    model_id, prompt, options = beta.calls[0]
    assert model_id == "beta-chat"
    assert prompt == "q"
    assert options == {"mode": "fast", "temperature": 0.3, "max_tokens": 200}
    assert alpha.calls[0][2] == {"temperature": 0.3, "max_tokens": 200}


@pytest.mark.asyncio
async def test_dynamic_model_without_settings_charges_flat_price(
    ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    """Без настроек — плоская цена, дефолты модели уходят только адаптеру."""
    registry = RouteRegistry(
        {
            "kling": ModelRoute(
                "kling", Category.VIDEO, (ProviderCandidate("alpha", "alpha-kling"),)
            )
        }
    )
    calculator = CostCalculator(
        PricingConfig(models={"kling": PricingEntry(credits_per_unit=80)})
    )
    await ledger.credit(
        USER_ID,
        Category.VIDEO,
        10_000,
        "Пополнение",
        transaction_type=WalletTransactionType.PURCHASE,
    )
    router = _make_router([FakeAdapter("alpha")], registry, calculator, ledger, gateway)

    flat = await router.prepare(USER_ID, "kling", "cat")
    custom = await router.prepare(USER_ID, "kling", "cat", {"duration": 10})

    assert flat.priced_cost == 80
    assert flat.settings == resolve_settings("kling", Category.VIDEO)
    assert custom.priced_cost == calculator.price(
        "kling", resolve_settings("kling", Category.VIDEO, {"duration": 10})
    )
    assert await ledger.get_balance(USER_ID, Category.VIDEO) == (
        10_000 - flat.priced_cost - custom.priced_cost
    )


# ==============================================================================
# ОТМЕНА И ОСТАНОВКА
# ==============================================================================


@pytest.mark.asyncio
async def test_cancel_during_failed_attempt_refunds(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    """Отмена во время попытки: текущая падает → возврат, дальше не идём."""
    holder: dict[str, GenerationRouter | str] = {}

    async def cancel_then_fail(prompt: str, options: dict[str, Any]) -> GenerationResult:
        router_ = holder["router"]
        assert isinstance(router_, GenerationRouter)
        assert router_.cancel(str(holder["request_id"])) is True
        raise ConnectionError("upstream closed")

    alpha = FakeAdapter("alpha", [cancel_then_fail])
    beta = FakeAdapter("beta", [GenerationResult(content="ok")])
    router = _make_router(
        [alpha, beta], route_registry, calculator, funded_ledger, gateway
    )
    holder["router"] = router

    request = await router.prepare(USER_ID, "chat", "q")
    holder["request_id"] = request.request_id
    await router.run(request)

    assert request.cancelled is True
    assert request.state == RequestState.FAILED
    assert request.error == CANCELLED_MESSAGE
    assert beta.calls == []
    assert await funded_ledger.get_balance(USER_ID, Category.TEXT) == 100
    # Канал закрыт при отмене, события после неё не публикуются
    assert gateway.has_channel(request.request_id) is False


@pytest.mark.asyncio
async def test_cancel_keeps_charge_when_attempt_succeeds(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    holder: dict[str, GenerationRouter | str] = {}

    async def cancel_then_succeed(
        prompt: str, options: dict[str, Any]
    ) -> GenerationResult:
        router_ = holder["router"]
        assert isinstance(router_, GenerationRouter)
        router_.cancel(str(holder["request_id"]))
        return GenerationResult(content="готово")

    alpha = FakeAdapter("alpha", [cancel_then_succeed])
    router = _make_router([alpha], route_registry, calculator, funded_ledger, gateway)
    holder["router"] = router

    request = await router.prepare(USER_ID, "chat", "q")
    holder["request_id"] = request.request_id
    await router.run(request)

    assert request.state == RequestState.COMPLETED
    assert await funded_ledger.get_balance(USER_ID, Category.TEXT) == 100 - CHAT_COST


@pytest.mark.asyncio
async def test_cancel_unknown_request_returns_false(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    router = _make_router([], route_registry, calculator, funded_ledger, gateway)

    assert router.cancel("no-such-request") is False


@pytest.mark.asyncio
async def test_submit_runs_in_background(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    alpha = FakeAdapter("alpha", [GenerationResult(stream=iter_deltas("a", "b"))])
    router = _make_router([alpha], route_registry, calculator, funded_ledger, gateway)

    request = await router.submit(USER_ID, "chat", "q")
    assert router.get_active(request.request_id) is request

    async with gateway.subscribe(request.request_id) as events:
        received = [event async for event in events]

    assert received[-1].status == GenerationDBStatus.COMPLETED
    assert "".join(e.content_delta or "" for e in received) == "ab"

    await router.shutdown()
    assert router.get_active(request.request_id) is None


@pytest.mark.asyncio
async def test_shutdown_refunds_running_request(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
) -> None:
    started = asyncio.Event()

    async def never_finishes(prompt: str, options: dict[str, Any]) -> GenerationResult:
        started.set()
        await asyncio.Event().wait()
        raise AssertionError("unreachable")

    alpha = FakeAdapter("alpha", [never_finishes])
    router = _make_router([alpha], route_registry, calculator, funded_ledger, gateway)

    request = await router.submit(USER_ID, "chat", "q")
    await started.wait()
    await router.shutdown()

    assert request.state == RequestState.FAILED
    assert request.error == SHUTDOWN_MESSAGE
    assert await funded_ledger.get_balance(USER_ID, Category.TEXT) == 100


class _SlowRefundLedger(LedgerService):
    """Возврат уже записан в БД, но вызов возвращается с задержкой."""

    async def refund(self, *args: Any, **kwargs: Any) -> int:
        tx_id = await super().refund(*args, **kwargs)
        await asyncio.sleep(0.3)
        return tx_id


@pytest.mark.asyncio
async def test_shutdown_after_refund_commit_keeps_single_refund(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    session_factory: async_sessionmaker[AsyncSession],
    ledger_settings: LedgerSettings,
    gateway: EventStreamGateway,
) -> None:
    ledger = _SlowRefundLedger(session_factory, ledger_settings)
    await ledger.credit(
        USER_ID,
        Category.TEXT,
        100,
        "Пополнение",
        transaction_type=WalletTransactionType.PURCHASE,
    )
    adapters = [FakeAdapter(name, ["retry"]) for name in ("alpha", "beta", "gamma")]
    router = _make_router(adapters, route_registry, calculator, ledger, gateway)

    request = await router.submit(USER_ID, "chat", "q")
    async with asyncio.timeout(2.0):
        while not any(
            tx.type == WalletTransactionType.REFUND
            for tx in await ledger.get_request_transactions(request.request_id)
        ):
            await asyncio.sleep(0.01)
    await router.shutdown()

    assert await _history_types(ledger) == [
        WalletTransactionType.PURCHASE,
        WalletTransactionType.CHARGE,
        WalletTransactionType.REFUND,
    ]
    assert await ledger.get_balance(USER_ID, Category.TEXT) == 100
    assert request.state == RequestState.FAILED
    assert request.refund_transaction_id is not None


# ==============================================================================
# ЖУРНАЛ
# ==============================================================================


@pytest.mark.asyncio
async def test_journal_records_attempts_and_result(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    alpha = FakeAdapter("alpha", ["retry"])
    beta = FakeAdapter("beta", [GenerationResult(content="ответ")])
    router = _make_router(
        [alpha, beta],
        route_registry,
        calculator,
        funded_ledger,
        gateway,
        session_factory=session_factory,
    )

    request = await router.prepare(USER_ID, "chat", "q")
    await router.run(request)

    async with session_factory() as session:
        generation = await GenerationRepository(session).get_by_request_id(
            request.request_id
        )

    assert generation is not None
    assert generation.status == GenerationDBStatus.COMPLETED
    assert generation.attempted_list == ["alpha", "beta"]
    assert generation.provider_name == "beta"
    assert generation.result_content == "ответ"
    assert generation.priced_cost == CHAT_COST
    assert generation.charge_transaction_id == request.charge_transaction_id
    assert generation.refund_transaction_id is None


@pytest.mark.asyncio
async def test_journal_records_refund(
    route_registry: RouteRegistry,
    calculator: CostCalculator,
    funded_ledger: LedgerService,
    gateway: EventStreamGateway,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    adapters = [FakeAdapter(name) for name in ("alpha", "beta", "gamma")]
    router = _make_router(
        adapters,
        route_registry,
        calculator,
        funded_ledger,
        gateway,
        session_factory=session_factory,
    )

    request = await router.prepare(USER_ID, "chat", "q")
    await router.run(request)

    async with session_factory() as session:
        generation = await GenerationRepository(session).get_by_request_id(
            request.request_id
        )

    assert generation is not None
    assert generation.status == GenerationDBStatus.FAILED
    assert generation.error == EXHAUSTED_MESSAGE
    assert generation.refund_transaction_id == request.refund_transaction_id
