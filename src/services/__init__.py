"""Сервисы приложения.

- RouteRegistry — slug модели → упорядоченный список провайдеров
- CostCalculator — цена запроса в кредитах (в том числе динамическая)
- LedgerService — балансы по категориям и журнал транзакций
- GenerationRouter — списание, обход провайдеров, возврат, публикация событий
- EventStreamGateway — каналы событий запросов для SSE
"""

from src.services.event_stream import EventStreamGateway, StreamEvent
from src.services.generation_router import GenerationRequest, GenerationRouter
from src.services.ledger_service import LedgerService, WalletBalances
from src.services.pricing_service import CostCalculator
from src.services.routing_service import ModelRoute, ProviderCandidate, RouteRegistry

__all__ = [
    "CostCalculator",
    "EventStreamGateway",
    "GenerationRequest",
    "GenerationRouter",
    "LedgerService",
    "ModelRoute",
    "ProviderCandidate",
    "RouteRegistry",
    "StreamEvent",
    "WalletBalances",
]
