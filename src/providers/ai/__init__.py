"""AI-провайдеры для генерации контента.

Этот пакет реализует плагинную архитектуру для работы с AI-сервисами.
Каждый провайдер — это адаптер, который реализует единый интерфейс BaseProviderAdapter.

Поддерживаемые провайдеры:
- OpenAI-совместимые (openai, groq, together, openrouter, xai) — OpenAIAdapter
- Replicate (https://replicate.com) — изображения, видео, аудио

Импорт модулей адаптеров регистрирует их фабрики в глобальном реестре.
"""

from src.core.exceptions import (
    FatalProviderError,
    GenerationError,
    ProviderNotAvailableError,
    RetryableProviderError,
)
from src.providers.ai.base import BaseProviderAdapter, Category, GenerationResult
from src.providers.ai.openai_provider import OpenAIAdapter
from src.providers.ai.replicate_provider import ReplicateAdapter

__all__ = [
    "BaseProviderAdapter",
    "Category",
    "FatalProviderError",
    "GenerationError",
    "GenerationResult",
    "OpenAIAdapter",
    "ProviderNotAvailableError",
    "ReplicateAdapter",
    "RetryableProviderError",
]
