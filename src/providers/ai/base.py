"""Базовый адаптер для AI-провайдеров.

Этот модуль определяет абстрактный интерфейс, который должны реализовать
все AI-провайдеры. Роутер генераций работает с адаптером как с чёрным ящиком:
передаёт ID модели провайдера, промпт и опции, получает результат или
исключение RetryableProviderError / FatalProviderError.

Паттерн: Adapter (GoF) + Strategy
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Category(StrEnum):
    """Категория контента.

    По категориям разделены балансы кошелька: у пользователя
    четыре независимых счёта кредитов.
    """

    # Текст (LLM-чаты)
    TEXT = "text"

    # Изображения (FLUX, SDXL, DALL-E, Midjourney)
    IMAGE = "image"

    # Видео (Kling, Veo, Sora, Runway)
    VIDEO = "video"

    # Аудио (TTS, музыка, распознавание речи)
    AUDIO = "audio"


@dataclass
class GenerationResult:
    """Результат генерации от AI-провайдера.

    Провайдер уже принял запрос и вернул ответ. Для потоковых моделей
    текст приходит частями через stream — роутер пересылает их клиенту
    по мере поступления.

    Attributes:
        content: Готовый текст результата (для непотоковых ответов).
        file_url: URL сгенерированного файла (изображение, видео, аудио).
        stream: Асинхронный итератор текстовых дельт (для потоковых ответов).
        raw_response: Сырой ответ от API (для отладки).
    """

    content: str | None = None
    file_url: str | None = None
    stream: AsyncIterator[str] | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def is_streaming(self) -> bool:
        """Результат приходит частями."""
        return self.stream is not None


class BaseProviderAdapter(ABC):
    """Абстрактный базовый класс для AI-провайдеров.

    Для добавления нового провайдера:
    1. Создайте класс, наследующий BaseProviderAdapter
    2. Реализуйте provider_name, generate() и supports_category()
    3. Зарегистрируйте фабрику через register_provider()

    Классификация ошибок — обязанность адаптера:
    - RetryableProviderError: rate limit, 5xx, сеть (роутер попробует следующего)
    - FatalProviderError: промпт отклонён, неверные параметры (роутер остановится)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Название провайдера (для логов и ошибок).

        Должно совпадать с именем в маршрутах config.yaml.
        Примеры: "openai", "groq", "replicate".
        """

    @abstractmethod
    async def generate(
        self,
        model_id: str,
        prompt: str,
        *,
        category: Category,
        options: dict[str, Any],
    ) -> GenerationResult:
        """Выполнить генерацию.

        Args:
            model_id: Идентификатор модели на стороне провайдера.
                Например: "llama-3.3-70b-versatile", "flux-schnell".
            prompt: Текстовый промпт для генерации.
            category: Категория контента.
            options: Объединённые опции маршрута и пользовательских настроек
                (duration, resolution, voice, temperature и т.д.).

        Returns:
            GenerationResult с текстом, URL файла или потоком дельт.

        Raises:
            RetryableProviderError: Временный сбой провайдера.
            FatalProviderError: Запрос отклонён по содержанию.
        """

    @abstractmethod
    def supports_category(self, category: Category) -> bool:
        """Проверить, поддерживает ли провайдер категорию контента."""

    async def aclose(self) -> None:  # noqa: B027
        """Освободить ресурсы адаптера (HTTP-клиенты)."""
