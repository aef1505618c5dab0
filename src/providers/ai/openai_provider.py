"""Адаптер для OpenAI-совместимого API.

Этот модуль реализует интеграцию с OpenAI API для:
- Генерации текста с потоковой выдачей (Chat Completions, stream=True)
- Генерации изображений (Images API)
- Озвучки текста (TTS)

Используется для работы с OpenAI-совместимыми провайдерами:
- OpenAI (api.openai.com)
- Groq (api.groq.com) — самые дешёвые/быстрые open-source LLM
- Together (api.together.xyz) — open-source LLM и FLUX
- OpenRouter (openrouter.ai) — агрегатор, используется как fallback
- xAI (api.x.ai) — Grok

Все провайдеры используют один формат API, отличаются только base_url и ключом.
"""

from __future__ import annotations

import base64
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import httpx
import openai
from openai import AsyncOpenAI
from typing_extensions import override

from src.core.exceptions import FatalProviderError, RetryableProviderError
from src.providers.ai.base import BaseProviderAdapter, Category, GenerationResult
from src.providers.ai.registry import register_provider
from src.utils.logging import get_logger

if TYPE_CHECKING:
    from openai.types.chat import ChatCompletionChunk, ChatCompletionMessageParam

    from src.config.models import AIProvidersSettings

logger = get_logger(__name__)

# Таймаут по умолчанию для HTTP-клиента (в секундах).
DEFAULT_TIMEOUT_SECONDS = 60.0

# Ошибки SDK, после которых имеет смысл попробовать другого провайдера.
# Ключ/доступ/модель у этого провайдера сломаны, у следующего может сработать.
RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.NotFoundError,
)

# Ошибки во входных данных: другой провайдер ответит так же.
FATAL_ERRORS: tuple[type[Exception], ...] = (
    openai.BadRequestError,
    openai.UnprocessableEntityError,
)


class OpenAIAdapter(BaseProviderAdapter):
    """Адаптер для OpenAI-совместимого API.

    Пример использования:
        adapter = OpenAIAdapter(
            name="groq",
            api_key="gsk_...",
            base_url="https://api.groq.com/openai/v1",
            categories=frozenset({Category.TEXT}),
        )
        result = await adapter.generate(
            model_id="llama-3.3-70b-versatile",
            prompt="Привет!",
            category=Category.TEXT,
            options={"temperature": 0.7},
        )
        async for delta in result.stream:
            print(delta, end="")
    """

    def __init__(
        self,
        name: str,
        api_key: str,
        *,
        base_url: str | None = None,
        categories: frozenset[Category] = frozenset({Category.TEXT}),
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        proxy_url: str | None = None,
    ) -> None:
        """Создать адаптер OpenAI-совместимого API.

        Args:
            name: Имя провайдера в реестре (openai, groq, ...).
            api_key: API-ключ провайдера.
            base_url: URL API провайдера (None — стандартный OpenAI).
            categories: Поддерживаемые категории контента.
            timeout: Таймаут запросов в секундах.
            proxy_url: URL прокси-сервера (опционально).
        """
        self._name = name
        self._base_url = base_url
        self._categories = categories

        http_client: httpx.AsyncClient | None = None
        if proxy_url:
            logger.info("Используем прокси для %s: %s", name, proxy_url)
            http_client = httpx.AsyncClient(proxy=proxy_url, timeout=timeout)

        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            http_client=http_client,
            # Повторы делает роутер, переходом к следующему провайдеру
            max_retries=0,
        )

    @property
    @override
    def provider_name(self) -> str:
        """Название провайдера."""
        return self._name

    @override
    def supports_category(self, category: Category) -> bool:
        """Проверить поддержку категории."""
        return category in self._categories

    @override
    async def generate(
        self,
        model_id: str,
        prompt: str,
        *,
        category: Category,
        options: dict[str, Any],
    ) -> GenerationResult:
        """Выполнить генерацию через OpenAI-совместимый API.

        Args:
            model_id: ID модели у провайдера.
            prompt: Текстовый промпт.
            category: Категория контента.
            options: Опции генерации:
                - system_prompt, temperature, max_tokens — для TEXT
                - size, quality, aspect_ratio — для IMAGE
                - voice, speed — для AUDIO

        Returns:
            GenerationResult (поток дельт для TEXT, URL файла для остальных).

        Raises:
            RetryableProviderError: Временный сбой (rate limit, 5xx, сеть).
            FatalProviderError: Запрос отклонён (400, 422) или категория
                не поддерживается.
        """
        if not self.supports_category(category):
            raise FatalProviderError(
                f"{self._name} не поддерживает {category.value}",
                provider=self._name,
                model_id=model_id,
            )

        try:
            if category == Category.TEXT:
                return await self._generate_text(model_id, prompt, options)
            if category == Category.IMAGE:
                return await self._generate_image(model_id, prompt, options)
            return await self._generate_speech(model_id, prompt, options)
        except openai.OpenAIError as e:
            raise self._classify_error(e, model_id) from e

    async def _generate_text(
        self,
        model_id: str,
        prompt: str,
        options: dict[str, Any],
    ) -> GenerationResult:
        """Генерация текста через Chat Completions API с потоковой выдачей.

        Запрос отправляется сразу: ошибки авторизации, лимитов и модерации
        возникают здесь, до того как роутер признает попытку успешной.
        """
        messages: list[ChatCompletionMessageParam] = []

        system_prompt = options.get("system_prompt")
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        logger.debug("%s Chat: model=%s, messages=%d", self._name, model_id, len(messages))

        stream = await self._client.chat.completions.create(
            model=model_id,
            messages=messages,
            max_tokens=options.get("max_tokens", 4096),
            temperature=options.get("temperature", 0.7),
            stream=True,
        )

        return GenerationResult(stream=self._iter_deltas(stream, model_id))

    async def _iter_deltas(
        self,
        stream: AsyncIterator[ChatCompletionChunk],
        model_id: str,
    ) -> AsyncIterator[str]:
        """Преобразовать поток чанков SDK в поток текстовых дельт."""
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except openai.OpenAIError as e:
            raise self._classify_error(e, model_id) from e

    async def _generate_image(
        self,
        model_id: str,
        prompt: str,
        options: dict[str, Any],
    ) -> GenerationResult:
        """Генерация изображения через Images API."""
        size = options.get("size", "1024x1024")

        logger.debug("%s Images API: model=%s, size=%s", self._name, model_id, size)

        response = await self._client.images.generate(
            model=model_id,
            prompt=prompt,
            size=size,
            n=1,
        )

        if not response.data:
            raise RetryableProviderError(
                "Провайдер вернул пустой ответ",
                provider=self._name,
                model_id=model_id,
            )

        image = response.data[0]
        file_url = image.url
        if file_url is None and image.b64_json:
            file_url = f"data:image/png;base64,{image.b64_json}"

        if file_url is None:
            raise RetryableProviderError(
                "В ответе нет изображения",
                provider=self._name,
                model_id=model_id,
            )

        return GenerationResult(file_url=file_url)

    async def _generate_speech(
        self,
        model_id: str,
        prompt: str,
        options: dict[str, Any],
    ) -> GenerationResult:
        """Озвучка текста через TTS API.

        Аудио возвращается как data URL — файлового хранилища у сервиса нет.
        """
        voice = options.get("voice") or "alloy"

        logger.debug(
            "%s TTS: model=%s, voice=%s, text_length=%d",
            self._name,
            model_id,
            voice,
            len(prompt),
        )

        response = await self._client.audio.speech.create(
            model=model_id,
            voice=voice,
            input=prompt,
            speed=options.get("speed") or 1.0,
            response_format="mp3",
        )
        audio = base64.b64encode(response.read()).decode("ascii")

        return GenerationResult(file_url=f"data:audio/mpeg;base64,{audio}")

    def _classify_error(
        self, error: openai.OpenAIError, model_id: str
    ) -> RetryableProviderError | FatalProviderError:
        """Разделить ошибки SDK на временные и постоянные."""
        if isinstance(error, FATAL_ERRORS):
            return FatalProviderError(
                str(error),
                provider=self._name,
                model_id=model_id,
                original_error=error,
            )

        if not isinstance(error, RETRYABLE_ERRORS):
            logger.warning(
                "Неизвестная ошибка %s (%s), считаем временной",
                self._name,
                type(error).__name__,
            )

        return RetryableProviderError(
            str(error),
            provider=self._name,
            model_id=model_id,
            original_error=error,
        )

    @override
    async def aclose(self) -> None:
        """Закрыть HTTP-клиент SDK."""
        await self._client.close()


# ==============================================================================
# ФАБРИКА АДАПТЕРОВ
# ==============================================================================


class OpenAIAdapterFactory:
    """Фабрика для создания OpenAI-совместимых адаптеров.

    Attributes:
        _name: Имя провайдера в реестре.
        _base_url: URL API провайдера.
        _api_key_attr: Имя атрибута в AIProvidersSettings для API-ключа.
        _categories: Поддерживаемые категории.
    """

    def __init__(
        self,
        name: str,
        base_url: str | None,
        api_key_attr: str,
        categories: frozenset[Category],
    ) -> None:
        self._name = name
        self._base_url = base_url
        self._api_key_attr = api_key_attr
        self._categories = categories

    def create(
        self,
        settings: AIProvidersSettings,
        proxy_url: str | None = None,
        timeout: float | None = None,
    ) -> BaseProviderAdapter | None:
        """Создать адаптер если настроен API-ключ."""
        api_key = getattr(settings, self._api_key_attr, None)
        if api_key is None:
            return None

        return OpenAIAdapter(
            self._name,
            api_key.get_secret_value(),
            base_url=self._base_url,
            categories=self._categories,
            proxy_url=proxy_url,
            timeout=timeout or DEFAULT_TIMEOUT_SECONDS,
        )


# ==============================================================================
# РЕГИСТРАЦИЯ ПРОВАЙДЕРОВ
# ==============================================================================
#
# API-ключи берутся из переменных окружения: AI__OPENAI_API_KEY, AI__GROQ_API_KEY...

register_provider(
    "openai",
    OpenAIAdapterFactory(
        "openai",
        None,
        "openai_api_key",
        frozenset({Category.TEXT, Category.IMAGE, Category.AUDIO}),
    ),
)

register_provider(
    "groq",
    OpenAIAdapterFactory(
        "groq",
        "https://api.groq.com/openai/v1",
        "groq_api_key",
        frozenset({Category.TEXT}),
    ),
)

register_provider(
    "together",
    OpenAIAdapterFactory(
        "together",
        "https://api.together.xyz/v1",
        "together_api_key",
        frozenset({Category.TEXT, Category.IMAGE}),
    ),
)

register_provider(
    "openrouter",
    OpenAIAdapterFactory(
        "openrouter",
        "https://openrouter.ai/api/v1",
        "openrouter_api_key",
        frozenset({Category.TEXT}),
    ),
)

register_provider(
    "xai",
    OpenAIAdapterFactory(
        "xai",
        "https://api.x.ai/v1",
        "xai_api_key",
        frozenset({Category.TEXT}),
    ),
)
