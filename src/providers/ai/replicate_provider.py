"""Адаптер для Replicate API.

Этот модуль реализует интеграцию с Replicate для:
- Генерации изображений (FLUX, SDXL, Playground)
- Генерации видео (Kling, Veo, Sora, Runway, Wan)
- Генерации аудио (Bark, XTTS, Suno)

Replicate — платформа для запуска ML-моделей в облаке.
Особенность: модели запускаются асинхронно, нужно ждать результат.
Общий таймаут попытки задаёт роутер, адаптер только опрашивает статус.

Документация: https://replicate.com/docs
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import httpx
from typing_extensions import override

from src.core.exceptions import FatalProviderError, RetryableProviderError
from src.providers.ai.base import BaseProviderAdapter, Category, GenerationResult
from src.providers.ai.registry import register_provider
from src.utils.logging import get_logger

if TYPE_CHECKING:
    from src.config.models import AIProvidersSettings

logger = get_logger(__name__)

# Категории, которые поддерживает Replicate
SUPPORTED_CATEGORIES = frozenset({Category.IMAGE, Category.VIDEO, Category.AUDIO})

# Таймаут для одного HTTP-запроса (в секундах)
DEFAULT_TIMEOUT_SECONDS = 60.0

# Интервал опроса статуса prediction (в секундах)
POLL_INTERVAL_SECONDS = 2.0

# URL API Replicate
REPLICATE_API_URL = "https://api.replicate.com/v1"

# Опции, которые передаются модели как есть (остальные служебные)
MODEL_INPUT_OPTIONS = frozenset(
    {
        "duration",
        "resolution",
        "aspect_ratio",
        "negative_prompt",
        "mode",
        "seed",
        "num_inference_steps",
        "voice",
        "language",
    }
)


class ReplicateAdapter(BaseProviderAdapter):
    """Адаптер для Replicate API.

    Пример использования:
        adapter = ReplicateAdapter(api_key="r8_...")
        result = await adapter.generate(
            model_id="google/veo-3-fast",
            prompt="Кот катается на скейте",
            category=Category.VIDEO,
            options={"duration": 8, "resolution": "1080p"},
        )
        print(result.file_url)
    """

    def __init__(
        self,
        api_key: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        proxy_url: str | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Создать адаптер Replicate API.

        Args:
            api_key: API-ключ Replicate (формат: r8_...).
            timeout: Таймаут одного HTTP-запроса в секундах.
            proxy_url: URL прокси-сервера (опционально).
            poll_interval: Интервал опроса статуса prediction.
            transport: Транспорт httpx (для тестов — httpx.MockTransport).
        """
        self._poll_interval = poll_interval
        self._client = httpx.AsyncClient(
            base_url=REPLICATE_API_URL,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            proxy=proxy_url,
            transport=transport,
        )

    @property
    @override
    def provider_name(self) -> str:
        """Название провайдера."""
        return "replicate"

    @override
    def supports_category(self, category: Category) -> bool:
        """Проверить поддержку категории."""
        return category in SUPPORTED_CATEGORIES

    @override
    async def generate(
        self,
        model_id: str,
        prompt: str,
        *,
        category: Category,
        options: dict[str, Any],
    ) -> GenerationResult:
        """Запустить prediction и дождаться результата.

        Returns:
            GenerationResult с URL файла.

        Raises:
            RetryableProviderError: 429/5xx, сеть, пустой ответ.
            FatalProviderError: 400/422 или prediction завершился ошибкой модели.
        """
        if not self.supports_category(category):
            raise FatalProviderError(
                f"Replicate не поддерживает {category.value}",
                provider=self.provider_name,
                model_id=model_id,
            )

        input_data: dict[str, Any] = {"prompt": prompt}
        input_data.update(
            {
                key: value
                for key, value in options.items()
                if key in MODEL_INPUT_OPTIONS and value is not None
            }
        )

        logger.debug(
            "Replicate %s: model=%s, prompt='%s'",
            category.value,
            model_id,
            prompt[:100],
        )

        try:
            prediction_id = await self._create_prediction(model_id, input_data)
            return await self._wait_for_prediction(prediction_id, model_id)
        except httpx.HTTPError as e:
            raise RetryableProviderError(
                f"Ошибка соединения с Replicate: {e}",
                provider=self.provider_name,
                model_id=model_id,
                original_error=e,
            ) from e

    async def _create_prediction(
        self,
        model_id: str,
        input_data: dict[str, Any],
    ) -> str:
        """Создать prediction (запустить генерацию).

        Args:
            model_id: ID модели (owner/model или owner/model:version).
            input_data: Входные данные для модели.

        Returns:
            ID созданного prediction.
        """
        # POST /predictions с версией или /models/{owner}/{name}/predictions
        # с автовыбором последней версии
        if ":" in model_id:
            version = model_id.split(":")[-1]
            payload: dict[str, Any] = {"version": version, "input": input_data}
            endpoint = "/predictions"
        else:
            payload = {"input": input_data}
            endpoint = f"/models/{model_id}/predictions"

        response = await self._client.post(endpoint, json=payload)

        if response.status_code != 201:
            error_text = response.text[:200]
            logger.warning(
                "Ошибка создания prediction: status=%d, response=%s",
                response.status_code,
                error_text,
            )
            if response.status_code in (400, 422):
                raise FatalProviderError(
                    f"Replicate отклонил запрос: {error_text}",
                    provider=self.provider_name,
                    model_id=model_id,
                )
            raise RetryableProviderError(
                f"Replicate API вернул ошибку {response.status_code}: {error_text}",
                provider=self.provider_name,
                model_id=model_id,
            )

        prediction_id = response.json().get("id")
        if not prediction_id:
            raise RetryableProviderError(
                "Replicate не вернул prediction ID",
                provider=self.provider_name,
                model_id=model_id,
            )

        logger.debug("Создан prediction: id=%s", prediction_id)
        return str(prediction_id)

    async def _wait_for_prediction(
        self,
        prediction_id: str,
        model_id: str,
    ) -> GenerationResult:
        """Опрашивать статус prediction до завершения.

        Ограничения по времени нет: попытку прерывает таймаут роутера.
        """
        while True:
            response = await self._client.get(f"/predictions/{prediction_id}")

            if response.status_code != 200:
                raise RetryableProviderError(
                    f"Ошибка получения статуса: {response.text[:200]}",
                    provider=self.provider_name,
                    model_id=model_id,
                )

            data = response.json()
            status = data.get("status")

            if status == "succeeded":
                output = data.get("output")
                # output может быть строкой (URL) или списком URL
                if isinstance(output, list) and output:
                    file_url = output[0]
                elif isinstance(output, str):
                    file_url = output
                else:
                    raise RetryableProviderError(
                        "Replicate вернул пустой output",
                        provider=self.provider_name,
                        model_id=model_id,
                    )

                logger.info("Prediction завершён: id=%s", prediction_id)
                return GenerationResult(
                    file_url=str(file_url),
                    raw_response={"id": prediction_id, "metrics": data.get("metrics")},
                )

            if status in ("failed", "canceled"):
                error = data.get("error") or status
                logger.warning("Prediction %s: id=%s, error=%s", status, prediction_id, error)
                raise FatalProviderError(
                    f"Генерация не удалась: {error}",
                    provider=self.provider_name,
                    model_id=model_id,
                )

            await asyncio.sleep(self._poll_interval)

    @override
    async def aclose(self) -> None:
        """Закрыть HTTP-клиент."""
        await self._client.aclose()


# ==============================================================================
# ФАБРИКА АДАПТЕРОВ
# ==============================================================================


class ReplicateAdapterFactory:
    """Фабрика для создания ReplicateAdapter."""

    def create(
        self,
        settings: AIProvidersSettings,
        proxy_url: str | None = None,
        timeout: float | None = None,
    ) -> BaseProviderAdapter | None:
        """Создать адаптер если настроен API-ключ."""
        if settings.replicate_api_key is None:
            return None

        return ReplicateAdapter(
            api_key=settings.replicate_api_key.get_secret_value(),
            proxy_url=proxy_url,
            timeout=timeout or DEFAULT_TIMEOUT_SECONDS,
        )


# API-ключ берётся из переменной окружения: AI__REPLICATE_API_KEY
register_provider("replicate", ReplicateAdapterFactory())
