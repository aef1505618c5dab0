"""Реестр AI-провайдеров (паттерн Registry, Open/Closed Principle).

Модули адаптеров регистрируют свои фабрики при импорте:

    register_provider("groq", OpenAIAdapterFactory(...))

Имя провайдера в реестре совпадает с именем в маршрутах config.yaml.
"""

from typing import Protocol

from src.config.models import AIProvidersSettings
from src.core.exceptions import ProviderNotAvailableError
from src.providers.ai.base import BaseProviderAdapter
from src.utils.logging import get_logger

logger = get_logger(__name__)


class ProviderAdapterFactory(Protocol):
    """Протокол фабрики адаптеров (structural subtyping)."""

    def create(
        self,
        settings: AIProvidersSettings,
        proxy_url: str | None = None,
        timeout: float | None = None,
    ) -> BaseProviderAdapter | None:
        """Создать адаптер если доступен API-ключ, иначе None."""
        ...


class ProviderRegistry:
    """Реестр фабрик адаптеров по имени провайдера."""

    def __init__(self) -> None:
        self._factories: dict[str, ProviderAdapterFactory] = {}

    def register(self, provider_name: str, factory: ProviderAdapterFactory) -> None:
        """Зарегистрировать провайдер."""
        self._factories[provider_name] = factory
        logger.debug("Зарегистрирован провайдер: %s", provider_name)

    def is_registered(self, provider_name: str) -> bool:
        """Проверить, есть ли фабрика для провайдера."""
        return provider_name in self._factories

    def create_adapter(
        self,
        provider_name: str,
        settings: AIProvidersSettings,
        proxy_url: str | None = None,
        timeout: float | None = None,
    ) -> BaseProviderAdapter:
        """Создать адаптер для провайдера.

        Raises:
            ProviderNotAvailableError: Провайдер не зарегистрирован
                или для него не настроен API-ключ.
        """
        if provider_name not in self._factories:
            raise ProviderNotAvailableError(
                f"Провайдер '{provider_name}' не зарегистрирован. "
                f"Доступные: {', '.join(self.list_providers())}",
                provider_type=provider_name,
            )

        adapter = self._factories[provider_name].create(
            settings, proxy_url=proxy_url, timeout=timeout
        )

        if adapter is None:
            raise ProviderNotAvailableError(
                f"API-ключ для '{provider_name}' не настроен.",
                provider_type=provider_name,
            )

        return adapter

    def list_providers(self) -> list[str]:
        """Список зарегистрированных провайдеров."""
        return sorted(self._factories.keys())


_registry = ProviderRegistry()


def register_provider(provider_name: str, factory: ProviderAdapterFactory) -> None:
    """Зарегистрировать провайдер в глобальном реестре."""
    _registry.register(provider_name, factory)


def get_registry() -> ProviderRegistry:
    """Получить глобальный реестр."""
    return _registry
