"""Менеджер адаптеров AI-провайдеров.

Создаёт адаптеры лениво по имени провайдера из маршрута и кэширует их.
Провайдер без API-ключа считается недоступным — кандидаты маршрута
с таким провайдером роутер пропускает.
"""

from src.config.models import AIProvidersSettings
from src.core.exceptions import ProviderNotAvailableError
from src.providers.ai.base import BaseProviderAdapter
from src.providers.ai.registry import ProviderRegistry, get_registry
from src.utils.logging import get_logger

logger = get_logger(__name__)


class ProviderManager:
    """Кэш адаптеров провайдеров.

    Attributes:
        _adapters: Созданные адаптеры по имени провайдера.
        _unavailable: Провайдеры, для которых адаптер создать нельзя.
    """

    def __init__(
        self,
        settings: AIProvidersSettings,
        proxy_url: str | None = None,
        timeout: float | None = None,
        registry: ProviderRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._proxy_url = proxy_url
        self._timeout = timeout
        self._registry = registry or get_registry()

        self._adapters: dict[str, BaseProviderAdapter] = {}
        self._unavailable: set[str] = set()

    def get_adapter(self, provider_name: str) -> BaseProviderAdapter | None:
        """Получить адаптер провайдера или None, если он не настроен."""
        if provider_name in self._adapters:
            return self._adapters[provider_name]
        if provider_name in self._unavailable:
            return None

        try:
            adapter = self._registry.create_adapter(
                provider_name,
                self._settings,
                proxy_url=self._proxy_url,
                timeout=self._timeout,
            )
        except ProviderNotAvailableError as e:
            logger.info("Провайдер недоступен: %s", e.message)
            self._unavailable.add(provider_name)
            return None

        self._adapters[provider_name] = adapter
        logger.debug("Создан адаптер: %s", provider_name)
        return adapter

    def available_providers(self) -> list[str]:
        """Список провайдеров с настроенным API-ключом."""
        return [
            name
            for name in self._registry.list_providers()
            if self.get_adapter(name) is not None
        ]

    async def aclose(self) -> None:
        """Закрыть все созданные адаптеры."""
        for adapter in self._adapters.values():
            await adapter.aclose()
        self._adapters.clear()


def create_provider_manager() -> ProviderManager:
    """Создать менеджер провайдеров из глобальных настроек.

    Импортирует пакет адаптеров, чтобы фабрики зарегистрировались.
    """
    import src.providers.ai  # noqa: F401
    from src.config.settings import settings

    manager = ProviderManager(settings.ai, proxy_url=settings.proxy)
    logger.info(
        "ProviderManager: доступные провайдеры=%s, прокси=%s",
        ", ".join(manager.available_providers()) or "нет",
        "да" if settings.proxy else "нет",
    )
    return manager
