"""Реестр маршрутов моделей.

Маршрут — упорядоченный список кандидатов (провайдер + ID модели
у провайдера) для одного slug. Порядок задаёт приоритет fallback
и фиксируется при загрузке конфигурации.

Реестр неизменяем: для перезагрузки конфигурации строится новый
объект через create_route_registry().
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from src.config.yaml_config import YamlConfig
from src.core.exceptions import UnknownModelError
from src.providers.ai.base import Category
from src.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderCandidate:
    """Кандидат маршрута.

    Attributes:
        provider_name: Имя провайдера из реестра адаптеров.
        provider_model_id: ID модели на стороне провайдера.
        extra_options: Опции, которые всегда уходят этому провайдеру.
    """

    provider_name: str
    provider_model_id: str
    extra_options: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({})
    )


@dataclass(frozen=True)
class ModelRoute:
    """Маршрут модели: категория и кандидаты в порядке приоритета."""

    slug: str
    category: Category
    candidates: tuple[ProviderCandidate, ...]


class RouteRegistry:
    """Реестр маршрутов: slug → ModelRoute.

    Пример использования:
        registry = create_route_registry(yaml_config)
        for candidate in registry.resolve("flux-schnell"):
            ...
    """

    def __init__(self, routes: Mapping[str, ModelRoute]) -> None:
        for slug, route in routes.items():
            if not route.candidates:
                raise ValueError(f"Маршрут {slug} не содержит кандидатов")
        self._routes: Mapping[str, ModelRoute] = MappingProxyType(dict(routes))

    def resolve(self, slug: str) -> tuple[ProviderCandidate, ...]:
        """Кандидаты модели в порядке fallback.

        Raises:
            UnknownModelError: slug отсутствует в реестре.
        """
        return self.get_route(slug).candidates

    def get_route(self, slug: str) -> ModelRoute:
        """Маршрут модели.

        Raises:
            UnknownModelError: slug отсутствует в реестре.
        """
        route = self._routes.get(slug)
        if route is None:
            raise UnknownModelError(slug)
        return route

    def category_of(self, slug: str) -> Category:
        """Категория модели."""
        return self.get_route(slug).category

    def list_slugs(self, category: Category | None = None) -> list[str]:
        """Отсортированный список slug, опционально по категории."""
        return sorted(
            slug
            for slug, route in self._routes.items()
            if category is None or route.category == category
        )

    def __contains__(self, slug: object) -> bool:
        return slug in self._routes

    def __len__(self) -> int:
        return len(self._routes)


def create_route_registry(config: YamlConfig | None = None) -> RouteRegistry:
    """Построить реестр из YAML-конфигурации.

    Args:
        config: Конфигурация. По умолчанию — глобальная yaml_config.
    """
    if config is None:
        from src.config.yaml_config import yaml_config

        config = yaml_config

    routes = {
        slug: ModelRoute(
            slug=slug,
            category=route.category,
            candidates=tuple(
                ProviderCandidate(
                    provider_name=provider.name,
                    provider_model_id=provider.model_id,
                    extra_options=MappingProxyType(dict(provider.extra_options)),
                )
                for provider in route.providers
            ),
        )
        for slug, route in config.routes.items()
    }

    registry = RouteRegistry(routes)
    logger.info("Загружено маршрутов: %d", len(registry))
    return registry
