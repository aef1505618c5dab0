"""Калькулятор стоимости генерации в кредитах.

Стоимость модели:
1. Плоская цена credits_per_unit из прайса (5 кредитов, если модели нет в прайсе)
2. Для видеомоделей с динамическим ценообразованием цена масштабируется:
   cost = ceil(base × (duration / default_duration) × (res_mult / default_res_mult))
3. Kling считается по таблице (режим, группа версии, длительность, озвучка)

Масштабированная цена ограничена сверху: не больше
max_dynamic_multiplier × плоская цена, и не меньше 1 кредита.

Пример:
    calculator = CostCalculator(yaml_config.pricing)
    calculator.price("veo-fast", VideoSettings(duration=16, resolution="1080p"))
    # → 200 (базовая 100 кредитов за 8 секунд 1080p)
"""

import math

from src.config.yaml_config import PricingConfig, PricingEntry
from src.services.generation_settings import GenerationSettings, VideoSettings
from src.utils.logging import get_logger

logger = get_logger(__name__)


class CostCalculator:
    """Чистый калькулятор стоимости: без состояния и без I/O."""

    def __init__(self, config: PricingConfig | None = None) -> None:
        self._config = config or PricingConfig()

    def get_pricing(self, slug: str) -> PricingEntry | None:
        """Запись прайса модели или None."""
        return self._config.models.get(slug)

    def flat_price(self, slug: str) -> int:
        """Плоская цена модели (без учёта настроек)."""
        entry = self.get_pricing(slug)
        if entry is None:
            return self._config.default_credits
        return entry.credits_per_unit

    def has_dynamic_pricing(self, slug: str) -> bool:
        """Цена модели зависит от настроек генерации."""
        return slug in self._config.dynamic or slug in self._config.kling.modes

    def price(self, slug: str, settings: GenerationSettings | None = None) -> int:
        """Стоимость запроса в кредитах (всегда ≥ 1).

        Args:
            slug: Slug модели.
            settings: Настройки генерации. Без них — плоская цена.
        """
        base_cost = self.flat_price(slug)
        if settings is None or not self.has_dynamic_pricing(slug):
            return base_cost
        return self.calculate_dynamic_cost(slug, base_cost, settings)

    def calculate_dynamic_cost(
        self,
        slug: str,
        base_cost: int,
        settings: GenerationSettings,
    ) -> int:
        """Масштабировать базовую цену по настройкам видео."""
        if not isinstance(settings, VideoSettings):
            return base_cost

        kling_mode = self._config.kling.modes.get(slug)
        if kling_mode is not None:
            return self.calculate_kling_cost(kling_mode, settings)

        dynamic = self._config.dynamic.get(slug)
        if dynamic is None:
            return base_cost

        cost = float(base_cost)

        if settings.duration:
            cost *= settings.duration / dynamic.default_duration_seconds

        if settings.resolution and dynamic.default_resolution:
            multipliers = self._config.resolution_multipliers
            requested_mult = multipliers.get(settings.resolution, 1.0)
            default_mult = multipliers.get(dynamic.default_resolution, 1.0)
            cost *= requested_mult / default_mult

        scaled = math.ceil(cost)
        cap = math.ceil(base_cost * self._config.max_dynamic_multiplier)
        if scaled > cap:
            logger.debug(
                "Цена %s ограничена: %d → %d (x%.1f от базовой)",
                slug,
                scaled,
                cap,
                self._config.max_dynamic_multiplier,
            )
            scaled = cap

        return max(1, scaled)

    def calculate_kling_cost(self, mode: str, settings: VideoSettings) -> int:
        """Цена Kling из таблицы.

        Озвучка доступна только для pro-режима определённой версии.
        """
        kling = self._config.kling
        version = settings.version or kling.default_version
        duration = settings.duration or kling.default_duration

        if settings.enable_audio and version == kling.audio_version and mode == "pro":
            key = f"pro:new:{duration}:audio"
            return kling.table.get(key, kling.fallback["audio"])

        if version == kling.master_version:
            group = "master"
        elif version in kling.new_versions:
            group = "new"
        else:
            group = "old"

        key = f"{mode}:{group}:{duration}"
        return kling.table.get(key, kling.fallback[mode])

    def loss_leader_slugs(self) -> list[str]:
        """Модели, продаваемые около себестоимости."""
        return sorted(
            slug for slug, entry in self._config.models.items() if entry.is_loss_leader
        )


def create_cost_calculator() -> CostCalculator:
    """Создать калькулятор из глобальной YAML-конфигурации."""
    from src.config.yaml_config import yaml_config

    return CostCalculator(yaml_config.pricing)
