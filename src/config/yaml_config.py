"""Загрузчик YAML-конфигурации.

Этот модуль загружает и валидирует config.yaml — файл с данными,
которые можно менять без изменения кода:
- Маршруты моделей: slug → упорядоченный список провайдеров
- Прайс: slug → стоимость в кредитах
- Динамическое ценообразование видео (длительность, разрешение, Kling)
- Таймауты попытки генерации по категориям

Конфигурация загружается один раз при старте и дальше не меняется.
Для перезагрузки нужно построить новый объект целиком.
"""

from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.config.constants import CONFIG_FILE, DEFAULT_CREDITS_PER_UNIT
from src.providers.ai.base import Category

# ==============================================================================
# МАРШРУТЫ МОДЕЛЕЙ
# ==============================================================================


class ProviderRouteConfig(BaseModel):
    """Один кандидат маршрута: провайдер и ID модели на его стороне.

    Пример в config.yaml:
        - name: piapi
          model_id: kling
          extra_options:
            duration: 10
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Имя провайдера из реестра")
    model_id: str = Field(min_length=1, description="ID модели у провайдера")
    extra_options: dict[str, Any] = Field(
        default_factory=dict,
        description="Опции, которые всегда передаются этому провайдеру",
    )


class RouteConfig(BaseModel):
    """Маршрут модели.

    Порядок провайдеров задаёт приоритет fallback (дешёвые/надёжные первыми)
    и никогда не меняется во время работы.
    """

    model_config = ConfigDict(frozen=True)

    category: Category
    providers: list[ProviderRouteConfig]

    @field_validator("providers")
    @classmethod
    def validate_providers(
        cls, v: list[ProviderRouteConfig]
    ) -> list[ProviderRouteConfig]:
        """Маршрут не пустой, имена провайдеров не повторяются."""
        if not v:
            raise ValueError("Маршрут должен содержать хотя бы одного провайдера")

        names = [provider.name for provider in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(
                f"Провайдеры повторяются в маршруте: {', '.join(duplicates)}"
            )
        return v


# ==============================================================================
# ПРАЙС
# ==============================================================================


class UnitType(StrEnum):
    """Единица, за которую списываются кредиты."""

    REQUEST = "1_request"
    IMAGE = "1_image"
    VIDEO = "1_video"
    SONG = "1_song"


class PricingEntry(BaseModel):
    """Цена модели.

    credits_per_unit — сколько кредитов списываем с пользователя.
    base_cost_usd — наша себестоимость (только для аналитики).
    is_loss_leader — модель продаётся около себестоимости,
    её можно давать безлимитно на дорогих тарифах.
    """

    model_config = ConfigDict(frozen=True)

    credits_per_unit: int = Field(gt=0, description="Стоимость в кредитах")
    unit_type: UnitType = UnitType.REQUEST
    base_cost_usd: float = Field(default=0.0, ge=0, description="Себестоимость в USD")
    is_loss_leader: bool = False


class DynamicPricingConfig(BaseModel):
    """Параметры, под которые откалибрована базовая цена видеомодели.

    Если пользователь меняет длительность/разрешение —
    цена масштабируется пропорционально.
    """

    model_config = ConfigDict(frozen=True)

    default_duration_seconds: float = Field(gt=0)

    # Только для моделей с выбором разрешения
    default_resolution: str | None = None


class KlingPricingConfig(BaseModel):
    """Табличное ценообразование Kling.

    Kling не масштабируется пропорционально: цена берётся из таблицы
    по ключу "режим:группа_версии:длительность" (+ ":audio").
    """

    model_config = ConfigDict(frozen=True)

    # slug → режим (std/pro)
    modes: dict[str, str] = {"kling": "std", "kling-pro": "pro"}

    default_version: str = "2.6"
    default_duration: int = 5

    # Версии новой генерации; остальные (кроме master) считаются старыми
    new_versions: list[str] = ["2.5", "2.6"]
    master_version: str = "2.1-master"

    # Версия, для которой доступна озвучка в pro-режиме
    audio_version: str = "2.6"

    table: dict[str, int] = {
        "std:new:5": 12,
        "std:new:10": 24,
        "std:old:5": 16,
        "std:old:10": 32,
        "pro:new:5": 20,
        "pro:new:10": 40,
        "pro:new:5:audio": 40,
        "pro:new:10:audio": 80,
        "pro:old:5": 28,
        "pro:old:10": 56,
        "pro:master:5": 58,
        "pro:master:10": 116,
    }

    # Цена, если ключа нет в таблице
    fallback: dict[str, int] = {"std": 12, "pro": 20, "audio": 40}


class PricingConfig(BaseModel):
    """Раздел pricing в config.yaml."""

    default_credits: int = Field(default=DEFAULT_CREDITS_PER_UNIT, gt=0)

    # Предел масштабирования: динамическая цена не превышает
    # max_dynamic_multiplier × плоская цена модели.
    max_dynamic_multiplier: float = Field(default=4.0, ge=1.0)

    models: dict[str, PricingEntry] = {}
    dynamic: dict[str, DynamicPricingConfig] = {}
    resolution_multipliers: dict[str, float] = {
        "480p": 0.7,
        "720p": 1.0,
        "1080p": 1.5,
    }
    kling: KlingPricingConfig = KlingPricingConfig()


# ==============================================================================
# ТАЙМАУТЫ
# ==============================================================================


class GenerationTimeouts(BaseModel):
    """Таймаут одной попытки у одного провайдера (в секундах).

    По истечении попытка считается временным сбоем,
    и роутер переходит к следующему кандидату.
    """

    text: float = 60
    image: float = 180
    video: float = 600
    audio: float = 120

    def for_category(self, category: Category) -> float:
        """Таймаут для категории."""
        return float(getattr(self, category.value))


# ==============================================================================
# КОРНЕВАЯ КОНФИГУРАЦИЯ
# ==============================================================================


class YamlConfig(BaseModel):
    """Корневая модель config.yaml."""

    routes: dict[str, RouteConfig] = {}
    pricing: PricingConfig = PricingConfig()
    generation_timeouts: GenerationTimeouts = GenerationTimeouts()

    @field_validator("routes", "pricing", mode="before")
    @classmethod
    def parse_empty_section(cls, v: Any) -> Any:
        """Пустая секция в YAML (None) превращается в значение по умолчанию."""
        if v is None:
            return {}
        return v

    def get_route(self, slug: str) -> RouteConfig | None:
        """Получить маршрут модели по slug."""
        return self.routes.get(slug)

    def get_pricing(self, slug: str) -> PricingEntry | None:
        """Получить цену модели по slug."""
        return self.pricing.models.get(slug)


def load_yaml_config(path: Path | str = CONFIG_FILE) -> YamlConfig:
    """Загрузить и валидировать YAML-конфигурацию.

    Args:
        path: Путь к файлу конфигурации.

    Returns:
        Валидированный объект конфигурации.
        Если файла нет — пустая конфигурация (без маршрутов).

    Raises:
        yaml.YAMLError: Некорректный YAML.
        pydantic.ValidationError: Некорректная конфигурация.
    """
    config_path = Path(path)

    if not config_path.exists():
        return YamlConfig()

    with config_path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    return YamlConfig.model_validate(data)


yaml_config = load_yaml_config()
