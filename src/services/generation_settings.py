"""Настройки генерации по категориям.

Для каждой категории — своя модель настроек с дефолтами:
- TextSettings: температура, лимит токенов, системный промпт
- ImageSettings: размер, соотношение сторон
- VideoSettings: длительность, разрешение, версия (Kling), озвучка
- AudioSettings: голос, скорость

Поле category — дискриминатор: из JSON запроса сразу получаем
правильную модель через parse_generation_settings().

Слияние: настройки пользователя накладываются поверх дефолтов модели
(merged), а в адаптер уходят только заданные значения (to_options).
"""

from collections.abc import Mapping
from typing import Annotated, Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from src.providers.ai.base import Category


class _BaseGenerationSettings(BaseModel):
    """Общая логика настроек генерации."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    def merged(self, override: "Mapping[str, Any] | _BaseGenerationSettings") -> Self:
        """Вернуть копию с наложенными значениями override.

        None в override не затирает значение по умолчанию.

        Raises:
            pydantic.ValidationError: Значения override некорректны.
        """
        if isinstance(override, _BaseGenerationSettings):
            updates = override.model_dump(exclude_unset=True)
        else:
            updates = dict(override)
        updates.pop("category", None)

        data = self.model_dump()
        data.update({key: value for key, value in updates.items() if value is not None})
        return self.model_validate(data)

    def to_options(self) -> dict[str, Any]:
        """Опции для адаптера провайдера (без None и дискриминатора)."""
        return self.model_dump(exclude_none=True, exclude={"category"})


class TextSettings(_BaseGenerationSettings):
    category: Literal["text"] = "text"

    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)
    system_prompt: str | None = None


class ImageSettings(_BaseGenerationSettings):
    category: Literal["image"] = "image"

    size: str | None = None
    aspect_ratio: str | None = None
    negative_prompt: str | None = None
    seed: int | None = None


class VideoSettings(_BaseGenerationSettings):
    """Настройки видео.

    duration и resolution влияют на цену (динамическое ценообразование),
    version и enable_audio — на цену Kling.
    """

    category: Literal["video"] = "video"

    duration: int | None = Field(default=None, gt=0, le=60)
    resolution: str | None = None
    aspect_ratio: str | None = None
    version: str | None = None
    enable_audio: bool | None = None
    negative_prompt: str | None = None


class AudioSettings(_BaseGenerationSettings):
    category: Literal["audio"] = "audio"

    voice: str | None = None
    speed: float | None = Field(default=None, gt=0, le=4)
    language: str | None = None


GenerationSettings = Annotated[
    TextSettings | ImageSettings | VideoSettings | AudioSettings,
    Field(discriminator="category"),
]

_settings_adapter: TypeAdapter[GenerationSettings] = TypeAdapter(GenerationSettings)

_SETTINGS_BY_CATEGORY: dict[Category, type[_BaseGenerationSettings]] = {
    Category.TEXT: TextSettings,
    Category.IMAGE: ImageSettings,
    Category.VIDEO: VideoSettings,
    Category.AUDIO: AudioSettings,
}

# Дефолты видеомоделей: под них откалибрована базовая цена
VIDEO_MODEL_DEFAULTS: dict[str, VideoSettings] = {
    "kling": VideoSettings(aspect_ratio="16:9", version="2.6", duration=5),
    "kling-pro": VideoSettings(aspect_ratio="16:9", version="2.6", duration=5),
    "veo-fast": VideoSettings(aspect_ratio="16:9", duration=8, resolution="1080p"),
    "veo": VideoSettings(aspect_ratio="16:9", duration=8, resolution="1080p"),
    "sora": VideoSettings(aspect_ratio="16:9", duration=4, resolution="720p"),
    "runway": VideoSettings(aspect_ratio="16:9", duration=5, resolution="720p"),
    "seedance": VideoSettings(aspect_ratio="16:9", duration=8, resolution="720p"),
}


def parse_generation_settings(data: Mapping[str, Any]) -> GenerationSettings:
    """Разобрать настройки по дискриминатору category.

    Raises:
        pydantic.ValidationError: Неизвестная категория или неверные значения.
    """
    return _settings_adapter.validate_python(dict(data))


def default_settings(slug: str, category: Category) -> GenerationSettings:
    """Дефолтные настройки модели."""
    if category == Category.VIDEO and slug in VIDEO_MODEL_DEFAULTS:
        return VIDEO_MODEL_DEFAULTS[slug]
    return _SETTINGS_BY_CATEGORY[category]()  # type: ignore[return-value]


def resolve_settings(
    slug: str,
    category: Category,
    override: Mapping[str, Any] | None = None,
) -> GenerationSettings:
    """Дефолты модели + настройки пользователя.

    Raises:
        ValueError: Категория в override не совпадает с категорией модели.
        pydantic.ValidationError: Неверные значения.
    """
    settings = default_settings(slug, category)
    if not override:
        return settings

    requested = override.get("category")
    if requested is not None and requested != category.value:
        raise ValueError(
            f"Настройки категории {requested} не подходят модели {slug} ({category})"
        )
    return settings.merged(override)
