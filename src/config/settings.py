"""Настройки приложения через переменные окружения.

ВАЖНО: Этот модуль загружает настройки из .env файла при импорте.
Для использования только классов настроек (без загрузки .env)
импортируйте из src.config.models вместо этого модуля.

Пример для тестов:
    # Изолированный импорт без побочных эффектов:
    from src.config.models import LedgerSettings

    # НЕ используйте в тестах (загрузит .env):
    from src.config.settings import LedgerSettings
"""

import sys

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.config.constants import PROJECT_ROOT
from src.config.models import (
    AIProvidersSettings,
    AuthSettings,
    BotSettings,
    CORSSettings,
    DatabaseSettings,
    LedgerSettings,
    LoggingSettings,
    StreamSettings,
    TelegramLoggingSettings,
)

ENV_FILE = PROJECT_ROOT / ".env"

# Если файл .env существует, используем его, иначе только переменные окружения
ENV_FILE_PATH = ENV_FILE if ENV_FILE.exists() else None

__all__ = [
    "AIProvidersSettings",
    "AuthSettings",
    "BotSettings",
    "CORSSettings",
    "DatabaseSettings",
    "LedgerSettings",
    "LoggingSettings",
    "Settings",
    "StreamSettings",
    "TelegramLoggingSettings",
    "load_settings",
    "settings",
]

# ==============================================================================
# СЛОВАРЬ ОШИБОК НА РУССКОМ ЯЗЫКЕ
# ==============================================================================
#
# Ключ: название поля в формате "родитель.поле" (например, "ledger.refund_max_attempts")
# Значение: понятное описание ошибки и как её исправить

FIELD_ERROR_MESSAGES: dict[str, str] = {
    "ledger.refund_max_attempts": (
        "LEDGER__REFUND_MAX_ATTEMPTS должно быть целым числом (например, 5)"
    ),
    "stream.heartbeat_seconds": (
        "STREAM__HEARTBEAT_SECONDS должно быть числом секунд (например, 15)"
    ),
}

# Сообщение по умолчанию для неизвестных полей
DEFAULT_ERROR_MESSAGE = "Ошибка конфигурации. Проверьте файл .env или переменные окружения"


class Settings(BaseSettings):
    """Главные настройки приложения.

    Настройки загружаются из двух источников (в порядке приоритета):
    1. Переменные окружения (приоритет выше)
    2. Файл .env (если существует)
    """

    model_config = SettingsConfigDict(
        env_file=ENV_FILE_PATH,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    bot: BotSettings = BotSettings()
    database: DatabaseSettings = DatabaseSettings()
    logging: LoggingSettings = LoggingSettings()
    auth: AuthSettings = AuthSettings()
    ai: AIProvidersSettings = AIProvidersSettings()
    ledger: LedgerSettings = LedgerSettings()
    stream: StreamSettings = StreamSettings()
    cors: CORSSettings = CORSSettings()

    # URL прокси-сервера для запросов к AI-провайдерам (опционально).
    # Формат: http://host:port, socks5://host:port
    proxy: str | None = None


def _format_validation_error(error: ValidationError) -> str:
    """Преобразовать ошибку Pydantic в понятное русское сообщение.

    Args:
        error: Ошибка валидации от Pydantic.

    Returns:
        Понятное сообщение на русском языке.
    """
    messages: list[str] = []

    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"])

        if field_path in FIELD_ERROR_MESSAGES:
            messages.append(FIELD_ERROR_MESSAGES[field_path])
        else:
            messages.append(DEFAULT_ERROR_MESSAGE)
            messages.append(f"Поле: {field_path}")
            messages.append(f"Тип ошибки: {err['type']}")
            messages.append(f"Сообщение: {err['msg']}")

    return "\n".join(messages)


def load_settings() -> Settings:
    """Загрузить настройки из переменных окружения.

    Если настройки некорректны — выводит понятную ошибку на русском
    и завершает программу.

    Returns:
        Объект Settings с загруженными настройками.
    """
    try:
        return Settings()
    except ValidationError as e:
        print(_format_validation_error(e), file=sys.stderr)
        sys.exit(1)


# Загружаем настройки при импорте модуля.
settings = load_settings()
