"""Точка входа ASGI-приложения.

Команда запуска:
    uvicorn src.main:app --host 0.0.0.0 --port 8000

Или через python:
    python -m src
"""

from src.app import create_app
from src.config.settings import settings
from src.utils.logging import get_logger, setup_logging

# Ошибки и CRITICAL по деньгам уходят админу в Telegram, если задан токен бота
setup_logging(
    level=settings.logging.level,
    timezone_name=settings.logging.timezone,
    telegram_settings=settings.logging.telegram,
    bot_token=settings.bot.token.get_secret_value() if settings.bot.token else None,
)

logger = get_logger(__name__)
logger.info("GenLedger: логирование настроено, загрузка приложения")

app = create_app()
