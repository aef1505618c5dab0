"""Настройка логирования.

Каналы вывода:
1. Консоль (stdout) с цветной подсветкой уровней
2. Файл с ротацией: data/logs/app.log
3. Telegram: ERROR и CRITICAL уходят админу (опционально)

CRITICAL в этом сервисе означает одно: деньги пользователя под угрозой
(например, возврат кредитов не записался после всех повторов).
Такие записи обязательно должны доходить до админа.

Формат строки:
    25-01-07 21:55:46 | WARNING | services.ledger_service | Сообщение
"""

import logging
import os
import queue
import sys
import threading
import traceback
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

import httpx
from typing_extensions import override

from src.config.constants import DATA_DIR

if TYPE_CHECKING:
    from src.config.models import TelegramLoggingSettings

LOGS_DIR = DATA_DIR / "logs"

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%y-%m-%d %H:%M:%S"

# Telegram режет сообщения длиннее 4096 символов, оставляем запас на разметку
TELEGRAM_MESSAGE_MAX_LENGTH = 3500

TELEGRAM_API_URL = "https://api.telegram.org"

_RESET = "\033[0m"

# ANSI-цвет уровня: 36 голубой, 32 зелёный, 33 жёлтый, 31 красный, 35 пурпурный
LEVEL_COLORS: dict[str, str] = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[1;35m",
}

LEVEL_EMOJI: dict[str, str] = {
    "WARNING": "⚠️",
    "ERROR": "🚨",
    "CRITICAL": "💀",
}

# Обработчики, установленные setup_logging (для повторного вызова)
_installed_handlers: list[logging.Handler] = []


class TimezoneFormatter(logging.Formatter):
    """Форматтер, который пишет время в заданном часовом поясе IANA."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        timezone_name: str = "Europe/Moscow",
    ) -> None:
        super().__init__(fmt, datefmt)
        self.timezone = ZoneInfo(timezone_name)

    @override
    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        moment = datetime.fromtimestamp(record.created, tz=self.timezone)
        return moment.strftime(datefmt or self.default_time_format)


class ColoredFormatter(TimezoneFormatter):
    """Консольный форматтер: короткое имя модуля и цветной уровень.

    Префикс "src." отбрасывается, он одинаковый у всех модулей.
    """

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        timezone_name: str = "Europe/Moscow",
        use_colors: bool = True,
    ) -> None:
        super().__init__(fmt, datefmt, timezone_name)
        self.use_colors = use_colors

    @override
    def format(self, record: logging.LogRecord) -> str:
        full_name = record.name
        record.name = full_name.removeprefix("src.")
        try:
            formatted = super().format(record)
        finally:
            record.name = full_name

        color = LEVEL_COLORS.get(record.levelname) if self.use_colors else None
        if color:
            formatted = formatted.replace(
                f"| {record.levelname} |",
                f"| {color}{record.levelname}{_RESET} |",
                1,
            )
        return formatted


class TelegramHandler(logging.Handler):
    """Отправка записей лога в Telegram-чат админа.

    emit() только кладёт запись в очередь; сетевые запросы делает
    отдельный daemon-поток, чтобы не блокировать event loop.
    Длинные записи (с traceback) уходят файлом .txt.
    """

    def __init__(self, bot_token: str, chat_id: int, level: int = logging.ERROR) -> None:
        super().__init__(level)
        self.bot_token = bot_token
        self.chat_id = chat_id

        self._http_client = httpx.Client(
            timeout=httpx.Timeout(connect=5.0, read=30.0, write=30.0, pool=5.0)
        )
        self._queue: queue.Queue[logging.LogRecord | None] = queue.Queue()
        self._worker_thread = threading.Thread(
            target=self._worker,
            daemon=True,
            name="telegram-logger",
        )
        self._worker_thread.start()

    @override
    def emit(self, record: logging.LogRecord) -> None:
        self._queue.put(record)

    def _worker(self) -> None:
        while (record := self._queue.get()) is not None:
            try:
                self._deliver(record)
            except (OSError, httpx.HTTPError) as e:
                # Только stderr: запись в logging здесь зациклится
                sys.stderr.write(f"[TelegramHandler] Ошибка отправки: {e}\n")

    def _deliver(self, record: logging.LogRecord) -> None:
        text = self.render(record)
        if len(text) <= TELEGRAM_MESSAGE_MAX_LENGTH:
            self._call("sendMessage", data={"text": text, "parse_mode": "HTML"})
            return

        emoji = LEVEL_EMOJI.get(record.levelname, "📝")
        self._call(
            "sendMessage",
            data={
                "text": f"{emoji} <b>{record.levelname}</b>: запись не влезла, "
                "полный текст в файле",
                "parse_mode": "HTML",
            },
        )
        stamp = datetime.fromtimestamp(record.created, tz=UTC).strftime("%Y%m%d_%H%M%S")
        self._call(
            "sendDocument",
            files={
                "document": (
                    f"log_{record.levelname}_{stamp}.txt",
                    self._plain_text(record).encode("utf-8"),
                )
            },
        )

    def _call(
        self,
        method: str,
        data: dict[str, str] | None = None,
        files: dict[str, tuple[str, bytes]] | None = None,
    ) -> None:
        payload = {"chat_id": str(self.chat_id), **(data or {})}
        self._http_client.post(
            f"{TELEGRAM_API_URL}/bot{self.bot_token}/{method}",
            data=payload,
            files=files,
        )

    @staticmethod
    def _plain_text(record: logging.LogRecord) -> str:
        text = record.getMessage()
        if record.exc_info:
            text += "\n\n" + "".join(traceback.format_exception(*record.exc_info))
        return text

    def render(self, record: logging.LogRecord) -> str:
        """HTML-текст сообщения для Telegram."""
        emoji = LEVEL_EMOJI.get(record.levelname, "📝")
        moment = datetime.fromtimestamp(record.created, tz=UTC)
        body = _escape_html(record.getMessage())
        if record.exc_info:
            tb = "".join(traceback.format_exception(*record.exc_info))
            body += f"\n\n<pre>{_escape_html(tb)}</pre>"
        return (
            f"{emoji} <b>{record.levelname}</b>\n"
            f"🕐 {moment:%Y-%m-%d %H:%M:%S} UTC\n"
            f"📍 {record.name}\n\n"
            f"{body}"
        )

    @override
    def close(self) -> None:
        self._queue.put(None)
        self._worker_thread.join(timeout=5.0)
        self._http_client.close()
        super().close()


def _escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _should_use_colors() -> bool:
    """Цвета только для терминала и без NO_COLOR (https://no-color.org/)."""
    if os.environ.get("NO_COLOR"):
        return False
    return sys.stdout.isatty()


def setup_logging(
    level: str = "INFO",
    timezone_name: str = "Europe/Moscow",
    telegram_settings: "TelegramLoggingSettings | None" = None,
    bot_token: str | None = None,
) -> None:
    """Настроить логирование приложения.

    Повторный вызов заменяет обработчики, а не дублирует их.

    Args:
        level: Уровень логирования (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        timezone_name: Часовой пояс для времени в логах.
        telegram_settings: Настройки отправки логов в Telegram.
        bot_token: Токен бота для Telegram. Без него Telegram не используется.
    """
    LOGS_DIR.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    root_logger.setLevel(level.upper())

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        ColoredFormatter(
            LOG_FORMAT,
            datefmt=DATE_FORMAT,
            timezone_name=timezone_name,
            use_colors=_should_use_colors(),
        )
    )

    # 5 МБ на файл, app.log + 3 архива
    file_handler = RotatingFileHandler(
        LOGS_DIR / "app.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(
        TimezoneFormatter(LOG_FORMAT, datefmt=DATE_FORMAT, timezone_name=timezone_name)
    )

    _installed_handlers.extend([console_handler, file_handler])

    if telegram_settings and telegram_settings.is_enabled and bot_token:
        telegram_level = logging.getLevelName(telegram_settings.level.upper())
        if not isinstance(telegram_level, int):
            telegram_level = logging.ERROR
        _installed_handlers.append(
            TelegramHandler(
                bot_token=bot_token,
                chat_id=telegram_settings.chat_id,  # type: ignore[arg-type]
                level=telegram_level,
            )
        )

    for handler in _installed_handlers:
        root_logger.addHandler(handler)

    # Uvicorn пишет в те же консоль и файл, без своего формата
    for name in ("uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [console_handler, file_handler]
        uvicorn_logger.propagate = False
    logging.getLogger("uvicorn").handlers = []
    logging.getLogger("uvicorn").propagate = False

    # Шум внешних библиотек
    for name in ("httpx", "httpcore", "openai", "aiosqlite", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Получить логгер модуля (обычно get_logger(__name__))."""
    return logging.getLogger(name)
