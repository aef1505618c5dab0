"""Базовая конфигурация SQLAlchemy.

Этот модуль отвечает за:
- Создание подключения к базе данных (engine)
- Настройку фабрики сессий (async_sessionmaker)
- Закрытие пула соединений при остановке

Схему БД ведёт Alembic (см. alembic/ и src/db/migrations.py).

Каждая операция леджера открывает СВОЮ сессию из фабрики: списание,
возврат и запись журнала генерации не делят одну транзакцию.

URL базы данных:
- Если DATABASE__POSTGRES_URL указан — используется PostgreSQL
- Иначе — SQLite (./data/genledger.db или /data/genledger.db)

ВАЖНО: Для изоляции тестов engine и фабрика сессий создаются лениво.
Импорт Base для моделей должен быть из src.db.models_base.
"""

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.config.constants import DATA_DIR
from src.db.models_base import Base

__all__ = [
    "Base",
    "dispose_engine",
    "get_async_session_factory",
    "get_engine",
]

if TYPE_CHECKING:
    from src.config.settings import Settings

# Ленивые синглтоны для engine и session factory
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _get_settings() -> "Settings":
    """Ленивая загрузка настроек.

    Тесты могут импортировать модуль без загрузки настроек из .env файла.
    """
    from src.config.settings import settings

    return settings


def _get_database_url() -> str:
    """Получить URL подключения к базе данных (async).

    Returns:
        URL подключения в формате SQLAlchemy (с async-драйвером).
    """
    settings = _get_settings()
    if settings.database.postgres_url:
        return settings.database.postgres_url

    db_path = DATA_DIR / "genledger.db"
    return f"sqlite+aiosqlite:///{db_path}"


def get_engine() -> AsyncEngine:
    """Получить асинхронный engine (ленивая инициализация).

    Returns:
        Асинхронный Engine для SQLAlchemy.
    """
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            _get_database_url(),
            echo=False,
            pool_pre_ping=True,
        )
    return _engine


def get_async_session_factory() -> async_sessionmaker[AsyncSession]:
    """Получить фабрику асинхронных сессий (ленивая инициализация).

    expire_on_commit=False — не "протухать" объекты после commit.
    """
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_factory


async def dispose_engine() -> None:
    """Закрыть пул соединений."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_factory = None
