"""Общие фикстуры для всех тестов.

- Тестовая БД SQLite во временном файле (своя на каждый тест)
- Фабрика асинхронных сессий SQLAlchemy
- Сервис леджера с мгновенными повторами возврата

Файл вместо :memory: — у каждой сессии своё соединение,
а in-memory БД у каждого соединения была бы своя.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

import src.db.models  # noqa: F401  # регистрирует таблицы в Base.metadata
from src.config.models import LedgerSettings
from src.db.models_base import Base
from src.services.ledger_service import LedgerService


@pytest_asyncio.fixture
async def test_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Движок SQLAlchemy на чистой SQLite-базе во временной папке."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Фабрика сессий тестовой БД (как get_async_session_factory)."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Отдельная сессия для проверок состояния БД в тестах."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def ledger_settings() -> LedgerSettings:
    """Настройки леджера с мгновенными повторами возврата."""
    return LedgerSettings(
        refund_max_attempts=3,
        refund_base_delay=0.0,
        refund_max_delay=0.0,
        signup_bonus={"text": 50, "image": 10, "video": 0, "audio": 5},
    )


@pytest.fixture
def ledger(
    session_factory: async_sessionmaker[AsyncSession],
    ledger_settings: LedgerSettings,
) -> LedgerService:
    """Сервис леджера на тестовой БД."""
    return LedgerService(session_factory, ledger_settings)
