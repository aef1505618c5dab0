"""Окружение Alembic для миграций схемы леджера.

Как менять схему:
1. Изменить модели в src/db/models/*.py
2. alembic revision --autogenerate -m "описание"
3. Проверить сгенерированный файл в alembic/versions/
4. alembic upgrade head

Приложение само таблицы не создаёт: при старте оно только сверяет
ревизию БД с head (src/db/migrations.py) и предупреждает о расхождении.
"""

import asyncio
from logging.config import fileConfig

from sqlalchemy.engine import Connection

from alembic import context
from src.db.base import Base, get_engine

# Импорт регистрирует таблицы в Base.metadata для autogenerate
from src.db.models import Generation, UserWallet, WalletTransaction  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Сгенерировать SQL без подключения к БД.

    Пример: alembic upgrade head --sql > migration.sql
    """
    context.configure(
        url=str(get_engine().url),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    # render_as_batch: SQLite не умеет ALTER для большинства изменений
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Применить миграции через async engine приложения."""
    engine = get_engine()
    try:
        async with engine.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
