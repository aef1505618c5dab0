"""Проверка статуса миграций базы данных.

Приложение не создаёт таблицы само: схему ведёт Alembic
(`alembic upgrade head`). При старте сравниваем ревизию в БД
с head-ревизией из папки alembic/ и предупреждаем о расхождении.

Типичные ситуации:
- Нет таблицы alembic_version → база не инициализирована
- Ревизия в БД отличается от head → есть непримененные миграции
- Ревизия в БД = head → всё в порядке
"""

from pathlib import Path

from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.ext.asyncio import AsyncEngine

from src.config.constants import PROJECT_ROOT
from src.utils.logging import get_logger

logger = get_logger(__name__)

ALEMBIC_DIR = PROJECT_ROOT / "alembic"


def get_head_revision(script_location: Path = ALEMBIC_DIR) -> str | None:
    """Получить head-ревизию из файлов миграций.

    Returns:
        ID head-ревизии или None, если папки миграций нет.
    """
    if not (script_location / "versions").exists():
        logger.warning("Папка миграций не найдена: %s", script_location)
        return None

    return ScriptDirectory(str(script_location)).get_current_head()


async def get_current_revision(engine: AsyncEngine) -> str | None:
    """Получить текущую ревизию из таблицы alembic_version.

    Returns:
        ID ревизии или None, если миграции не применялись.
    """
    async with engine.connect() as conn:
        return await conn.run_sync(
            lambda sync_conn: MigrationContext.configure(
                sync_conn
            ).get_current_revision()
        )


async def check_migrations(
    engine: AsyncEngine, script_location: Path = ALEMBIC_DIR
) -> bool:
    """Проверить статус миграций и вывести предупреждение, если нужно.

    Args:
        engine: Асинхронный SQLAlchemy engine.
        script_location: Папка с env.py и versions/.

    Returns:
        True, если ревизия БД совпадает с head.
    """
    head_revision = get_head_revision(script_location)
    current_revision = await get_current_revision(engine)

    if head_revision is None:
        logger.warning(
            "⚠️  Файлы миграций не найдены. "
            "Выполните: alembic revision --autogenerate -m 'initial'"
        )
        return False

    if current_revision is None:
        logger.warning(
            "⚠️  МИГРАЦИИ НЕ ПРИМЕНЕНЫ! База данных не инициализирована.\n"
            "   Выполните: alembic upgrade head"
        )
        return False

    if current_revision != head_revision:
        logger.warning(
            "⚠️  МИГРАЦИИ НЕ АКТУАЛЬНЫ!\n"
            "   Текущая ревизия: %s\n"
            "   Последняя ревизия: %s\n"
            "   Выполните: alembic upgrade head",
            current_revision,
            head_revision,
        )
        return False

    logger.debug("✅ Миграции актуальны (ревизия: %s)", current_revision)
    return True
