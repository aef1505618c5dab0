"""Репозиторий журнала запросов генерации.

Этот модуль реализует методы для:
- Создания записи после успешного списания (статус PENDING)
- Перехода в STREAMING и записи попыток провайдеров
- Однократной записи терминального статуса (COMPLETED или FAILED)
- Чтения статуса запроса для клиента

Терминальный статус записывается один раз: повторная попытка
завершить уже завершённый запрос игнорируется с предупреждением.
"""

from datetime import UTC, datetime

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models.generation import Generation, GenerationDBStatus
from src.utils.logging import get_logger

logger = get_logger(__name__)


class GenerationRepository:
    """Репозиторий для работы с журналом генераций.

    Attributes:
        session: Асинхронная сессия SQLAlchemy для работы с БД.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Создать репозиторий генераций.

        Args:
            session: Асинхронная сессия для работы с БД.
        """
        self.session = session

    async def create_generation(
        self,
        request_id: str,
        user_id: int,
        model_slug: str,
        category: str,
        priced_cost: int,
        charge_transaction_id: int | None = None,
    ) -> Generation:
        """Создать запись о запросе генерации.

        Вызывается сразу после списания кредитов, до первого
        обращения к провайдеру.

        Args:
            request_id: Публичный ID запроса.
            user_id: ID пользователя.
            model_slug: Slug запрошенной модели.
            category: Категория баланса.
            priced_cost: Списанная стоимость.
            charge_transaction_id: ID транзакции списания.

        Returns:
            Созданная запись со статусом PENDING.
        """
        generation = Generation(
            request_id=request_id,
            user_id=user_id,
            model_slug=model_slug,
            category=category,
            status=GenerationDBStatus.PENDING,
            priced_cost=priced_cost,
            charge_transaction_id=charge_transaction_id,
            attempted_providers="",
        )
        self.session.add(generation)
        await self.session.commit()
        await self.session.refresh(generation)

        logger.debug(
            "Генерация создана: request_id=%s, user_id=%d, model=%s, cost=%d",
            request_id,
            user_id,
            model_slug,
            priced_cost,
        )
        return generation

    async def get_by_request_id(self, request_id: str) -> Generation | None:
        """Найти запись по публичному ID запроса."""
        stmt = select(Generation).where(Generation.request_id == request_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_attempt(
        self,
        request_id: str,
        provider_name: str,
    ) -> None:
        """Добавить провайдера в список попыток."""
        generation = await self.get_by_request_id(request_id)
        if generation is None:
            logger.warning("Генерация не найдена: request_id=%s", request_id)
            return

        attempted = generation.attempted_list
        attempted.append(provider_name)
        generation.attempted_providers = ",".join(attempted)[:255]
        await self.session.commit()

    async def mark_streaming(self, request_id: str, provider_name: str) -> None:
        """Перевести запрос в STREAMING (провайдер начал отдавать результат)."""
        generation = await self.get_by_request_id(request_id)
        if generation is None:
            logger.warning("Генерация не найдена: request_id=%s", request_id)
            return
        if GenerationDBStatus(generation.status).is_terminal:
            return

        generation.status = GenerationDBStatus.STREAMING
        generation.provider_name = provider_name
        await self.session.commit()

    async def finish(
        self,
        request_id: str,
        status: GenerationDBStatus,
        *,
        provider_name: str | None = None,
        content: str | None = None,
        file_url: str | None = None,
        error: str | None = None,
        refund_transaction_id: int | None = None,
    ) -> bool:
        """Записать терминальный статус.

        Args:
            request_id: Публичный ID запроса.
            status: COMPLETED или FAILED.
            provider_name: Провайдер, выполнивший генерацию.
            content: Итоговый текст.
            file_url: URL итогового файла.
            error: Причина неудачи.
            refund_transaction_id: ID транзакции возврата.

        Returns:
            True если статус записан, False если запрос уже завершён
            или не найден.

        Raises:
            ValueError: Статус не терминальный.
        """
        if not status.is_terminal:
            raise ValueError(f"Статус {status} не является терминальным")

        generation = await self.get_by_request_id(request_id)
        if generation is None:
            logger.warning("Генерация не найдена: request_id=%s", request_id)
            return False

        if GenerationDBStatus(generation.status).is_terminal:
            logger.warning(
                "Повторное завершение генерации проигнорировано: "
                "request_id=%s, текущий=%s, новый=%s",
                request_id,
                generation.status,
                status,
            )
            return False

        generation.status = status
        generation.completed_at = datetime.now(UTC).replace(tzinfo=None)
        if provider_name is not None:
            generation.provider_name = provider_name
        if content is not None:
            generation.result_content = content
        if file_url is not None:
            generation.result_file_url = file_url
        if error is not None:
            generation.error = error
        if refund_transaction_id is not None:
            generation.refund_transaction_id = refund_transaction_id

        await self.session.commit()

        logger.debug(
            "Генерация завершена: request_id=%s, status=%s, provider=%s",
            request_id,
            status,
            generation.provider_name,
        )
        return True

    async def list_for_user(self, user_id: int, limit: int = 20) -> list[Generation]:
        """Последние запросы пользователя, новые первыми."""
        stmt = (
            select(Generation)
            .where(Generation.user_id == user_id)
            .order_by(desc(Generation.id))
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_unfinished(self) -> list[Generation]:
        """Запросы без терминального статуса.

        После перезапуска процесса такие запросы уже никто не выполняет.
        """
        stmt = select(Generation).where(
            Generation.status.in_(
                (GenerationDBStatus.PENDING, GenerationDBStatus.STREAMING)
            )
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
