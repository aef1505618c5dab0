"""Журнал запросов генерации.

Каждый запрос пользователя → одна запись. Создаётся после успешного
списания кредитов, обновляется при переходе в STREAMING
и один раз — при завершении (COMPLETED или FAILED).

Используется для:
- Ответа на вопрос "был ли запрос оплачен и был ли возврат"
  (ID транзакций списания и возврата)
- Отладки fallback (какие провайдеры пробовали и в каком порядке)
- Статуса запроса для клиента после переподключения
"""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import BigInteger, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from typing_extensions import override

from src.db.models_base import Base


class GenerationDBStatus(StrEnum):
    """Статус запроса генерации.

    PENDING → STREAMING → COMPLETED, либо PENDING → FAILED.
    Терминальный статус записывается один раз.
    """

    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Статус финальный."""
        return self in (GenerationDBStatus.COMPLETED, GenerationDBStatus.FAILED)


class Generation(Base):
    """Запись о запросе генерации.

    Attributes:
        id: Первичный ключ.
        request_id: Публичный ID запроса (uuid4 hex).
        user_id: Внешний ID пользователя.
        model_slug: Slug модели (например, "flux-schnell").
        category: Категория баланса, с которой списаны кредиты.
        status: Текущий статус (GenerationDBStatus).
        priced_cost: Стоимость в кредитах на момент запроса.
        charge_transaction_id: ID транзакции списания.
        refund_transaction_id: ID транзакции возврата (если был).
        attempted_providers: Провайдеры в порядке попыток (через запятую).
        provider_name: Провайдер, который выполнил генерацию.
        result_content: Итоговый текст.
        result_file_url: URL итогового файла.
        error: Причина неудачи.
    """

    __tablename__ = "generations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    request_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )

    user_id: Mapped[int] = mapped_column(BigInteger, index=True, nullable=False)

    model_slug: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=GenerationDBStatus.PENDING,
        nullable=False,
    )

    priced_cost: Mapped[int] = mapped_column(nullable=False)

    # Без FK: журнал генераций не должен ломаться из-за порядка записи
    charge_transaction_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    refund_transaction_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    attempted_providers: Mapped[str] = mapped_column(
        String(255),
        default="",
        nullable=False,
    )
    provider_name: Mapped[str | None] = mapped_column(String(50), nullable=True)

    result_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_file_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        index=True,
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def attempted_list(self) -> list[str]:
        """Провайдеры в порядке попыток."""
        return [name for name in self.attempted_providers.split(",") if name]

    @override
    def __repr__(self) -> str:
        """Строковое представление генерации для отладки."""
        return (
            f"<Generation(request_id={self.request_id}, user_id={self.user_id}, "
            f"model={self.model_slug}, status={self.status})>"
        )
