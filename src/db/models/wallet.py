"""Модели кошелька пользователя и журнала транзакций (леджер).

Кошелёк — четыре независимых баланса кредитов (по категориям контента)
и денежный баланс. Транзакция — неизменяемая запись о каждом изменении
баланса одной категории.

Почему леджер (журнал транзакций):
1. Аудит — можно отследить историю всех операций
2. Споры — видно, был ли запрос оплачен и был ли возврат
3. Проверка целостности — баланс всегда пересчитывается из истории:
   balance_before транзакции N равен balance_after транзакции N-1

Балансы меняет только LedgerService. Прямое присваивание полей
из остального кода запрещено.
"""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from typing_extensions import override

from src.db.models_base import Base
from src.providers.ai.base import Category


class WalletTransactionType(StrEnum):
    """Тип транзакции — причина изменения баланса.

    Значения:
        CHARGE: Списание за генерацию.
        REFUND: Возврат за неудавшуюся генерацию.
        BONUS: Бонусные кредиты (регистрация, акции).
        PURCHASE: Покупка кредитов.
    """

    CHARGE = "charge"
    REFUND = "refund"
    BONUS = "bonus"
    PURCHASE = "purchase"


# Имя колонки баланса для каждой категории
BALANCE_COLUMNS: dict[Category, str] = {
    Category.TEXT: "text_balance",
    Category.IMAGE: "image_balance",
    Category.VIDEO: "video_balance",
    Category.AUDIO: "audio_balance",
}


class UserWallet(Base):
    """Кошелёк пользователя.

    Одна строка на пользователя, создаётся лениво при первом обращении
    (LedgerService.get_or_create_wallet).

    Attributes:
        id: Первичный ключ.
        user_id: Внешний ID пользователя (уникальный).
        text_balance: Кредиты на текстовые генерации.
        image_balance: Кредиты на изображения.
        video_balance: Кредиты на видео.
        audio_balance: Кредиты на аудио.
        money_balance: Денежный баланс (фиатный кредит).
        signup_bonus_granted: Приветственный бонус уже выдан.
    """

    __tablename__ = "user_wallets"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # BigInteger: внешний ID может быть telegram_id
    user_id: Mapped[int] = mapped_column(
        BigInteger,
        unique=True,
        index=True,
        nullable=False,
    )

    text_balance: Mapped[int] = mapped_column(default=0, nullable=False)
    image_balance: Mapped[int] = mapped_column(default=0, nullable=False)
    video_balance: Mapped[int] = mapped_column(default=0, nullable=False)
    audio_balance: Mapped[int] = mapped_column(default=0, nullable=False)

    # Numeric(12, 2): деньги только в Decimal, никаких float
    money_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal(0),
        nullable=False,
    )

    signup_bonus_granted: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Отрицательный баланс никогда не попадает в БД
    __table_args__ = (
        CheckConstraint("text_balance >= 0", name="ck_wallet_text_non_negative"),
        CheckConstraint("image_balance >= 0", name="ck_wallet_image_non_negative"),
        CheckConstraint("video_balance >= 0", name="ck_wallet_video_non_negative"),
        CheckConstraint("audio_balance >= 0", name="ck_wallet_audio_non_negative"),
    )

    def get_balance(self, category: Category) -> int:
        """Баланс категории."""
        return int(getattr(self, BALANCE_COLUMNS[category]))

    @override
    def __repr__(self) -> str:
        """Строковое представление для отладки."""
        return (
            f"<UserWallet(user_id={self.user_id}, text={self.text_balance}, "
            f"image={self.image_balance}, video={self.video_balance}, "
            f"audio={self.audio_balance})>"
        )


class WalletTransaction(Base):
    """Транзакция — неизменяемая запись об изменении баланса категории.

    Сумма хранится без знака, направление задаёт тип:
    CHARGE уменьшает баланс, REFUND/BONUS/PURCHASE увеличивают.

    Attributes:
        id: Уникальный ID транзакции. Порядок id — порядок применения.
        user_id: Внешний ID пользователя.
        category: Категория баланса.
        type: Тип транзакции (WalletTransactionType).
        amount: Сумма операции (всегда > 0).
        balance_before: Баланс категории ДО транзакции.
        balance_after: Баланс категории ПОСЛЕ транзакции.
        request_id: ID запроса генерации (для CHARGE и REFUND).
        description: Человекочитаемое описание.
        created_at: Дата и время создания.
    """

    __tablename__ = "wallet_transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("user_wallets.user_id", ondelete="CASCADE"),
        nullable=False,
    )

    category: Mapped[str] = mapped_column(String(20), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(nullable=False)
    balance_before: Mapped[int] = mapped_column(nullable=False)
    balance_after: Mapped[int] = mapped_column(nullable=False)

    # Связывает CHARGE и REFUND одного запроса
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    description: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_wallet_tx_amount_positive"),
        # История по пользователю и категории в порядке применения
        Index("ix_wallet_tx_user_category", "user_id", "category", "id"),
        # Поиск пары списание/возврат по запросу
        Index("ix_wallet_tx_request", "request_id"),
        # Не больше одного возврата на запрос
        Index(
            "uq_wallet_tx_refund_request",
            "request_id",
            unique=True,
            sqlite_where=text("type = 'refund'"),
            postgresql_where=text("type = 'refund'"),
        ),
    )

    @property
    def signed_amount(self) -> int:
        """Сумма со знаком относительно баланса."""
        if self.type == WalletTransactionType.CHARGE:
            return -self.amount
        return self.amount

    @override
    def __repr__(self) -> str:
        """Строковое представление для отладки."""
        return (
            f"<WalletTransaction(id={self.id}, user_id={self.user_id}, "
            f"category={self.category}, type={self.type}, amount={self.amount}, "
            f"{self.balance_before}->{self.balance_after})>"
        )
