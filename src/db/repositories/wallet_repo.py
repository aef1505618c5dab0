"""Репозиторий кошельков и журнала транзакций.

Методы изменения баланса НЕ делают commit: запись баланса и добавление
транзакции должны попасть в БД одной транзакцией, границы которой
задаёт LedgerService.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models.wallet import (
    BALANCE_COLUMNS,
    UserWallet,
    WalletTransaction,
    WalletTransactionType,
)
from src.providers.ai.base import Category


class WalletRepository:
    """Репозиторий для работы с кошельками.

    Использует Dependency Injection — сессия передаётся в конструктор.

    Пример использования:
        async with session_factory() as session:
            repo = WalletRepository(session)
            wallet, created = await repo.get_or_create(user_id=42)
    """

    def __init__(self, session: AsyncSession) -> None:
        """Инициализировать репозиторий.

        Args:
            session: Асинхронная сессия SQLAlchemy.
        """
        self._session = session

    async def get(self, user_id: int, *, for_update: bool = False) -> UserWallet | None:
        """Найти кошелёк пользователя.

        Args:
            user_id: Внешний ID пользователя.
            for_update: Заблокировать строку до конца транзакции
                (SELECT ... FOR UPDATE; SQLite его игнорирует).

        Returns:
            UserWallet если найден, None если не существует.
        """
        stmt = select(UserWallet).where(UserWallet.user_id == user_id)
        if for_update:
            # populate_existing: перечитать балансы, даже если объект в identity map
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, user_id: int) -> UserWallet:
        """Создать пустой кошелёк.

        Returns:
            Созданный объект UserWallet (уже в БД).
        """
        wallet = UserWallet(user_id=user_id)
        self._session.add(wallet)
        await self._session.commit()
        await self._session.refresh(wallet)
        return wallet

    async def get_or_create(self, user_id: int) -> tuple[UserWallet, bool]:
        """Получить кошелёк или создать новый.

        Идемпотентно: повторные вызовы возвращают тот же кошелёк.
        Если два запроса создают кошелёк одновременно, один из них
        получит IntegrityError и повторит поиск.

        Returns:
            Кортеж (wallet, created).
        """
        wallet = await self.get(user_id)
        if wallet:
            return wallet, False

        try:
            return await self.create(user_id), True
        except IntegrityError:
            await self._session.rollback()
            wallet = await self.get(user_id)
            if wallet is None:
                raise RuntimeError(
                    f"Не удалось создать или найти кошелёк user_id={user_id}"
                ) from None
            return wallet, False

    async def add_transaction(
        self,
        wallet: UserWallet,
        category: Category,
        type_: WalletTransactionType,
        amount: int,
        description: str,
        request_id: str | None = None,
    ) -> WalletTransaction:
        """Изменить баланс категории и записать транзакцию (без commit).

        Args:
            wallet: Кошелёк, заблокированный в текущей транзакции.
            category: Категория баланса.
            type_: Тип транзакции (CHARGE уменьшает баланс).
            amount: Сумма (> 0).
            description: Описание для истории.
            request_id: ID запроса генерации.

        Returns:
            Транзакция с заполненным id (после flush).

        Raises:
            ValueError: Сумма не положительная или баланс стал бы отрицательным.
        """
        if amount <= 0:
            raise ValueError(f"Сумма транзакции должна быть положительной: {amount}")

        balance_before = wallet.get_balance(category)
        delta = -amount if type_ == WalletTransactionType.CHARGE else amount
        balance_after = balance_before + delta

        if balance_after < 0:
            raise ValueError(
                f"Баланс {category.value} стал бы отрицательным: "
                f"{balance_before} - {amount}"
            )

        setattr(wallet, BALANCE_COLUMNS[category], balance_after)

        transaction = WalletTransaction(
            user_id=wallet.user_id,
            category=category.value,
            type=type_.value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            request_id=request_id,
            description=description[:255],
        )
        self._session.add(transaction)
        await self._session.flush()
        return transaction

    async def get_history(
        self,
        user_id: int,
        category: Category | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[WalletTransaction]:
        """История транзакций, новые первыми."""
        stmt = select(WalletTransaction).where(WalletTransaction.user_id == user_id)
        if category is not None:
            stmt = stmt.where(WalletTransaction.category == category.value)
        stmt = stmt.order_by(WalletTransaction.id.desc()).limit(limit).offset(offset)

        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_chain(self, user_id: int, category: Category) -> list[WalletTransaction]:
        """Все транзакции категории в порядке применения."""
        stmt = (
            select(WalletTransaction)
            .where(
                WalletTransaction.user_id == user_id,
                WalletTransaction.category == category.value,
            )
            .order_by(WalletTransaction.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_request(self, request_id: str) -> list[WalletTransaction]:
        """Транзакции, относящиеся к запросу генерации."""
        stmt = (
            select(WalletTransaction)
            .where(WalletTransaction.request_id == request_id)
            .order_by(WalletTransaction.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_refund(self, request_id: str) -> WalletTransaction | None:
        """Возврат по запросу генерации (не больше одного на запрос)."""
        stmt = select(WalletTransaction).where(
            WalletTransaction.request_id == request_id,
            WalletTransaction.type == WalletTransactionType.REFUND.value,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
