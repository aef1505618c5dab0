"""Сервис леджера — единственный код, который меняет балансы кошельков.

Этот модуль реализует:
- Списание кредитов за генерацию (charge)
- Возврат кредитов при неудачной генерации (refund)
- Начисление бонусов и покупок (credit)
- Приветственный бонус при первом обращении (grant_signup_bonus)
- Проверку целостности цепочки транзакций (verify_chain)

Атомарность:
    Изменение баланса и запись транзакции выполняются в одной транзакции БД.
    Операции над одной парой (user_id, category) сериализуются:
    asyncio.Lock внутри процесса плюс SELECT ... FOR UPDATE в БД.
    Операции над разными категориями или пользователями идут параллельно.

Возвраты:
    Возврат нельзя "потерять": инфраструктурные сбои повторяются
    с экспоненциальной задержкой, а после исчерпания попыток ошибка
    логируется как CRITICAL (уходит в Telegram админу) и пробрасывается.
    Возврат с request_id идемпотентен: повторный вызов для того же запроса
    возвращает ID уже записанного возврата и баланс не меняет.

Пример использования:
    ledger = LedgerService(get_async_session_factory())
    tx_id = await ledger.charge(42, Category.IMAGE, 10, request_id="abc")
    ...
    await ledger.refund(42, Category.IMAGE, 10, "генерация abc не удалась",
                        request_id="abc")
"""

import asyncio
import random
import weakref
from contextlib import AsyncExitStack
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config.models import LedgerSettings
from src.core.exceptions import InsufficientBalanceError, LedgerWriteError
from src.db.models.wallet import UserWallet, WalletTransaction, WalletTransactionType
from src.db.repositories.wallet_repo import WalletRepository
from src.providers.ai.base import Category
from src.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class WalletBalances:
    """Снимок балансов кошелька.

    Attributes:
        text: Кредиты на текст.
        image: Кредиты на изображения.
        video: Кредиты на видео.
        audio: Кредиты на аудио.
    """

    text: int
    image: int
    video: int
    audio: int

    def for_category(self, category: Category) -> int:
        """Баланс одной категории."""
        return int(getattr(self, category.value))

    def to_dict(self) -> dict[str, int]:
        """Балансы для JSON-ответа."""
        return {
            "text": self.text,
            "image": self.image,
            "video": self.video,
            "audio": self.audio,
        }


class LedgerService:
    """Сервис изменения балансов.

    Каждая операция открывает собственную сессию из фабрики, чтобы
    сбой одной операции не затрагивал другие.

    Attributes:
        _session_factory: Фабрика асинхронных сессий.
        _settings: Параметры повторов возврата и приветственного бонуса.
        _locks: Блокировки по ключу (user_id, category).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: LedgerSettings | None = None,
    ) -> None:
        """Инициализировать сервис.

        Args:
            session_factory: Фабрика сессий (expire_on_commit=False).
            settings: Настройки леджера. По умолчанию — значения LedgerSettings.
        """
        self._session_factory = session_factory
        self._settings = settings or LedgerSettings()
        # Блокировка живёт, пока её кто-то держит или ждёт
        self._locks: weakref.WeakValueDictionary[tuple[int, Category], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _get_lock(self, user_id: int, category: Category) -> asyncio.Lock:
        key = (user_id, category)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # =========================================================================
    # КОШЕЛЁК
    # =========================================================================

    async def get_or_create_wallet(self, user_id: int) -> UserWallet:
        """Получить кошелёк пользователя, создав пустой при первом обращении.

        Идемпотентно: гонка двух одновременных созданий разрешается
        в репозитории (IntegrityError → повторное чтение).
        """
        async with self._session_factory() as session:
            wallet, created = await WalletRepository(session).get_or_create(user_id)
        if created:
            logger.info("Создан кошелёк: user_id=%d", user_id)
        return wallet

    async def get_balance(self, user_id: int, category: Category) -> int:
        """Баланс категории (0 для пользователя без кошелька)."""
        async with self._session_factory() as session:
            wallet = await WalletRepository(session).get(user_id)
        if wallet is None:
            return 0
        return wallet.get_balance(category)

    async def get_all_balances(self, user_id: int) -> WalletBalances:
        """Балансы всех категорий."""
        wallet = await self.get_or_create_wallet(user_id)
        return WalletBalances(
            text=wallet.text_balance,
            image=wallet.image_balance,
            video=wallet.video_balance,
            audio=wallet.audio_balance,
        )

    async def get_transaction_history(
        self,
        user_id: int,
        category: Category | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[WalletTransaction]:
        """История транзакций пользователя, новые первыми."""
        async with self._session_factory() as session:
            return await WalletRepository(session).get_history(
                user_id, category, limit=limit, offset=offset
            )

    # =========================================================================
    # ОПЕРАЦИИ С БАЛАНСОМ
    # =========================================================================

    async def charge(
        self,
        user_id: int,
        category: Category,
        amount: int,
        *,
        request_id: str | None = None,
        description: str | None = None,
    ) -> int:
        """Списать кредиты.

        Args:
            user_id: ID пользователя.
            category: Категория баланса.
            amount: Сумма списания (> 0).
            request_id: ID запроса генерации.
            description: Описание для истории.

        Returns:
            ID транзакции CHARGE.

        Raises:
            ValueError: Сумма не положительная.
            InsufficientBalanceError: Баланс меньше суммы. Баланс не меняется.
            LedgerWriteError: Сбой БД.
        """
        return await self._apply(
            user_id,
            category,
            WalletTransactionType.CHARGE,
            amount,
            description=description or f"Списание за запрос {request_id}",
            request_id=request_id,
        )

    async def refund(
        self,
        user_id: int,
        category: Category,
        amount: int,
        reason: str,
        *,
        request_id: str | None = None,
    ) -> int:
        """Вернуть кредиты.

        Возврат принимается всегда. Инфраструктурные сбои повторяются
        с экспоненциальной задержкой и jitter.
        Для одного request_id записывается не больше одного возврата.

        Returns:
            ID транзакции REFUND.

        Raises:
            ValueError: Сумма не положительная.
            LedgerWriteError: Все попытки исчерпаны (залогировано как CRITICAL).
        """
        if amount <= 0:
            raise ValueError(f"Сумма возврата должна быть положительной: {amount}")

        max_attempts = max(1, self._settings.refund_max_attempts)

        for attempt in range(max_attempts):
            try:
                return await self._apply(
                    user_id,
                    category,
                    WalletTransactionType.REFUND,
                    amount,
                    description=reason,
                    request_id=request_id,
                )
            except LedgerWriteError as e:
                if attempt == max_attempts - 1:
                    logger.critical(
                        "Возврат НЕ записан после %d попыток: user_id=%d, "
                        "category=%s, amount=%d, request_id=%s, ошибка: %s",
                        max_attempts,
                        user_id,
                        category,
                        amount,
                        request_id,
                        e.original_error,
                    )
                    raise LedgerWriteError(
                        "refund",
                        e.original_error,
                        user_id=user_id,
                        category=category.value,
                        attempts=max_attempts,
                    ) from e

                base_delay = self._settings.refund_base_delay * (2**attempt)
                jitter = random.uniform(0, base_delay * 0.1)
                delay = min(base_delay + jitter, self._settings.refund_max_delay)

                logger.warning(
                    "Сбой записи возврата (попытка %d/%d): %s. Повтор через %.2fs",
                    attempt + 1,
                    max_attempts,
                    e.original_error,
                    delay,
                )
                await asyncio.sleep(delay)

        raise RuntimeError("Цикл повторов возврата завершился без результата")

    async def credit(
        self,
        user_id: int,
        category: Category,
        amount: int,
        reason: str,
        *,
        transaction_type: WalletTransactionType = WalletTransactionType.BONUS,
    ) -> int:
        """Начислить кредиты (бонус или покупка).

        Returns:
            ID транзакции.

        Raises:
            ValueError: Сумма не положительная или тип не BONUS/PURCHASE.
            LedgerWriteError: Сбой БД.
        """
        if transaction_type not in (
            WalletTransactionType.BONUS,
            WalletTransactionType.PURCHASE,
        ):
            raise ValueError(
                f"Начисление поддерживает только bonus и purchase: {transaction_type}"
            )
        return await self._apply(
            user_id,
            category,
            transaction_type,
            amount,
            description=reason,
        )

    async def grant_signup_bonus(self, user_id: int) -> bool:
        """Выдать приветственный бонус один раз.

        Суммы по категориям берутся из ledger.signup_bonus. Флаг в кошельке
        и все бонусные транзакции записываются одной транзакцией БД:
        при сбое не начисляется ничего и флаг не ставится, поэтому
        следующий вызов выдаст бонус целиком.

        Returns:
            True если бонус выдан сейчас, False если уже был выдан.

        Raises:
            LedgerWriteError: Сбой БД (бонус не выдан).
        """
        await self.get_or_create_wallet(user_id)

        bonuses = [
            (Category(name), amount)
            for name, amount in self._settings.signup_bonus.items()
            if amount > 0
        ]
        # Порядок захвата блокировок фиксирован: порядок Category
        bonus_categories = {category for category, _ in bonuses}
        categories = [category for category in Category if category in bonus_categories]

        async with AsyncExitStack() as stack:
            for category in categories:
                await stack.enter_async_context(self._get_lock(user_id, category))

            try:
                async with self._session_factory() as session:
                    repo = WalletRepository(session)
                    wallet = await repo.get(user_id, for_update=True)
                    if wallet is None or wallet.signup_bonus_granted:
                        return False

                    wallet.signup_bonus_granted = True
                    for category, amount in bonuses:
                        await repo.add_transaction(
                            wallet,
                            category,
                            WalletTransactionType.BONUS,
                            amount,
                            "Приветственный бонус",
                        )
                    await session.commit()
            except SQLAlchemyError as e:
                logger.error(
                    "Ошибка выдачи приветственного бонуса: user_id=%d: %s",
                    user_id,
                    e,
                )
                raise LedgerWriteError(
                    "signup_bonus",
                    e,
                    user_id=user_id,
                    category=",".join(category.value for category in categories),
                ) from e

        logger.info(
            "Приветственный бонус выдан: user_id=%d, %s",
            user_id,
            ", ".join(f"{category.value}={amount}" for category, amount in bonuses),
        )
        return True

    async def get_request_transactions(self, request_id: str) -> list[WalletTransaction]:
        """Списание и возврат запроса генерации в порядке записи."""
        async with self._session_factory() as session:
            return await WalletRepository(session).get_by_request(request_id)

    async def verify_chain(self, user_id: int, category: Category) -> bool:
        """Проверить целостность цепочки транзакций категории.

        Каждая транзакция должна начинаться с баланса, которым закончилась
        предыдущая, а последняя — совпадать с сохранённым балансом.
        """
        async with self._session_factory() as session:
            repo = WalletRepository(session)
            wallet = await repo.get(user_id)
            chain = await repo.get_chain(user_id, category)

        expected = 0
        for tx in chain:
            if tx.balance_before != expected:
                logger.error(
                    "Разрыв цепочки: tx_id=%d, balance_before=%d, ожидалось %d",
                    tx.id,
                    tx.balance_before,
                    expected,
                )
                return False
            if tx.balance_after != tx.balance_before + tx.signed_amount:
                logger.error("Неверная сумма в транзакции: tx_id=%d", tx.id)
                return False
            expected = tx.balance_after

        stored = wallet.get_balance(category) if wallet is not None else 0
        return stored == expected

    # =========================================================================
    # ВНУТРЕННЯЯ ЛОГИКА
    # =========================================================================

    async def _apply(
        self,
        user_id: int,
        category: Category,
        type_: WalletTransactionType,
        amount: int,
        *,
        description: str,
        request_id: str | None = None,
    ) -> int:
        """Изменить баланс и записать транзакцию атомарно."""
        if amount <= 0:
            raise ValueError(f"Сумма транзакции должна быть положительной: {amount}")

        operation = type_.value
        lock = self._get_lock(user_id, category)

        async with lock:
            try:
                async with self._session_factory() as session:
                    repo = WalletRepository(session)
                    await repo.get_or_create(user_id)
                    wallet = await repo.get(user_id, for_update=True)
                    if wallet is None:
                        raise RuntimeError(f"Кошелёк исчез: user_id={user_id}")

                    if type_ == WalletTransactionType.REFUND and request_id:
                        existing = await repo.get_refund(request_id)
                        if existing is not None:
                            await session.rollback()
                            logger.warning(
                                "Возврат по запросу %s уже записан: tx_id=%d",
                                request_id,
                                existing.id,
                            )
                            return existing.id

                    available = wallet.get_balance(category)
                    if type_ == WalletTransactionType.CHARGE and available < amount:
                        await session.rollback()
                        raise InsufficientBalanceError(
                            user_id=user_id,
                            category=category.value,
                            required=amount,
                            available=available,
                        )

                    tx = await repo.add_transaction(
                        wallet,
                        category,
                        type_,
                        amount,
                        description,
                        request_id=request_id,
                    )
                    await session.commit()
                    tx_id = tx.id
            except SQLAlchemyError as e:
                logger.error(
                    "Ошибка записи в леджер: operation=%s, user_id=%d, category=%s: %s",
                    operation,
                    user_id,
                    category,
                    e,
                )
                raise LedgerWriteError(
                    operation,
                    e,
                    user_id=user_id,
                    category=category.value,
                ) from e

        logger.info(
            "Леджер: %s user_id=%d, category=%s, amount=%d, tx_id=%d, request_id=%s",
            operation,
            user_id,
            category,
            amount,
            tx_id,
            request_id,
        )
        return tx_id


def create_ledger_service(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> LedgerService:
    """Создать сервис леджера из глобальных настроек."""
    from src.config.settings import settings
    from src.db.base import get_async_session_factory

    return LedgerService(
        session_factory or get_async_session_factory(),
        settings.ledger,
    )
