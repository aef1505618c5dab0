"""Тесты репозитория кошельков (WalletRepository)."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models.wallet import WalletTransactionType
from src.db.repositories.wallet_repo import WalletRepository
from src.providers.ai.base import Category

USER_ID = 1001


@pytest.mark.asyncio
async def test_get_missing_wallet_returns_none(db_session: AsyncSession) -> None:
    assert await WalletRepository(db_session).get(USER_ID) is None


@pytest.mark.asyncio
async def test_get_or_create_creates_once(db_session: AsyncSession) -> None:
    repo = WalletRepository(db_session)

    wallet, created = await repo.get_or_create(USER_ID)
    same, created_again = await repo.get_or_create(USER_ID)

    assert created is True
    assert created_again is False
    assert same.id == wallet.id
    assert wallet.get_balance(Category.VIDEO) == 0


@pytest.mark.asyncio
async def test_add_transaction_records_balances(db_session: AsyncSession) -> None:
    repo = WalletRepository(db_session)
    wallet, _ = await repo.get_or_create(USER_ID)

    credit = await repo.add_transaction(
        wallet, Category.TEXT, WalletTransactionType.PURCHASE, 30, "Пополнение"
    )
    charge = await repo.add_transaction(
        wallet,
        Category.TEXT,
        WalletTransactionType.CHARGE,
        12,
        "Генерация",
        request_id="req-1",
    )
    await db_session.commit()

    assert credit.id is not None
    assert (credit.balance_before, credit.balance_after) == (0, 30)
    assert (charge.balance_before, charge.balance_after) == (30, 18)
    assert wallet.get_balance(Category.TEXT) == 18


@pytest.mark.asyncio
async def test_add_transaction_refuses_negative_balance(
    db_session: AsyncSession,
) -> None:
    repo = WalletRepository(db_session)
    wallet, _ = await repo.get_or_create(USER_ID)

    with pytest.raises(ValueError, match="отрицательным"):
        await repo.add_transaction(
            wallet, Category.IMAGE, WalletTransactionType.CHARGE, 1, "Генерация"
        )

    assert wallet.get_balance(Category.IMAGE) == 0


@pytest.mark.asyncio
async def test_add_transaction_refuses_zero_amount(db_session: AsyncSession) -> None:
    repo = WalletRepository(db_session)
    wallet, _ = await repo.get_or_create(USER_ID)

    with pytest.raises(ValueError):
        await repo.add_transaction(
            wallet, Category.AUDIO, WalletTransactionType.BONUS, 0, "Бонус"
        )


@pytest.mark.asyncio
async def test_history_filters_and_orders(db_session: AsyncSession) -> None:
    repo = WalletRepository(db_session)
    wallet, _ = await repo.get_or_create(USER_ID)
    await repo.add_transaction(
        wallet, Category.TEXT, WalletTransactionType.BONUS, 5, "Бонус"
    )
    await repo.add_transaction(
        wallet, Category.IMAGE, WalletTransactionType.BONUS, 7, "Бонус"
    )
    await repo.add_transaction(
        wallet, Category.TEXT, WalletTransactionType.PURCHASE, 9, "Пополнение"
    )
    await db_session.commit()

    everything = await repo.get_history(USER_ID)
    text_only = await repo.get_history(USER_ID, Category.TEXT)
    chain = await repo.get_chain(USER_ID, Category.TEXT)

    assert [tx.amount for tx in everything] == [9, 7, 5]
    assert [tx.amount for tx in text_only] == [9, 5]
    assert [tx.amount for tx in chain] == [5, 9]
