"""Тесты сервиса леджера (LedgerService).

Проверяют корректность работы с деньгами пользователя:
- charge: списание, отказ без частичного списания
- refund: возврат, повторы при сбое БД, эскалация в CRITICAL
- credit и приветственный бонус (ровно один раз)
- Целостность цепочки транзакций (balance_before/balance_after)
- Сериализацию параллельных операций над одной категорией
"""

import asyncio
import logging
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import InsufficientBalanceError, LedgerWriteError
from src.db.models.wallet import WalletTransactionType
from src.db.repositories.wallet_repo import WalletRepository
from src.providers.ai.base import Category
from src.services.ledger_service import LedgerService

USER_ID = 42


async def _fund(ledger: LedgerService, category: Category, amount: int) -> None:
    await ledger.credit(
        USER_ID,
        category,
        amount,
        "Пополнение",
        transaction_type=WalletTransactionType.PURCHASE,
    )


# ==============================================================================
# КОШЕЛЁК
# ==============================================================================


@pytest.mark.asyncio
async def test_new_user_has_zero_balances(ledger: LedgerService) -> None:
    assert await ledger.get_balance(USER_ID, Category.TEXT) == 0

    balances = await ledger.get_all_balances(USER_ID)

    assert balances.to_dict() == {"text": 0, "image": 0, "video": 0, "audio": 0}


@pytest.mark.asyncio
async def test_get_or_create_wallet_is_idempotent(ledger: LedgerService) -> None:
    first = await ledger.get_or_create_wallet(USER_ID)
    second = await ledger.get_or_create_wallet(USER_ID)

    assert first.id == second.id


# ==============================================================================
# CHARGE
# ==============================================================================


@pytest.mark.asyncio
async def test_charge_decreases_balance(ledger: LedgerService) -> None:
    await _fund(ledger, Category.IMAGE, 100)

    tx_id = await ledger.charge(USER_ID, Category.IMAGE, 30, request_id="req-1")

    assert tx_id > 0
    assert await ledger.get_balance(USER_ID, Category.IMAGE) == 70


@pytest.mark.asyncio
async def test_charge_touches_only_its_category(ledger: LedgerService) -> None:
    await _fund(ledger, Category.IMAGE, 100)
    await _fund(ledger, Category.TEXT, 10)

    await ledger.charge(USER_ID, Category.IMAGE, 30)

    balances = await ledger.get_all_balances(USER_ID)
    assert balances.image == 70
    assert balances.text == 10


@pytest.mark.asyncio
async def test_charge_exact_balance_reaches_zero(ledger: LedgerService) -> None:
    await _fund(ledger, Category.VIDEO, 50)

    await ledger.charge(USER_ID, Category.VIDEO, 50)

    assert await ledger.get_balance(USER_ID, Category.VIDEO) == 0


@pytest.mark.asyncio
async def test_insufficient_balance_changes_nothing(ledger: LedgerService) -> None:
    """Недостаточно кредитов: ни списания, ни транзакции."""
    await _fund(ledger, Category.IMAGE, 5)

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await ledger.charge(USER_ID, Category.IMAGE, 10)

    assert exc_info.value.required == 10
    assert exc_info.value.available == 5
    assert exc_info.value.category == "image"
    assert await ledger.get_balance(USER_ID, Category.IMAGE) == 5

    history = await ledger.get_transaction_history(USER_ID, Category.IMAGE)
    assert [tx.type for tx in history] == [WalletTransactionType.PURCHASE]


@pytest.mark.asyncio
async def test_charge_rejects_non_positive_amount(ledger: LedgerService) -> None:
    with pytest.raises(ValueError):
        await ledger.charge(USER_ID, Category.TEXT, 0)


# ==============================================================================
# REFUND
# ==============================================================================


@pytest.mark.asyncio
async def test_refund_restores_balance(ledger: LedgerService) -> None:
    await _fund(ledger, Category.IMAGE, 20)
    await ledger.charge(USER_ID, Category.IMAGE, 20, request_id="req-1")

    await ledger.refund(
        USER_ID, Category.IMAGE, 20, "провайдеры недоступны", request_id="req-1"
    )

    assert await ledger.get_balance(USER_ID, Category.IMAGE) == 20


@pytest.mark.asyncio
async def test_charge_and_refund_linked_by_request_id(
    ledger: LedgerService, db_session: AsyncSession
) -> None:
    await _fund(ledger, Category.AUDIO, 8)
    await ledger.charge(USER_ID, Category.AUDIO, 8, request_id="req-7")
    await ledger.refund(USER_ID, Category.AUDIO, 8, "сбой", request_id="req-7")

    linked = await WalletRepository(db_session).get_by_request("req-7")

    assert [(tx.type, tx.amount) for tx in linked] == [
        (WalletTransactionType.CHARGE, 8),
        (WalletTransactionType.REFUND, 8),
    ]


@pytest.mark.asyncio
async def test_refund_retries_transient_failures(ledger: LedgerService) -> None:
    """Сбой БД на первой попытке — возврат проходит со второй."""
    await _fund(ledger, Category.TEXT, 5)
    await ledger.charge(USER_ID, Category.TEXT, 5)

    original_apply = ledger._apply
    calls = 0

    async def flaky_apply(*args, **kwargs):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise LedgerWriteError(
                "refund",
                OperationalError("UPDATE", {}, Exception("database is locked")),
                user_id=USER_ID,
                category="text",
            )
        return await original_apply(*args, **kwargs)

    with patch.object(ledger, "_apply", side_effect=flaky_apply):
        await ledger.refund(USER_ID, Category.TEXT, 5, "сбой")

    assert calls == 2
    assert await ledger.get_balance(USER_ID, Category.TEXT) == 5


@pytest.mark.asyncio
async def test_refund_escalates_after_all_attempts(
    ledger: LedgerService, caplog: pytest.LogCaptureFixture
) -> None:
    """Все попытки провалились: CRITICAL в логе и LedgerWriteError."""
    error = LedgerWriteError(
        "refund",
        OperationalError("UPDATE", {}, Exception("disk I/O error")),
        user_id=USER_ID,
        category="video",
    )

    with (
        patch.object(ledger, "_apply", side_effect=error) as mock_apply,
        caplog.at_level(logging.WARNING),
        pytest.raises(LedgerWriteError) as exc_info,
    ):
        await ledger.refund(USER_ID, Category.VIDEO, 100, "сбой", request_id="req-9")

    assert mock_apply.call_count == 3
    assert exc_info.value.attempts == 3
    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert len(critical) == 1
    assert "req-9" in critical[0].getMessage()


@pytest.mark.asyncio
async def test_refund_is_recorded_once_per_request(ledger: LedgerService) -> None:
    await _fund(ledger, Category.VIDEO, 100)
    await ledger.charge(USER_ID, Category.VIDEO, 40, request_id="req-1")

    first = await ledger.refund(USER_ID, Category.VIDEO, 40, "сбой", request_id="req-1")
    second = await ledger.refund(
        USER_ID, Category.VIDEO, 40, "повтор", request_id="req-1"
    )

    assert second == first
    assert await ledger.get_balance(USER_ID, Category.VIDEO) == 100
    request_txs = await ledger.get_request_transactions("req-1")
    assert [tx.type for tx in request_txs] == [
        WalletTransactionType.CHARGE,
        WalletTransactionType.REFUND,
    ]


@pytest.mark.asyncio
async def test_refund_rejects_non_positive_amount(ledger: LedgerService) -> None:
    with pytest.raises(ValueError):
        await ledger.refund(USER_ID, Category.TEXT, -5, "ошибка")


# ==============================================================================
# CREDIT И БОНУС
# ==============================================================================


@pytest.mark.asyncio
async def test_credit_rejects_charge_type(ledger: LedgerService) -> None:
    with pytest.raises(ValueError):
        await ledger.credit(
            USER_ID,
            Category.TEXT,
            10,
            "не так",
            transaction_type=WalletTransactionType.CHARGE,
        )


@pytest.mark.asyncio
async def test_signup_bonus_granted_once(ledger: LedgerService) -> None:
    assert await ledger.grant_signup_bonus(USER_ID) is True
    assert await ledger.grant_signup_bonus(USER_ID) is False

    balances = await ledger.get_all_balances(USER_ID)
    assert balances.to_dict() == {"text": 50, "image": 10, "video": 0, "audio": 5}

    history = await ledger.get_transaction_history(USER_ID)
    assert all(tx.type == WalletTransactionType.BONUS for tx in history)
    # video: 0, транзакция не создаётся
    assert len(history) == 3


@pytest.mark.asyncio
async def test_signup_bonus_failure_grants_nothing(ledger: LedgerService) -> None:
    """Сбой на второй категории: ни одного бонуса и флаг не поставлен."""
    original_add = WalletRepository.add_transaction
    calls = 0

    async def flaky_add(self, *args, **kwargs):
        nonlocal calls
        calls += 1
        if calls == 2:
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return await original_add(self, *args, **kwargs)

    with (
        patch.object(WalletRepository, "add_transaction", flaky_add),
        pytest.raises(LedgerWriteError),
    ):
        await ledger.grant_signup_bonus(USER_ID)

    balances = await ledger.get_all_balances(USER_ID)
    assert balances.to_dict() == {"text": 0, "image": 0, "video": 0, "audio": 0}
    assert await ledger.get_transaction_history(USER_ID) == []

    assert await ledger.grant_signup_bonus(USER_ID) is True
    balances = await ledger.get_all_balances(USER_ID)
    assert balances.to_dict() == {"text": 50, "image": 10, "video": 0, "audio": 5}


# ==============================================================================
# ЦЕЛОСТНОСТЬ
# ==============================================================================


@pytest.mark.asyncio
async def test_chain_is_consistent(ledger: LedgerService) -> None:
    await _fund(ledger, Category.IMAGE, 100)
    await ledger.charge(USER_ID, Category.IMAGE, 15)
    await ledger.refund(USER_ID, Category.IMAGE, 15, "сбой")
    await ledger.charge(USER_ID, Category.IMAGE, 40)

    history = await ledger.get_transaction_history(USER_ID, Category.IMAGE)
    chain = list(reversed(history))

    assert [(tx.balance_before, tx.balance_after) for tx in chain] == [
        (0, 100),
        (100, 85),
        (85, 100),
        (100, 60),
    ]
    assert await ledger.verify_chain(USER_ID, Category.IMAGE) is True


@pytest.mark.asyncio
async def test_verify_chain_detects_tampering(
    ledger: LedgerService, db_session: AsyncSession
) -> None:
    await _fund(ledger, Category.TEXT, 10)

    wallet = await WalletRepository(db_session).get(USER_ID)
    assert wallet is not None
    wallet.text_balance = 999
    await db_session.commit()

    assert await ledger.verify_chain(USER_ID, Category.TEXT) is False


@pytest.mark.asyncio
async def test_history_pagination(ledger: LedgerService) -> None:
    for amount in (1, 2, 3, 4):
        await _fund(ledger, Category.TEXT, amount)

    page = await ledger.get_transaction_history(
        USER_ID, Category.TEXT, limit=2, offset=1
    )

    assert [tx.amount for tx in page] == [3, 2]


# ==============================================================================
# ПАРАЛЛЕЛЬНЫЕ ОПЕРАЦИИ
# ==============================================================================


@pytest.mark.asyncio
async def test_concurrent_charges_never_overdraw(ledger: LedgerService) -> None:
    """10 параллельных списаний по 10 при балансе 50: проходят ровно 5."""
    await _fund(ledger, Category.VIDEO, 50)

    results = await asyncio.gather(
        *(ledger.charge(USER_ID, Category.VIDEO, 10) for _ in range(10)),
        return_exceptions=True,
    )

    succeeded = [r for r in results if isinstance(r, int)]
    rejected = [r for r in results if isinstance(r, InsufficientBalanceError)]
    assert len(succeeded) == 5
    assert len(rejected) == 5
    assert await ledger.get_balance(USER_ID, Category.VIDEO) == 0
    assert await ledger.verify_chain(USER_ID, Category.VIDEO) is True
