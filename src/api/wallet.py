"""API кошелька.

- GET /api/wallet — балансы по категориям
- GET /api/wallet/transactions — история транзакций
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.api.auth import CurrentUserId
from src.api.deps import LedgerDep
from src.providers.ai.base import Category

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WalletResponse(_CamelModel):
    user_id: int
    balances: dict[str, int]


class TransactionResponse(_CamelModel):
    id: int
    category: str
    type: str
    amount: int
    balance_before: int
    balance_after: int
    request_id: str | None
    description: str
    created_at: datetime


@router.get("", response_model=WalletResponse)
async def get_wallet(user_id: CurrentUserId, ledger: LedgerDep) -> WalletResponse:
    """Балансы пользователя.

    При первом обращении создаётся кошелёк и начисляется приветственный бонус.
    """
    await ledger.grant_signup_bonus(user_id)
    balances = await ledger.get_all_balances(user_id)
    return WalletResponse(user_id=user_id, balances=balances.to_dict())


@router.get("/transactions", response_model=list[TransactionResponse])
async def get_transactions(
    user_id: CurrentUserId,
    ledger: LedgerDep,
    category: Annotated[str | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[TransactionResponse]:
    """История транзакций, новые первыми."""
    parsed_category: Category | None = None
    if category is not None:
        try:
            parsed_category = Category(category)
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Неизвестная категория: {category}",
            ) from e

    transactions = await ledger.get_transaction_history(
        user_id, parsed_category, limit=limit, offset=offset
    )
    return [
        TransactionResponse(
            id=tx.id,
            category=tx.category,
            type=tx.type,
            amount=tx.amount,
            balance_before=tx.balance_before,
            balance_after=tx.balance_after,
            request_id=tx.request_id,
            description=tx.description,
            created_at=tx.created_at,
        )
        for tx in transactions
    ]
