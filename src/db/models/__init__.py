"""Модели базы данных (таблицы).

Каждая модель — это класс Python, который соответствует таблице в БД.
Все модели наследуются от Base (из db.models_base).
"""

from src.db.models.generation import Generation, GenerationDBStatus
from src.db.models.wallet import (
    BALANCE_COLUMNS,
    UserWallet,
    WalletTransaction,
    WalletTransactionType,
)

__all__ = [
    "BALANCE_COLUMNS",
    "Generation",
    "GenerationDBStatus",
    "UserWallet",
    "WalletTransaction",
    "WalletTransactionType",
]
