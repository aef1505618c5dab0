"""Репозитории для работы с данными.

Репозиторий — это паттерн, который инкапсулирует логику доступа к данным.
Вместо прямых SQL-запросов в сервисах используем методы репозитория.
"""

from src.db.repositories.generation_repo import GenerationRepository
from src.db.repositories.wallet_repo import WalletRepository

__all__ = [
    "GenerationRepository",
    "WalletRepository",
]
