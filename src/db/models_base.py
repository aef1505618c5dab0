"""Декларативная база моделей SQLAlchemy.

Модуль без побочных эффектов: импорт не читает settings, поэтому
тесты создают таблицы на своём engine.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Базовый класс моделей (UserWallet, WalletTransaction, Generation)."""
