"""API эндпоинты.

Этот модуль содержит FastAPI роутеры для:
- Health check (/health)
- Запросов генерации (/api/generations)
- Кошелька (/api/wallet)
- SSE-потока событий (/api/stream)
"""

from src.api.generations import router as generations_router
from src.api.health import router as health_router
from src.api.stream import router as stream_router
from src.api.wallet import router as wallet_router

__all__ = ["generations_router", "health_router", "stream_router", "wallet_router"]
