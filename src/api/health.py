"""Health check эндпоинт.

- GET /health — liveness-проверка: процесс жив, БД отвечает
"""

from typing import Any

from fastapi import APIRouter, Request, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request, response: Response) -> dict[str, Any]:
    """Проверка состояния сервиса.

    Returns:
        status "ok" и список настроенных провайдеров, либо
        status "degraded" с кодом 503, если БД недоступна.
    """
    state = request.app.state
    database_ok = True
    try:
        async with state.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("Health check: БД недоступна: %s", e)
        database_ok = False

    if not database_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return {
        "status": "ok" if database_ok else "degraded",
        "database": database_ok,
        "providers": state.provider_manager.available_providers(),
    }
