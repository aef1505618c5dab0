"""API запросов генерации.

Эндпоинты:
- POST /api/generations — оплатить и запустить генерацию (202)
- GET /api/generations/{request_id} — статус из журнала
- DELETE /api/generations/{request_id} — отменить запрос

Результат генерации приходит через SSE: GET /api/stream/{request_id}.
"""

from typing import Any

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from src.api.auth import CurrentUserId
from src.api.deps import RouterDep, SessionFactoryDep
from src.core.exceptions import (
    InsufficientBalanceError,
    LedgerWriteError,
    ProviderNotAvailableError,
    UnknownModelError,
)
from src.db.repositories.generation_repo import GenerationRepository
from src.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/generations", tags=["generations"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerationCreateRequest(_CamelModel):
    """Тело запроса на генерацию."""

    model: str = Field(min_length=1, max_length=100, description="Slug модели")
    prompt: str = Field(min_length=1, max_length=10000)
    settings: dict[str, Any] | None = Field(
        default=None,
        description="Настройки категории (duration, resolution, voice, ...)",
    )


class GenerationCreateResponse(_CamelModel):
    request_id: str
    cost: int
    category: str


class GenerationStatusResponse(_CamelModel):
    request_id: str
    model: str
    category: str
    status: str
    cost: int
    attempted_providers: list[str]
    provider: str | None = None
    content: str | None = None
    file_url: str | None = None
    error: str | None = None
    refunded: bool = False


class GenerationCancelResponse(_CamelModel):
    request_id: str
    cancelled: bool


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=GenerationCreateResponse,
)
async def create_generation(
    body: GenerationCreateRequest,
    user_id: CurrentUserId,
    generation_router: RouterDep,
) -> GenerationCreateResponse:
    """Оплатить запрос и запустить генерацию в фоне.

    Ошибки:
        404 — неизвестная модель (кредиты не списаны)
        402 — недостаточно кредитов
        422 — неверные настройки
        503 — нет доступного провайдера или сбой леджера
    """
    try:
        request = await generation_router.submit(
            user_id, body.model, body.prompt, body.settings
        )
    except UnknownModelError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Неизвестная модель: {e.slug}",
        ) from e
    except InsufficientBalanceError as e:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": "Недостаточно кредитов",
                "category": e.category,
                "required": e.required,
                "available": e.available,
            },
        ) from e
    except ProviderNotAvailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=e.message,
        ) from e
    except LedgerWriteError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Сервис временно недоступен",
        ) from e
    except (ValidationError, ValueError) as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Неверные настройки генерации: {e}",
        ) from e

    return GenerationCreateResponse(
        request_id=request.request_id,
        cost=request.priced_cost,
        category=request.category.value,
    )


@router.get("/{request_id}", response_model=GenerationStatusResponse)
async def get_generation(
    request_id: str,
    user_id: CurrentUserId,
    session_factory: SessionFactoryDep,
) -> GenerationStatusResponse:
    """Статус запроса из журнала генераций."""
    async with session_factory() as session:
        generation = await GenerationRepository(session).get_by_request_id(request_id)

    if generation is None or generation.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Запрос не найден",
        )

    return GenerationStatusResponse(
        request_id=generation.request_id,
        model=generation.model_slug,
        category=generation.category,
        status=generation.status,
        cost=generation.priced_cost,
        attempted_providers=generation.attempted_list,
        provider=generation.provider_name,
        content=generation.result_content,
        file_url=generation.result_file_url,
        error=generation.error,
        refunded=generation.refund_transaction_id is not None,
    )


@router.delete("/{request_id}", response_model=GenerationCancelResponse)
async def cancel_generation(
    request_id: str,
    user_id: CurrentUserId,
    generation_router: RouterDep,
    session_factory: SessionFactoryDep,
) -> GenerationCancelResponse:
    """Отменить запрос.

    Уже идущий вызов провайдера не прерывается; если он закончится
    неудачей, кредиты вернутся.
    """
    active = generation_router.get_active(request_id)
    if active is not None:
        if active.user_id != user_id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Запрос не найден",
            )
        return GenerationCancelResponse(
            request_id=request_id,
            cancelled=generation_router.cancel(request_id),
        )

    async with session_factory() as session:
        generation = await GenerationRepository(session).get_by_request_id(request_id)
    if generation is None or generation.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Запрос не найден",
        )

    # Запрос уже завершён
    return GenerationCancelResponse(request_id=request_id, cancelled=False)
