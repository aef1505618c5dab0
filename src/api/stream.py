"""SSE-поток событий запроса генерации.

GET /api/stream/{request_id}?token=<jwt> или ?initData=<telegram initData>

Формат (text/event-stream):
- event: connected — сразу после подключения
- data: {"requestId": ..., "content": ..., "status": ...} — снимок состояния
- data: {"requestId": ..., "contentDelta": ...} — живые события
- ": heartbeat" — комментарий каждые stream.heartbeat_seconds

Поток закрывается после терминального статуса (completed/failed)
или при отмене запроса. Пропущенные события при переподключении
не досылаются: клиент получает снимок с накопленным текстом.
"""

import asyncio
import json
from collections.abc import AsyncIterator

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from src.api.auth import StreamUserId
from src.api.deps import GatewayDep, RouterDep, SessionFactoryDep
from src.db.models.generation import GenerationDBStatus
from src.db.repositories.generation_repo import GenerationRepository
from src.services.event_stream import EventStreamGateway, StreamEvent
from src.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/stream", tags=["stream"])


def format_sse(data: dict[str, object], event: str | None = None) -> str:
    """Сериализовать событие в формат SSE."""
    payload = json.dumps(data, ensure_ascii=False)
    if event:
        return f"event: {event}\ndata: {payload}\n\n"
    return f"data: {payload}\n\n"


async def event_generator(
    gateway: EventStreamGateway,
    request_id: str,
    heartbeat_interval: float,
) -> AsyncIterator[str]:
    """Генератор SSE-сообщений для одного запроса.

    Raises:
        ValueError: heartbeat_interval не положительный.
    """
    if heartbeat_interval <= 0:
        raise ValueError("heartbeat_interval должен быть положительным")

    yield format_sse({"requestId": request_id}, event="connected")

    async with gateway.subscribe(request_id) as events:
        iterator = aiter(events)
        next_event: asyncio.Task[StreamEvent] | None = None
        try:
            while True:
                if next_event is None:
                    next_event = asyncio.ensure_future(anext(iterator))

                done, _ = await asyncio.wait({next_event}, timeout=heartbeat_interval)
                if not done:
                    yield ": heartbeat\n\n"
                    continue

                try:
                    event = next_event.result()
                except StopAsyncIteration:
                    return
                finally:
                    next_event = None

                yield format_sse(event.to_dict())
        finally:
            if next_event is not None:
                next_event.cancel()


async def _single_event(request_id: str, event: StreamEvent) -> AsyncIterator[str]:
    yield format_sse({"requestId": request_id}, event="connected")
    yield format_sse(event.to_dict())


@router.get("/{request_id}")
async def stream_generation(
    request_id: str,
    request: Request,
    user_id: StreamUserId,
    gateway: GatewayDep,
    generation_router: RouterDep,
    session_factory: SessionFactoryDep,
) -> StreamingResponse:
    """Подписаться на события запроса.

    Подписаться можно только на свой запрос.
    """
    owner_id: int | None = None
    generation = None
    active = generation_router.get_active(request_id)
    if active is not None:
        owner_id = active.user_id
    else:
        async with session_factory() as session:
            generation = await GenerationRepository(session).get_by_request_id(
                request_id
            )
        if generation is not None:
            owner_id = generation.user_id

    if owner_id is None or owner_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Запрос не найден",
        )

    logger.debug("SSE подключение: request_id=%s, user_id=%d", request_id, user_id)

    if generation is not None and not gateway.has_channel(request_id):
        # Канал уже удалён: отдаём итог из журнала и закрываем поток
        final = StreamEvent(
            request_id=request_id,
            content=generation.result_content or "",
            file_url=generation.result_file_url,
            status=GenerationDBStatus(generation.status),
            error=generation.error,
        )
        body: AsyncIterator[str] = _single_event(request_id, final)
    else:
        body = event_generator(
            gateway,
            request_id,
            request.app.state.settings.stream.heartbeat_seconds,
        )

    return StreamingResponse(
        body,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
