"""Шлюз событий генерации (pub/sub в памяти процесса).

Каждый запрос генерации — отдельный канал. Роутер публикует в канал
фрагменты текста, URL файла и смену статуса; клиенты подписываются
через SSE-эндпоинт.

Гарантии:
- События одного запроса доставляются в порядке публикации
- Новый подписчик сначала получает снимок текущего состояния
  (накопленный текст, URL файла, статус), затем живые события
- Больше ничего не буферизуется: пропущенные фрагменты
  переподключившийся клиент получает только в составе снимка
- Канал завершённого запроса удаляется через retention_seconds
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from src.db.models.generation import GenerationDBStatus
from src.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StreamEvent:
    """Событие канала запроса.

    Attributes:
        request_id: ID запроса генерации.
        content_delta: Очередной фрагмент текста.
        file_url: URL сгенерированного файла.
        status: Новый статус запроса.
        error: Причина неудачи (для FAILED).
        content: Весь накопленный текст (только в снимке состояния).
    """

    request_id: str
    content_delta: str | None = None
    file_url: str | None = None
    status: GenerationDBStatus | None = None
    error: str | None = None
    content: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Событие завершает канал."""
        return self.status is not None and self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """JSON-представление в camelCase без пустых полей."""
        data: dict[str, Any] = {"requestId": self.request_id}
        if self.content_delta is not None:
            data["contentDelta"] = self.content_delta
        if self.content is not None:
            data["content"] = self.content
        if self.file_url is not None:
            data["fileUrl"] = self.file_url
        if self.status is not None:
            data["status"] = self.status.value
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StreamEvent":
        """Разобрать JSON-представление из to_dict()."""
        status = data.get("status")
        return cls(
            request_id=data["requestId"],
            content_delta=data.get("contentDelta"),
            file_url=data.get("fileUrl"),
            status=GenerationDBStatus(status) if status is not None else None,
            error=data.get("error"),
            content=data.get("content"),
        )


@dataclass(eq=False)
class _Subscription:
    queue: asyncio.Queue[StreamEvent | None]
    closed: bool = False


@dataclass(eq=False)
class _Channel:
    """Состояние канала: подписчики и последнее известное состояние."""

    request_id: str
    subscribers: set[_Subscription] = field(default_factory=set)
    content_parts: list[str] = field(default_factory=list)
    file_url: str | None = None
    status: GenerationDBStatus | None = None
    error: str | None = None
    expire_handle: asyncio.TimerHandle | None = None

    def apply(self, event: StreamEvent) -> None:
        if event.content_delta:
            self.content_parts.append(event.content_delta)
        if event.file_url is not None:
            self.file_url = event.file_url
        if event.status is not None:
            self.status = event.status
        if event.error is not None:
            self.error = event.error

    def snapshot(self) -> StreamEvent:
        return StreamEvent(
            request_id=self.request_id,
            content="".join(self.content_parts),
            file_url=self.file_url,
            status=self.status,
            error=self.error,
        )


class EventStreamGateway:
    """Шлюз событий.

    publish() синхронный: вызывается из задач роутера внутри event loop,
    кладёт событие в очередь каждого подписчика без ожидания.
    """

    def __init__(
        self,
        retention_seconds: float = 60.0,
        subscriber_queue_size: int = 1000,
    ) -> None:
        self._retention_seconds = retention_seconds
        self._queue_size = subscriber_queue_size
        self._channels: dict[str, _Channel] = {}

    def _get_channel(self, request_id: str) -> _Channel:
        channel = self._channels.get(request_id)
        if channel is None:
            channel = _Channel(request_id=request_id)
            self._channels[request_id] = channel
        return channel

    def has_channel(self, request_id: str) -> bool:
        """Канал запроса существует."""
        return request_id in self._channels

    def subscriber_count(self, request_id: str) -> int:
        """Количество подписчиков канала."""
        channel = self._channels.get(request_id)
        return len(channel.subscribers) if channel else 0

    def snapshot(self, request_id: str) -> StreamEvent | None:
        """Текущее состояние канала или None."""
        channel = self._channels.get(request_id)
        return channel.snapshot() if channel else None

    def publish(self, event: StreamEvent) -> None:
        """Опубликовать событие всем текущим подписчикам канала.

        Терминальное событие запускает таймер удаления канала.
        """
        channel = self._get_channel(event.request_id)
        if channel.status is not None and channel.status.is_terminal:
            logger.warning(
                "Событие после завершения запроса отброшено: request_id=%s",
                event.request_id,
            )
            return

        channel.apply(event)

        for subscription in list(channel.subscribers):
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                # Медленный клиент: отключаем, он переподключится и получит снимок
                logger.warning(
                    "Очередь подписчика переполнена, подписчик отключён: request_id=%s",
                    event.request_id,
                )
                subscription.closed = True
                channel.subscribers.discard(subscription)

        if event.is_terminal:
            loop = asyncio.get_running_loop()
            channel.expire_handle = loop.call_later(
                self._retention_seconds, self.close, event.request_id
            )

    @asynccontextmanager
    async def subscribe(
        self, request_id: str
    ) -> AsyncIterator[AsyncIterator[StreamEvent]]:
        """Подписаться на канал запроса.

        Пример:
            async with gateway.subscribe(request_id) as events:
                async for event in events:
                    ...

        Yields:
            Асинхронный итератор: снимок состояния, затем живые события
            до терминального статуса или закрытия канала.
        """
        channel = self._get_channel(request_id)
        subscription = _Subscription(queue=asyncio.Queue(maxsize=self._queue_size))
        subscription.queue.put_nowait(channel.snapshot())
        channel.subscribers.add(subscription)

        try:
            yield self._iterate(subscription)
        finally:
            channel.subscribers.discard(subscription)
            # Канал, в который так и не публиковали, не держим
            if (
                not channel.subscribers
                and channel.status is None
                and self._channels.get(request_id) is channel
            ):
                del self._channels[request_id]

    async def _iterate(self, subscription: _Subscription) -> AsyncIterator[StreamEvent]:
        while True:
            if subscription.closed and subscription.queue.empty():
                return
            event = await subscription.queue.get()
            if event is None:
                return
            yield event
            if event.is_terminal:
                return

    def close(self, request_id: str) -> None:
        """Закрыть канал: все подписчики завершают итерацию без новых событий."""
        channel = self._channels.pop(request_id, None)
        if channel is None:
            return

        if channel.expire_handle is not None:
            channel.expire_handle.cancel()

        for subscription in channel.subscribers:
            subscription.closed = True
            # Полная очередь: итератор дочитает её и увидит флаг closed
            if not subscription.queue.full():
                subscription.queue.put_nowait(None)
        channel.subscribers.clear()
        logger.debug("Канал закрыт: request_id=%s", request_id)

    def close_all(self) -> None:
        """Закрыть все каналы (при остановке приложения)."""
        for request_id in list(self._channels):
            self.close(request_id)


def create_event_stream_gateway() -> EventStreamGateway:
    """Создать шлюз из глобальных настроек."""
    from src.config.settings import settings

    return EventStreamGateway(
        retention_seconds=settings.stream.retention_seconds,
        subscriber_queue_size=settings.stream.subscriber_queue_size,
    )
