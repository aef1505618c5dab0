"""SSE-клиент событий генерации с переподключением.

Состояния: DISCONNECTED → CONNECTING → CONNECTED → (чтение событий) →
DISCONNECTED при ошибке → CONNECTING после паузы.

Пауза перед переподключением удваивается после каждой ошибки
(1с, 2с, 4с, ... не больше 16с) и сбрасывается при каждом успешном
подключении.

Ответ 4xx (кроме 429) завершает подписку: токен или запрос
недействительны, переподключения не будет.

Отмена (cancel) синхронная: снимает таймер переподключения, отменяет
задачу чтения и закрывает соединение. После неё обработчик событий
больше не вызывается.
"""

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import StrEnum

import httpx

from src.services.event_stream import StreamEvent
from src.utils.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[StreamEvent], None]
StateHandler = Callable[["ConnectionState"], None]

# Тайм-аут чтения больше интервала heartbeat сервера (15с по умолчанию)
DEFAULT_TIMEOUT = httpx.Timeout(connect=10.0, read=45.0, write=10.0, pool=10.0)


class ConnectionState(StrEnum):
    """Состояние соединения клиента."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ReconnectBackoff:
    """Экспоненциальная пауза перед переподключением (в миллисекундах)."""

    def __init__(
        self,
        initial_ms: int = 1000,
        max_ms: int = 16000,
        factor: int = 2,
    ) -> None:
        self.initial_ms = initial_ms
        self.max_ms = max_ms
        self.factor = factor
        self._current_ms = initial_ms

    def next_delay(self) -> int:
        """Вернуть паузу для очередной ошибки и увеличить следующую."""
        delay = self._current_ms
        self._current_ms = min(self._current_ms * self.factor, self.max_ms)
        return delay

    def reset(self) -> None:
        self._current_ms = self.initial_ms


class ReconnectScheduler:
    """Один отложенный вызов переподключения.

    Новый schedule() заменяет предыдущий таймер, clear() снимает его.
    """

    def __init__(self) -> None:
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, delay_ms: int, callback: Callable[[], None]) -> None:
        self.clear()
        loop = asyncio.get_running_loop()

        def _fire() -> None:
            self._handle = None
            callback()

        self._handle = loop.call_later(delay_ms / 1000, _fire)

    def clear(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


@dataclass(frozen=True)
class SSEMessage:
    """Одно сообщение text/event-stream."""

    event: str
    data: str


async def iter_sse_messages(lines: AsyncIterator[str]) -> AsyncIterator[SSEMessage]:
    """Собрать строки text/event-stream в сообщения.

    Комментарии (": heartbeat") пропускаются, пустая строка завершает
    сообщение, несколько строк data: склеиваются через перевод строки.
    """
    event = "message"
    data_lines: list[str] = []

    async for line in lines:
        if not line:
            if data_lines:
                yield SSEMessage(event=event, data="\n".join(data_lines))
            event = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue

        field_name, _, value = line.partition(":")
        value = value.removeprefix(" ")
        if field_name == "event":
            event = value
        elif field_name == "data":
            data_lines.append(value)


class StreamClient:
    """Подписка на события одного запроса генерации.

    Example:
        >>> client = StreamClient(url, on_event=print, params={"token": jwt})
        >>> client.start()
        >>> ...
        >>> client.cancel()
    """

    def __init__(
        self,
        url: str,
        on_event: EventHandler,
        *,
        params: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        backoff: ReconnectBackoff | None = None,
        scheduler: ReconnectScheduler | None = None,
        on_state_change: StateHandler | None = None,
    ) -> None:
        """Создать клиента.

        Args:
            url: URL эндпоинта /api/stream/{request_id}.
            on_event: Обработчик событий (вызывается в порядке получения).
            params: Параметры авторизации (token или initData).
            http_client: Готовый httpx-клиент. По умолчанию создаётся свой.
            backoff: Политика пауз переподключения.
            scheduler: Слот таймера переподключения.
            on_state_change: Обработчик смены состояния.
        """
        self.url = url
        self.params = params or {}
        self.backoff = backoff or ReconnectBackoff()
        self.scheduler = scheduler or ReconnectScheduler()

        self._on_event = on_event
        self._on_state_change = on_state_change
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)

        self._state = ConnectionState.DISCONNECTED
        self._reader: asyncio.Task[None] | None = None
        self._cancelled = False
        self._finished = False
        self._rejected_status: int | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def finished(self) -> bool:
        """Получено терминальное событие, переподключений больше не будет."""
        return self._finished

    @property
    def rejected_status(self) -> int | None:
        """HTTP-статус, с которым сервер отклонил подписку (4xx)."""
        return self._rejected_status

    def start(self) -> None:
        """Начать подключение (нужен запущенный event loop)."""
        if self._cancelled:
            raise RuntimeError("StreamClient отменён, создайте новый")
        if self._reader is not None and not self._reader.done():
            return
        self._connect()

    def cancel(self) -> None:
        """Остановить клиента: таймер, чтение и соединение."""
        self._cancelled = True
        self.scheduler.clear()
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
        self._reader = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def aclose(self) -> None:
        """Отменить подписку и закрыть собственный httpx-клиент."""
        reader = self._reader
        self.cancel()
        if reader is not None:
            await asyncio.gather(reader, return_exceptions=True)
        if self._owns_client:
            await self._http_client.aclose()

    # ==========================================================================
    # Внутреннее
    # ==========================================================================

    def _connect(self) -> None:
        if self._cancelled:
            return
        self._set_state(ConnectionState.CONNECTING)
        self._reader = asyncio.get_running_loop().create_task(self._read())
        self._reader.add_done_callback(self._on_reader_done)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        if self._on_state_change is not None and not self._cancelled:
            self._on_state_change(state)

    async def _read(self) -> None:
        try:
            async with self._http_client.stream(
                "GET",
                self.url,
                params=self.params,
                headers={"Accept": "text/event-stream"},
            ) as response:
                response.raise_for_status()
                self._set_state(ConnectionState.CONNECTED)
                self.backoff.reset()

                async for message in iter_sse_messages(response.aiter_lines()):
                    if self._cancelled:
                        return
                    if message.event != "message":
                        continue
                    event = StreamEvent.from_dict(json.loads(message.data))
                    self._on_event(event)
                    if event.is_terminal:
                        self._finished = True
                        self._set_state(ConnectionState.DISCONNECTED)
                        return
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            # 4xx, кроме 429, завершает подписку без переподключения
            if e.response.is_client_error and status != 429:
                self._rejected_status = status
                logger.warning("SSE-подписка %s отклонена: HTTP %d", self.url, status)
                self._set_state(ConnectionState.DISCONNECTED)
                return
            logger.warning("Ошибка SSE-соединения %s: %s", self.url, e)
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning("Ошибка SSE-соединения %s: %s", self.url, e)
        else:
            logger.warning("SSE-соединение %s закрыто до завершения запроса", self.url)

        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._cancelled:
            return
        self._set_state(ConnectionState.DISCONNECTED)
        delay_ms = self.backoff.next_delay()
        logger.info("Переподключение к %s через %d мс", self.url, delay_ms)
        self.scheduler.schedule(delay_ms, self._connect)

    def _on_reader_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Обработчик событий SSE упал: %s",
                error,
                exc_info=(type(error), error, error.__traceback__),
            )
