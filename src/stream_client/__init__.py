"""Клиент SSE-потока событий генерации."""

from src.stream_client.client import (
    ConnectionState,
    ReconnectBackoff,
    ReconnectScheduler,
    SSEMessage,
    StreamClient,
    iter_sse_messages,
)

__all__ = [
    "ConnectionState",
    "ReconnectBackoff",
    "ReconnectScheduler",
    "SSEMessage",
    "StreamClient",
    "iter_sse_messages",
]
