"""Вспомогательные функции для тестов HTTP API: токены, initData, ожидание."""

import asyncio
import hashlib
import hmac
import json
import time
from urllib.parse import urlencode

from fastapi import FastAPI

from src.api.auth import create_access_token
from src.services.generation_router import GenerationRouter

JWT_SECRET = "test-jwt-secret-with-enough-length"
BOT_TOKEN = "123456:TEST-bot-token"
USER_ID = 501
OTHER_USER_ID = 502


def make_token(user_id: int = USER_ID) -> str:
    return create_access_token(user_id, secret=JWT_SECRET, audience="genledger")


def auth_headers(user_id: int = USER_ID) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def make_init_data(
    user_id: int = USER_ID,
    *,
    bot_token: str = BOT_TOKEN,
    auth_date: int | None = None,
) -> str:
    """Подписать initData так же, как это делает Telegram."""
    fields = {
        "auth_date": str(auth_date if auth_date is not None else int(time.time())),
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "user": json.dumps({"id": user_id, "first_name": "Test"}),
    }
    data_check_string = "\n".join(f"{k}={v}" for k, v in sorted(fields.items()))
    secret_key = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    fields["hash"] = hmac.new(
        secret_key, data_check_string.encode(), hashlib.sha256
    ).hexdigest()
    return urlencode(fields)


async def wait_until_idle(app: FastAPI, request_id: str) -> None:
    """Дождаться, пока фоновая генерация запроса завершится."""
    generation_router: GenerationRouter = app.state.generation_router
    async with asyncio.timeout(5):
        while generation_router.get_active(request_id) is not None:
            await asyncio.sleep(0.01)
