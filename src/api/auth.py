"""Аутентификация клиентов API.

Поддерживаются два способа:
- JWT (HS256) — для веб-клиентов. Заголовок Authorization: Bearer <token>
  или параметр ?token= для SSE (EventSource не умеет в заголовки)
- Telegram initData — для Mini App. Заголовок X-Telegram-Init-Data
  или параметр ?initData= для SSE. Подпись проверяется токеном бота.

Оба способа дают один результат — ID пользователя (int).
"""

from datetime import UTC, datetime, timedelta
from typing import Annotated

import jwt
from aiogram.utils.web_app import safe_parse_webapp_init_data
from fastapi import Depends, Header, HTTPException, Query, Request, status

from src.config.settings import Settings
from src.core.exceptions import AuthenticationError
from src.utils.logging import get_logger

logger = get_logger(__name__)

# Время жизни токена по умолчанию
DEFAULT_TOKEN_EXPIRATION = timedelta(hours=24)

_UNAUTHORIZED_DETAIL = "Требуется аутентификация"


def create_access_token(
    user_id: int,
    *,
    secret: str,
    audience: str,
    expires_delta: timedelta | None = None,
) -> str:
    """Выпустить JWT для пользователя.

    Args:
        user_id: ID пользователя (кладётся в sub строкой).
        secret: Секрет подписи HMAC.
        audience: Значение claim aud.
        expires_delta: Время жизни. По умолчанию 24 часа.

    Returns:
        Подписанный JWT.
    """
    now = datetime.now(UTC)
    payload = {
        "sub": str(user_id),
        "aud": audience,
        "exp": now + (expires_delta or DEFAULT_TOKEN_EXPIRATION),
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_access_token(token: str, *, secret: str, audience: str) -> int:
    """Проверить JWT и вернуть ID пользователя.

    Raises:
        AuthenticationError: Подпись, срок или audience не прошли проверку.
    """
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"], audience=audience)
        return int(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as e:
        raise AuthenticationError(f"Неверный токен: {e}") from e


def validate_init_data(init_data: str, *, bot_token: str, max_age: int) -> int:
    """Проверить подпись Telegram initData и вернуть ID пользователя.

    Args:
        init_data: Строка initData из Telegram.WebApp.
        bot_token: Токен бота, которым подписаны данные.
        max_age: Максимальный возраст auth_date в секундах (0 — без ограничения).

    Raises:
        AuthenticationError: Подпись неверна, данные устарели или нет пользователя.
    """
    try:
        data = safe_parse_webapp_init_data(token=bot_token, init_data=init_data)
    except ValueError as e:
        raise AuthenticationError("Неверная подпись initData") from e

    auth_date = data.auth_date
    if auth_date.tzinfo is None:
        auth_date = auth_date.replace(tzinfo=UTC)
    if max_age and datetime.now(UTC) - auth_date > timedelta(seconds=max_age):
        raise AuthenticationError("initData устарела")

    if data.user is None:
        raise AuthenticationError("В initData нет пользователя")
    return data.user.id


def authenticate(
    settings: Settings,
    *,
    token: str | None = None,
    init_data: str | None = None,
) -> int:
    """Определить пользователя по JWT или initData.

    Raises:
        AuthenticationError: Нет учётных данных или они не прошли проверку.
    """
    if token:
        if settings.auth.jwt_secret is None:
            raise AuthenticationError("JWT-аутентификация не настроена")
        return decode_access_token(
            token,
            secret=settings.auth.jwt_secret.get_secret_value(),
            audience=settings.auth.jwt_audience,
        )

    if init_data:
        if settings.bot.token is None:
            raise AuthenticationError("Проверка initData не настроена")
        return validate_init_data(
            init_data,
            bot_token=settings.bot.token.get_secret_value(),
            max_age=settings.auth.init_data_max_age,
        )

    raise AuthenticationError("Учётные данные не переданы")


def _authenticate_or_401(
    request: Request, token: str | None, init_data: str | None
) -> int:
    settings: Settings = request.app.state.settings
    try:
        return authenticate(settings, token=token, init_data=init_data)
    except AuthenticationError as e:
        logger.info("Отказ в доступе: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=_UNAUTHORIZED_DETAIL,
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def get_current_user_id(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_telegram_init_data: Annotated[str | None, Header()] = None,
) -> int:
    """Зависимость FastAPI: пользователь из заголовков запроса."""
    token = None
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials:
            token = credentials.strip()
    return _authenticate_or_401(request, token, x_telegram_init_data)


async def get_stream_user_id(
    request: Request,
    token: Annotated[str | None, Query()] = None,
    init_data: Annotated[str | None, Query(alias="initData")] = None,
) -> int:
    """Зависимость FastAPI: пользователь из параметров URL (для SSE)."""
    return _authenticate_or_401(request, token, init_data)


CurrentUserId = Annotated[int, Depends(get_current_user_id)]
StreamUserId = Annotated[int, Depends(get_stream_user_id)]
