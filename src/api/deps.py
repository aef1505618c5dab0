"""Зависимости FastAPI для доступа к сервисам.

Сервисы создаются один раз в ApplicationLifecycle и лежат в app.state.
"""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.services.event_stream import EventStreamGateway
from src.services.generation_router import GenerationRouter
from src.services.ledger_service import LedgerService


def get_generation_router(request: Request) -> GenerationRouter:
    return request.app.state.generation_router


def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_gateway(request: Request) -> EventStreamGateway:
    return request.app.state.gateway


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


RouterDep = Annotated[GenerationRouter, Depends(get_generation_router)]
LedgerDep = Annotated[LedgerService, Depends(get_ledger)]
GatewayDep = Annotated[EventStreamGateway, Depends(get_gateway)]
SessionFactoryDep = Annotated[
    async_sessionmaker[AsyncSession], Depends(get_session_factory)
]
