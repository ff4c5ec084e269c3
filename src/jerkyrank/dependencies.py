"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from jerkyrank.database import session_scope
from jerkyrank.services import Services


def get_services(request: Request) -> Services:
    """The service bundle built in the lifespan."""
    return request.app.state.services


async def get_db(services: Services = Depends(get_services)) -> AsyncGenerator[AsyncSession, None]:  # noqa: B008
    async for session in session_scope(services.session_factory):
        yield session
