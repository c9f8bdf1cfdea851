"""FastAPI dependencies: per-request repository plus the shared app-state objects."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncEngine

from bandgov.config import Settings
from bandgov.core.effects import EffectHandlerRegistry
from bandgov.core.event_bus import EventBus
from bandgov.db.engine import get_session
from bandgov.db.repository import Repository


async def get_engine(request: Request) -> AsyncEngine:
    return request.app.state.engine


async def get_repo(
    engine: Annotated[AsyncEngine, Depends(get_engine)],
) -> AsyncGenerator[Repository, None]:
    """Yield a repository whose session commits when the request succeeds."""
    async with get_session(engine) as session:
        yield Repository(session)


async def get_registry(request: Request) -> EffectHandlerRegistry:
    return request.app.state.effect_registry


async def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


async def get_settings(request: Request) -> Settings:
    return request.app.state.settings


RepoDep = Annotated[Repository, Depends(get_repo)]
RegistryDep = Annotated[EffectHandlerRegistry, Depends(get_registry)]
EventBusDep = Annotated[EventBus, Depends(get_event_bus)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
