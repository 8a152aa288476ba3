from collections.abc import AsyncGenerator

from fastapi import Header, Request
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.db.session import get_session
from app.providers.factory import build_storage
from app.services.notifications import ConnectionRegistry, get_registry
from app.services.storage import LocalStorage


async def get_settings_dep() -> Settings:
    return get_settings()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_session():
        yield session


async def get_redis_client(request: Request) -> Redis | None:
    redis: Redis | None = getattr(request.app.state, "redis", None)
    return redis


async def get_registry_dep() -> ConnectionRegistry:
    return get_registry()


async def get_storage() -> LocalStorage:
    return build_storage(get_settings())


async def get_user_id(
    x_user_id: str = Header(default="anonymous", max_length=64),
) -> str:
    return x_user_id
