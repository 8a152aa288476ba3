from sqlalchemy.ext.asyncio import AsyncEngine

from app.db.session import engine
from app.models import GenerationRequest  # noqa: F401  Ensures models are registered
from app.models.base import Base


async def init_db(bind: AsyncEngine | None = None) -> None:
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
