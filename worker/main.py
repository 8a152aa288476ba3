from __future__ import annotations

import asyncio
from pathlib import Path

from redis.asyncio import Redis

from app.core.config import Settings, get_settings
from app.core.logging import configure_logging, get_logger
from app.db.session import SessionLocal, engine
from app.services.notifications import get_registry
from worker.runner import WorkerManager

logger = get_logger("modelforge.worker")


async def consume(settings: Settings) -> None:
    """Run both generation workers in a standalone process.

    Live events are only delivered to clients connected to the same process,
    so deployments that need them run the workers inside the API instead.
    """
    configure_logging(settings.log_level)
    Path(settings.storage_path).mkdir(parents=True, exist_ok=True)

    redis = Redis.from_url(settings.redis_url, decode_responses=True)
    manager = WorkerManager(
        settings,
        session_factory=SessionLocal,
        registry=get_registry(),
        redis=redis,
    )
    try:
        await manager.start()
        await manager.wait()
    except asyncio.CancelledError:
        logger.info("worker.cancelled")
    finally:
        await manager.stop()
        await redis.close()
        await engine.dispose()


def main() -> None:
    settings = get_settings()
    asyncio.run(consume(settings))


if __name__ == "__main__":
    main()
