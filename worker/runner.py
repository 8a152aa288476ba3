from __future__ import annotations

import asyncio

import aiohttp
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.logging import get_logger
from app.providers.factory import (
    build_image_provider,
    build_model3d_provider,
    build_prompt_rewriter,
    build_storage,
)
from app.services.media import DEFAULT_HTTP_HEADERS
from app.services.notifications import ConnectionRegistry
from worker.image_worker import ImageGenerationWorker
from worker.model_worker import ModelGenerationWorker

logger = get_logger("modelforge.workers")


class WorkerManager:
    """Owns the shared HTTP session and the two worker loops of one process."""

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ConnectionRegistry,
        redis: Redis | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._registry = registry
        self._redis = redis
        self._http: aiohttp.ClientSession | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self.image_worker: ImageGenerationWorker | None = None
        self.model_worker: ModelGenerationWorker | None = None

    @property
    def started(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return

        settings = self._settings
        client_timeout = aiohttp.ClientTimeout(total=settings.http_timeout_seconds)
        self._http = aiohttp.ClientSession(
            timeout=client_timeout, headers=DEFAULT_HTTP_HEADERS
        )
        storage = build_storage(settings)

        self.image_worker = ImageGenerationWorker(
            session_factory=self._session_factory,
            image_provider=build_image_provider(settings, self._http),
            prompt_rewriter=build_prompt_rewriter(settings, self._http),
            storage=storage,
            registry=self._registry,
            settings=settings,
            http=self._http,
            redis=self._redis,
        )
        self.model_worker = ModelGenerationWorker(
            session_factory=self._session_factory,
            model_provider=build_model3d_provider(settings, self._http),
            storage=storage,
            registry=self._registry,
            settings=settings,
            http=self._http,
            redis=self._redis,
        )

        recovered = await self.model_worker.recover()
        if recovered:
            logger.info("workers.recovered", requests=recovered)

        self._tasks = [
            asyncio.create_task(self.image_worker.run(), name="image-worker"),
            asyncio.create_task(self.model_worker.run(), name="model-worker"),
        ]
        logger.info("workers.started")

    async def wait(self) -> None:
        await asyncio.gather(*self._tasks)

    async def stop(self) -> None:
        for worker in (self.image_worker, self.model_worker):
            if worker is not None:
                worker.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self._http is not None:
            await self._http.close()
            self._http = None
        logger.info("workers.stopped")

    def status(self) -> dict[str, dict[str, int | bool]]:
        workers = {}
        for worker in (self.image_worker, self.model_worker):
            if worker is not None:
                workers[worker.name] = worker.status()
        return workers
