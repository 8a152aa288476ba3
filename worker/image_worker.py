"""Background worker that fills a request's candidate images one at a time.

Progress is checkpointed per image: the number of ``COMPLETED`` images of a
request is the index the worker resumes from, so a crash or a failed attempt
never regenerates an image that was already stored.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from uuid import UUID

import aiohttp
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.logging import get_logger
from app.models import (
    GeneratedImage,
    GenerationRequest,
    GenerationStatus,
    ImageGenerationJob,
    JobStatus,
    RequestPhase,
    RequestStatus,
)
from app.models.base import utcnow
from app.providers.image import ImageProvider
from app.providers.prompts import PromptRewriter
from app.schemas.generation import TaskUpdate
from app.services.media import fetch_bytes, normalize_image
from app.services.notifications import ConnectionRegistry, EventType
from app.services.queues import IMAGE_GENERATION_QUEUE, read_queue_switches
from app.services.requests import get_request, request_storage_prefix
from app.services.retry import GenerationCancelled, RetryPolicy, retry_with_backoff
from app.services.storage import Storage

logger = get_logger("modelforge.image_worker")

ACTIVE_STATUSES = (RequestStatus.IMAGE_PENDING, RequestStatus.IMAGE_GENERATING)


class ImageGenerationWorker:
    name = "image"
    queue_name = IMAGE_GENERATION_QUEUE

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        image_provider: ImageProvider,
        prompt_rewriter: PromptRewriter,
        storage: Storage,
        registry: ConnectionRegistry,
        settings: Settings,
        http: aiohttp.ClientSession | None = None,
        redis: Redis | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._image_provider = image_provider
        self._prompt_rewriter = prompt_rewriter
        self._storage = storage
        self._registry = registry
        self._settings = settings
        self._http = http
        self._redis = redis
        self._sleep = sleep
        self.policy = RetryPolicy(
            max_retries=settings.image_max_retries,
            base_delay=settings.image_retry_base_delay,
            rate_limit_delay=settings.image_retry_rate_limit_delay,
        )
        # Single-instance duplicate-claim guard.
        self._processing: set[UUID] = set()
        self._running = False
        self.processed = 0
        self.failed = 0

    @property
    def processing(self) -> frozenset[UUID]:
        return frozenset(self._processing)

    def status(self) -> dict[str, int | bool]:
        return {
            "running": self._running,
            "processing": len(self._processing),
            "processed": self.processed,
            "failed": self.failed,
        }

    async def run(self) -> None:
        self._running = True
        logger.info(
            "image_worker.started",
            provider=self._image_provider.name,
            concurrency=self._settings.image_max_concurrency,
        )
        while self._running:
            try:
                await self.poll_once()
                await self._wait_for_work()
            except asyncio.CancelledError:
                break
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.exception("image_worker.loop_error", error=str(exc))
                await self._sleep(self._settings.image_poll_interval)
        self._running = False
        logger.info("image_worker.stopped")

    def stop(self) -> None:
        self._running = False

    async def _wait_for_work(self) -> None:
        interval = self._settings.image_poll_interval
        if self._redis is None:
            await self._sleep(interval)
            return
        try:
            await self._redis.brpop(self._settings.image_queue_name, timeout=interval)
        except RedisError as exc:
            logger.warning("image_worker.queue_unavailable", error=str(exc))
            await self._sleep(interval)

    async def _claim(self) -> list[UUID]:
        async with self._session_factory() as session:
            is_active, enable_priority = await read_queue_switches(
                session=session, queue_name=self.queue_name
            )
            if not is_active:
                logger.debug("image_worker.queue_paused", queue=self.queue_name)
                return []

            stmt = (
                select(GenerationRequest.id)
                .where(
                    GenerationRequest.phase == RequestPhase.IMAGE_GENERATION,
                    GenerationRequest.status.in_(ACTIVE_STATUSES),
                )
                .limit(self._settings.image_max_concurrency)
            )
            if enable_priority:
                priority = (
                    select(func.max(ImageGenerationJob.priority))
                    .select_from(ImageGenerationJob)
                    .join(GeneratedImage, ImageGenerationJob.image_id == GeneratedImage.id)
                    .where(GeneratedImage.request_id == GenerationRequest.id)
                    .scalar_subquery()
                )
                stmt = stmt.order_by(priority.desc(), GenerationRequest.created_at)
            else:
                stmt = stmt.order_by(GenerationRequest.created_at)
            if self._processing:
                stmt = stmt.where(GenerationRequest.id.not_in(self._processing))
            result = await session.execute(stmt)
            return list(result.scalars())

    async def poll_once(self) -> int:
        """Claim eligible requests and process them concurrently. Returns the claim count."""
        request_ids = await self._claim()
        if not request_ids:
            return 0

        self._processing.update(request_ids)
        try:
            await asyncio.gather(*(self.process_request(rid) for rid in request_ids))
        finally:
            self._processing.difference_update(request_ids)
        return len(request_ids)

    async def process_request(self, request_id: UUID) -> None:
        try:
            await retry_with_backoff(
                lambda: self._generate_remaining(request_id),
                request_id=request_id,
                policy=self.policy,
                operation_name="image_generation",
                sleep=self._sleep,
            )
        except GenerationCancelled as exc:
            logger.info(
                "image_worker.request_abandoned", request_id=str(request_id), reason=str(exc)
            )
        except Exception as exc:
            self.failed += 1
            logger.error(
                "image_worker.request_failed", request_id=str(request_id), error=str(exc)
            )
            await self._mark_failed(request_id, exc)
        else:
            self.processed += 1

    async def _load_active(
        self, session: AsyncSession, request_id: UUID
    ) -> GenerationRequest:
        request = await get_request(session=session, request_id=request_id)
        if request is None:
            raise GenerationCancelled(f"Request {request_id} was deleted")
        if (
            request.phase != RequestPhase.IMAGE_GENERATION
            or request.status not in ACTIVE_STATUSES
        ):
            raise GenerationCancelled(
                f"Request {request_id} is no longer generating images (status={request.status.value})"
            )
        return request

    async def _generate_remaining(self, request_id: UUID) -> None:
        async with self._session_factory() as session:
            request = await self._load_active(session, request_id)
            total = len(request.images)
            checkpoint = sum(
                1 for image in request.images if image.image_status == GenerationStatus.COMPLETED
            )

            if request.status == RequestStatus.IMAGE_PENDING:
                request.status = RequestStatus.IMAGE_GENERATING
                if request.image_generation_started_at is None:
                    request.image_generation_started_at = utcnow()
                await session.commit()
                self._registry.broadcast(
                    request_id, EventType.TASK_UPDATED, TaskUpdate.from_request(request)
                )

            if checkpoint:
                logger.info(
                    "image_worker.resuming",
                    request_id=str(request_id),
                    checkpoint=checkpoint,
                    total=total,
                )

            for index in range(checkpoint, total):
                request = await self._load_active(session, request_id)
                await self._generate_image(session, request, request.images[index], total)

            request = await self._load_active(session, request_id)
            now = utcnow()
            request.phase = RequestPhase.AWAITING_SELECTION
            request.status = RequestStatus.IMAGE_COMPLETED
            request.image_generation_completed_at = now
            await session.commit()

        logger.info("image_worker.request_completed", request_id=str(request_id), images=total)
        self._registry.broadcast(
            request_id, EventType.TASK_UPDATED, TaskUpdate.from_request(request)
        )

    async def _generate_image(
        self,
        session: AsyncSession,
        request: GenerationRequest,
        image: GeneratedImage,
        total: int,
    ) -> None:
        job = image.job
        image.image_status = GenerationStatus.GENERATING
        job.status = JobStatus.RUNNING
        job.provider_name = self._image_provider.name
        if job.started_at is None:
            job.started_at = utcnow()
        await session.commit()
        self._registry.broadcast(
            request.id,
            EventType.IMAGE_GENERATING,
            {"request_id": request.id, "image_id": image.id, "index": image.index},
        )

        try:
            prompt = await self._prompt_rewriter.variant(request.prompt, image.index, total)
            source_url = await self._image_provider.generate_one(prompt)
            data, metadata = await normalize_image(await fetch_bytes(self._http, source_url))
            image_url = await self._storage.save(
                data, f"{request_storage_prefix(request.id)}/images/{image.index}.png"
            )
        except Exception as exc:
            job.status = JobStatus.RETRYING
            job.retry_count += 1
            job.error_message = str(exc)
            await session.commit()
            raise

        now = utcnow()
        image.image_url = image_url
        image.image_prompt = prompt
        image.image_status = GenerationStatus.COMPLETED
        image.completed_at = now
        image.error_message = None
        image.failed_at = None
        job.status = JobStatus.COMPLETED
        job.completed_at = now
        job.error_message = None
        await session.commit()

        logger.info(
            "image_worker.image_completed",
            request_id=str(request.id),
            index=image.index,
            width=metadata["width"],
            height=metadata["height"],
        )
        self._registry.broadcast(
            request.id,
            EventType.IMAGE_COMPLETED,
            {
                "request_id": request.id,
                "image_id": image.id,
                "index": image.index,
                "image_url": image_url,
            },
        )

    async def _mark_failed(self, request_id: UUID, exc: BaseException) -> None:
        message = str(exc) or exc.__class__.__name__
        async with self._session_factory() as session:
            request = await get_request(session=session, request_id=request_id)
            if (
                request is None
                or request.phase != RequestPhase.IMAGE_GENERATION
                or request.status not in ACTIVE_STATUSES
            ):
                return

            now = utcnow()
            # Images complete in index order, so the first unfinished one was in flight.
            image = next(
                (img for img in request.images if img.image_status != GenerationStatus.COMPLETED),
                None,
            )
            if image is not None:
                image.image_status = GenerationStatus.FAILED
                image.error_message = message
                image.failed_at = now
                image.job.status = JobStatus.FAILED
                image.job.error_message = message
                image.job.failed_at = now

            request.status = RequestStatus.FAILED
            request.error_message = message
            request.failed_at = now
            await session.commit()

        if image is not None:
            self._registry.broadcast(
                request_id,
                EventType.IMAGE_FAILED,
                {
                    "request_id": request_id,
                    "image_id": image.id,
                    "index": image.index,
                    "error_message": message,
                },
            )
        self._registry.broadcast(
            request_id, EventType.TASK_UPDATED, TaskUpdate.from_request(request)
        )
