"""Background worker that turns a request's selected image into a 3D model.

Each claimed request goes through one submission to the 3D provider and an
inner loop polling the provider's job until it reaches a terminal state or the
wall-clock budget runs out.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from uuid import UUID

import aiohttp
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.logging import get_logger
from app.models import (
    GeneratedImage,
    GeneratedModel,
    GenerationRequest,
    GenerationStatus,
    ImageGenerationJob,
    JobStatus,
    RequestPhase,
    RequestStatus,
)
from app.models.base import utcnow
from app.providers.errors import ExternalAPIError
from app.providers.model3d import Model3DProvider, ModelJobStatus, ProviderJobState
from app.schemas.generation import TaskUpdate
from app.services.media import fetch_bytes
from app.services.notifications import ConnectionRegistry, EventType
from app.services.queues import MODEL_GENERATION_QUEUE, read_queue_switches
from app.services.requests import (
    ModelAlreadyExistsError,
    create_model_with_job,
    get_request,
    request_storage_prefix,
)
from app.services.retry import (
    GenerationCancelled,
    RetryPolicy,
    is_retryable_error,
    retry_with_backoff,
)
from app.services.storage import Storage

logger = get_logger("modelforge.model_worker")

PROVIDER_STATUS_MAP: dict[ProviderJobState, GenerationStatus] = {
    ProviderJobState.WAIT: GenerationStatus.PENDING,
    ProviderJobState.RUN: GenerationStatus.GENERATING,
    ProviderJobState.DONE: GenerationStatus.COMPLETED,
    ProviderJobState.FAIL: GenerationStatus.FAILED,
}

PROGRESS_MAP: dict[ProviderJobState, int] = {
    ProviderJobState.WAIT: 0,
    ProviderJobState.RUN: 50,
    ProviderJobState.DONE: 100,
    ProviderJobState.FAIL: 0,
}

JOB_STATUS_MAP: dict[GenerationStatus, JobStatus] = {
    GenerationStatus.PENDING: JobStatus.PENDING,
    GenerationStatus.GENERATING: JobStatus.RUNNING,
    GenerationStatus.COMPLETED: JobStatus.COMPLETED,
    GenerationStatus.FAILED: JobStatus.FAILED,
}

ACTIVE_STATUSES = (RequestStatus.MODEL_PENDING, RequestStatus.MODEL_GENERATING)


def translate_provider_state(state: ProviderJobState) -> tuple[GenerationStatus, int]:
    return PROVIDER_STATUS_MAP[state], PROGRESS_MAP[state]


class ModelGenerationError(Exception):
    pass


class InvalidSelectionError(ModelGenerationError):
    pass


class ModelFileMissingError(ModelGenerationError):
    pass


class ModelGenerationFailed(ModelGenerationError):
    pass


class GenerationTimeout(ModelGenerationError):
    pass


class ModelGenerationWorker:
    name = "model"
    queue_name = MODEL_GENERATION_QUEUE

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        model_provider: Model3DProvider,
        storage: Storage,
        registry: ConnectionRegistry,
        settings: Settings,
        http: aiohttp.ClientSession | None = None,
        redis: Redis | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._model_provider = model_provider
        self._storage = storage
        self._registry = registry
        self._settings = settings
        self._http = http
        self._redis = redis
        self._sleep = sleep
        self._clock = clock
        self.policy = RetryPolicy(
            max_retries=settings.model_max_retries,
            base_delay=settings.model_retry_base_delay,
            rate_limit_delay=settings.model_retry_rate_limit_delay,
        )
        self._processing: set[UUID] = set()
        self._running = False
        self.processed = 0
        self.failed = 0

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
            "model_worker.started",
            provider=self._model_provider.name,
            concurrency=self._settings.model_max_concurrency,
        )
        while self._running:
            try:
                await self.poll_once()
                await self._wait_for_work()
            except asyncio.CancelledError:
                break
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.exception("model_worker.loop_error", error=str(exc))
                await self._sleep(self._settings.model_poll_interval)
        self._running = False
        logger.info("model_worker.stopped")

    def stop(self) -> None:
        self._running = False

    async def _wait_for_work(self) -> None:
        interval = self._settings.model_poll_interval
        if self._redis is None:
            await self._sleep(interval)
            return
        try:
            await self._redis.brpop(self._settings.model_queue_name, timeout=interval)
        except RedisError as exc:
            logger.warning("model_worker.queue_unavailable", error=str(exc))
            await self._sleep(interval)

    async def recover(self) -> int:
        """Settle requests left mid-generation by a previous process.

        Requests claimed but never submitted go back to ``MODEL_PENDING``.
        Requests whose provider job was already submitted are failed so the
        user can retry them; their remote job is not resumed.
        """
        async with self._session_factory() as session:
            stmt = select(GenerationRequest.id).where(
                GenerationRequest.phase == RequestPhase.MODEL_GENERATION,
                GenerationRequest.status == RequestStatus.MODEL_GENERATING,
            )
            request_ids = list((await session.execute(stmt)).scalars())

        for request_id in request_ids:
            async with self._session_factory() as session:
                request = await get_request(session=session, request_id=request_id)
                if request is None:
                    continue
                if request.model is None:
                    request.status = RequestStatus.MODEL_PENDING
                    request.model_generation_started_at = None
                    await session.commit()
                    logger.info("model_worker.recovered", request_id=str(request_id))
                    continue
            await self._mark_failed(
                request_id,
                ModelGenerationError("3D generation was interrupted by a restart"),
                job_status=JobStatus.FAILED,
            )
        return len(request_ids)

    async def _claim(self) -> list[UUID]:
        claimed: list[UUID] = []
        async with self._session_factory() as session:
            is_active, enable_priority = await read_queue_switches(
                session=session, queue_name=self.queue_name
            )
            if not is_active:
                logger.debug("model_worker.queue_paused", queue=self.queue_name)
                return claimed

            stmt = (
                select(GenerationRequest.id)
                .where(
                    GenerationRequest.phase == RequestPhase.MODEL_GENERATION,
                    GenerationRequest.status == RequestStatus.MODEL_PENDING,
                    ~GenerationRequest.model.has(),
                )
                .limit(self._settings.model_max_concurrency)
            )
            if enable_priority:
                # Priority of the job that produced the selected image.
                priority = (
                    select(ImageGenerationJob.priority)
                    .select_from(ImageGenerationJob)
                    .join(GeneratedImage, ImageGenerationJob.image_id == GeneratedImage.id)
                    .where(
                        GeneratedImage.request_id == GenerationRequest.id,
                        GeneratedImage.index == GenerationRequest.selected_image_index,
                    )
                    .scalar_subquery()
                )
                stmt = stmt.order_by(priority.desc(), GenerationRequest.created_at)
            else:
                stmt = stmt.order_by(GenerationRequest.created_at)
            if self._processing:
                stmt = stmt.where(GenerationRequest.id.not_in(self._processing))

            candidates = list((await session.execute(stmt)).scalars())
            for request_id in candidates:
                # Flip to GENERATING before any remote call; losing the race leaves rowcount at 0.
                result = await session.execute(
                    update(GenerationRequest)
                    .where(
                        GenerationRequest.id == request_id,
                        GenerationRequest.status == RequestStatus.MODEL_PENDING,
                    )
                    .values(
                        status=RequestStatus.MODEL_GENERATING,
                        model_generation_started_at=utcnow(),
                    )
                )
                if result.rowcount == 1:
                    claimed.append(request_id)
            await session.commit()
        return claimed

    async def poll_once(self) -> int:
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
            await self._generate(request_id)
        except GenerationCancelled as exc:
            logger.info(
                "model_worker.request_abandoned", request_id=str(request_id), reason=str(exc)
            )
        except ModelAlreadyExistsError as exc:
            self.failed += 1
            logger.warning("model_worker.model_exists", request_id=str(request_id))
            await self._mark_failed(request_id, exc, job_status=JobStatus.FAILED)
        except GenerationTimeout as exc:
            self.failed += 1
            logger.error("model_worker.timeout", request_id=str(request_id), error=str(exc))
            await self._mark_failed(request_id, exc, job_status=JobStatus.TIMEOUT)
        except Exception as exc:
            self.failed += 1
            logger.error(
                "model_worker.request_failed", request_id=str(request_id), error=str(exc)
            )
            await self._mark_failed(request_id, exc, job_status=JobStatus.FAILED)
        else:
            self.processed += 1

    async def _load_active(
        self, session: AsyncSession, request_id: UUID
    ) -> GenerationRequest:
        request = await get_request(session=session, request_id=request_id)
        if request is None:
            raise GenerationCancelled(f"Request {request_id} was deleted")
        if (
            request.phase != RequestPhase.MODEL_GENERATION
            or request.status not in ACTIVE_STATUSES
        ):
            raise GenerationCancelled(
                f"Request {request_id} is no longer generating a model (status={request.status.value})"
            )
        return request

    def _source_image(self, request: GenerationRequest) -> GeneratedImage:
        index = request.selected_image_index
        if index is None:
            raise InvalidSelectionError("No image has been selected")
        image = next((img for img in request.images if img.index == index), None)
        if image is None or image.image_status != GenerationStatus.COMPLETED or not image.image_url:
            raise InvalidSelectionError(f"Selected image {index} is not completed")
        if request.model is not None:
            raise ModelAlreadyExistsError(request.id)
        return image

    def _public_url(self, url: str) -> str:
        if url.startswith("/"):
            return self._settings.public_base_url.rstrip("/") + url
        return url

    async def _generate(self, request_id: UUID) -> None:
        async with self._session_factory() as session:
            request = await self._load_active(session, request_id)
            self._registry.broadcast(
                request_id, EventType.TASK_UPDATED, TaskUpdate.from_request(request)
            )
            source_image = self._source_image(request)
            image_url = self._public_url(source_image.image_url or "")
            # End the read transaction before the remote call.
            await session.commit()

            submission = await retry_with_backoff(
                lambda: self._model_provider.submit(image_url),
                request_id=request_id,
                policy=self.policy,
                operation_name="model_submission",
                sleep=self._sleep,
            )
            model = await create_model_with_job(
                session=session,
                request=request,
                source_image=source_image,
                submission=submission,
                provider_name=self._model_provider.name,
                model_format=self._settings.model_format,
            )
            logger.info(
                "model_worker.submitted",
                request_id=str(request_id),
                model_id=str(model.id),
                provider_job_id=submission.job_id,
            )
            self._registry.broadcast(
                request_id,
                EventType.MODEL_GENERATING,
                {
                    "request_id": request_id,
                    "model_id": model.id,
                    "provider_job_id": submission.job_id,
                    "status": model.status,
                    "progress": 0,
                },
            )

            result = await self._poll_until_terminal(session, request_id, model)
            if result.status == ProviderJobState.FAIL:
                raise ModelGenerationFailed(
                    result.error_message or result.error_code or "3D provider reported failure"
                )
            await self._complete(session, request_id, model, result)

    async def _poll_until_terminal(
        self, session: AsyncSession, request_id: UUID, model: GeneratedModel
    ) -> ModelJobStatus:
        budget = self._settings.model_max_poll_seconds
        started = self._clock()
        job_id = model.job.provider_job_id or ""
        last_seen: tuple[GenerationStatus, int] | None = None

        while self._clock() - started < budget:
            await self._sleep(self._settings.model_status_poll_interval)
            await self._load_active(session, request_id)
            await session.commit()

            try:
                result = await self._model_provider.poll_status(job_id)
            except (ExternalAPIError, asyncio.TimeoutError) as exc:
                if not is_retryable_error(exc):
                    raise
                logger.warning(
                    "model_worker.poll_error",
                    request_id=str(request_id),
                    error=str(exc) or exc.__class__.__name__,
                )
                continue

            status, progress = translate_provider_state(result.status)
            if status in (GenerationStatus.COMPLETED, GenerationStatus.FAILED):
                return result
            if (status, progress) == last_seen:
                continue

            last_seen = (status, progress)
            model.job.status = JOB_STATUS_MAP[status]
            model.job.progress = progress
            await session.commit()
            self._registry.broadcast(
                request_id,
                EventType.MODEL_PROGRESS,
                {
                    "request_id": request_id,
                    "model_id": model.id,
                    "status": status,
                    "progress": progress,
                },
            )

        raise GenerationTimeout(f"3D generation did not finish within {budget:.0f}s")

    async def _complete(
        self,
        session: AsyncSession,
        request_id: UUID,
        model: GeneratedModel,
        result: ModelJobStatus,
    ) -> None:
        model_format = self._settings.model_format
        model_file = next(
            (f for f in result.result_files if (f.type or "").upper() == model_format and f.url),
            None,
        )
        if model_file is None:
            available = [f.type for f in result.result_files]
            raise ModelFileMissingError(
                f"Provider finished without a {model_format} file (got {available})"
            )

        prefix = f"{request_storage_prefix(request_id)}/models"
        data = await fetch_bytes(self._http, model_file.url or "")
        model_url = await self._storage.save(data, f"{prefix}/model.{model_format.lower()}")

        preview_url: str | None = None
        preview_source = model_file.preview_image_url or next(
            (f.preview_image_url for f in result.result_files if f.preview_image_url), None
        )
        if preview_source:
            try:
                preview_url = await self._storage.save(
                    await fetch_bytes(self._http, preview_source), f"{prefix}/preview.png"
                )
            except (ExternalAPIError, ValueError, OSError) as exc:
                logger.warning(
                    "model_worker.preview_failed", request_id=str(request_id), error=str(exc)
                )

        request = await self._load_active(session, request_id)
        now = utcnow()
        model.model_url = model_url
        model.preview_image_url = preview_url
        model.completed_at = now
        model.error_message = None
        model.job.status = JobStatus.COMPLETED
        model.job.progress = 100
        model.job.completed_at = now
        request.status = RequestStatus.MODEL_COMPLETED
        request.phase = RequestPhase.COMPLETED
        request.model_generation_completed_at = now
        request.completed_at = now
        await session.commit()

        logger.info("model_worker.completed", request_id=str(request_id), model_url=model_url)
        self._registry.broadcast(
            request_id,
            EventType.MODEL_COMPLETED,
            {
                "request_id": request_id,
                "model_id": model.id,
                "model_url": model_url,
                "preview_image_url": preview_url,
                "format": model.format,
                "progress": 100,
            },
        )
        self._registry.broadcast(
            request_id, EventType.TASK_UPDATED, TaskUpdate.from_request(request)
        )

    async def _mark_failed(
        self, request_id: UUID, exc: BaseException, *, job_status: JobStatus
    ) -> None:
        message = str(exc) or exc.__class__.__name__
        async with self._session_factory() as session:
            request = await get_request(session=session, request_id=request_id)
            if (
                request is None
                or request.phase != RequestPhase.MODEL_GENERATION
                or request.status not in ACTIVE_STATUSES
            ):
                return

            now = utcnow()
            model = request.model
            if model is not None and model.completed_at is None:
                model.failed_at = now
                model.error_message = message
                model.job.status = job_status
                model.job.error_message = message
                model.job.failed_at = now
            request.status = RequestStatus.FAILED
            request.error_message = message
            request.failed_at = now
            await session.commit()

        self._registry.broadcast(
            request_id,
            EventType.MODEL_FAILED,
            {
                "request_id": request_id,
                "model_id": model.id if model is not None else None,
                "error_message": message,
                "timeout": job_status == JobStatus.TIMEOUT,
            },
        )
        self._registry.broadcast(
            request_id, EventType.TASK_UPDATED, TaskUpdate.from_request(request)
        )
