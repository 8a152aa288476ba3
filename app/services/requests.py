from __future__ import annotations

from typing import Literal
from uuid import UUID

from redis.asyncio import Redis
from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import Settings
from app.models import (
    GeneratedImage,
    GeneratedModel,
    GenerationRequest,
    GenerationStatus,
    ImageGenerationJob,
    JobStatus,
    ModelGenerationJob,
    RequestPhase,
    RequestStatus,
)
from app.models.base import utcnow
from app.models.enums import CANCELLABLE_STATUSES
from app.providers.model3d import ModelJobSubmission
from app.services.storage import Storage

CANCELLED_MESSAGE = "cancelled"


class RequestNotFoundError(Exception):
    def __init__(self, request_id: UUID) -> None:
        super().__init__(f"Request {request_id} not found.")
        self.request_id = request_id


class InvalidStateError(Exception):
    pass


class PromptValidationError(ValueError):
    pass


class ModelAlreadyExistsError(Exception):
    def __init__(self, request_id: UUID) -> None:
        super().__init__(f"Request {request_id} already has a model.")
        self.request_id = request_id


def request_storage_prefix(request_id: UUID) -> str:
    return f"requests/{request_id}"


def _with_children(stmt: Select[tuple[GenerationRequest]]) -> Select[tuple[GenerationRequest]]:
    return stmt.options(
        selectinload(GenerationRequest.images).selectinload(GeneratedImage.job),
        selectinload(GenerationRequest.model).selectinload(GeneratedModel.job),
    ).execution_options(populate_existing=True)


async def enqueue_request(redis: Redis | None, queue_name: str, request_id: UUID) -> None:
    """Wake the worker blocked on ``queue_name``; the store stays authoritative."""
    if redis is None:
        return
    await redis.lpush(queue_name, str(request_id))


async def create_request(
    *,
    session: AsyncSession,
    redis: Redis | None,
    settings: Settings,
    user_id: str,
    prompt: str,
    priority: int = 0,
) -> GenerationRequest:
    prompt = prompt.strip()
    if not prompt:
        raise PromptValidationError("Prompt must not be empty.")
    if len(prompt) > settings.max_prompt_length:
        raise PromptValidationError(
            f"Prompt must be at most {settings.max_prompt_length} characters."
        )

    request = GenerationRequest(
        user_id=user_id,
        prompt=prompt,
        status=RequestStatus.IMAGE_PENDING,
        phase=RequestPhase.IMAGE_GENERATION,
    )
    for index in range(settings.images_per_request):
        image = GeneratedImage(index=index, image_status=GenerationStatus.PENDING)
        image.job = ImageGenerationJob(status=JobStatus.PENDING, priority=priority)
        request.images.append(image)

    session.add(request)
    await session.commit()
    await enqueue_request(redis, settings.image_queue_name, request.id)
    return await require_request(session=session, request_id=request.id)


async def get_request(
    *, session: AsyncSession, request_id: UUID
) -> GenerationRequest | None:
    stmt = _with_children(
        select(GenerationRequest).where(GenerationRequest.id == request_id)
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def require_request(
    *, session: AsyncSession, request_id: UUID
) -> GenerationRequest:
    request = await get_request(session=session, request_id=request_id)
    if request is None:
        raise RequestNotFoundError(request_id)
    return request


async def list_requests(
    *,
    session: AsyncSession,
    user_id: str,
    limit: int,
    offset: int,
) -> tuple[list[GenerationRequest], int]:
    stmt = _with_children(
        select(GenerationRequest)
        .where(GenerationRequest.user_id == user_id)
        .order_by(GenerationRequest.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    requests = list(result.scalars())

    count_stmt = (
        select(func.count())
        .select_from(GenerationRequest)
        .where(GenerationRequest.user_id == user_id)
    )
    total = (await session.execute(count_stmt)).scalar_one()
    return requests, int(total)


async def select_image(
    *,
    session: AsyncSession,
    redis: Redis | None,
    settings: Settings,
    request_id: UUID,
    index: int,
) -> GenerationRequest:
    request = await require_request(session=session, request_id=request_id)
    if (
        request.phase != RequestPhase.AWAITING_SELECTION
        or request.status != RequestStatus.IMAGE_COMPLETED
    ):
        raise InvalidStateError(
            f"Images can only be selected while awaiting selection (status={request.status.value})."
        )

    image = next((img for img in request.images if img.index == index), None)
    if image is None:
        raise InvalidStateError(f"Image index {index} does not exist.")
    if image.image_status != GenerationStatus.COMPLETED:
        raise InvalidStateError(f"Image {index} has not completed.")

    request.selected_image_index = index
    request.phase = RequestPhase.MODEL_GENERATION
    request.status = RequestStatus.MODEL_PENDING
    await session.commit()
    await enqueue_request(redis, settings.model_queue_name, request_id)
    return await require_request(session=session, request_id=request_id)


async def create_model_with_job(
    *,
    session: AsyncSession,
    request: GenerationRequest,
    source_image: GeneratedImage,
    submission: ModelJobSubmission,
    provider_name: str,
    model_format: str,
) -> GeneratedModel:
    """Create the request's Model and its Job in one transaction.

    The unique constraint on ``generated_models.request_id`` rejects a second
    model; the transaction is rolled back and no existing row changes. Other
    integrity errors, such as the request having been deleted meanwhile,
    propagate unchanged.
    """
    request_id = request.id
    model = GeneratedModel(
        request_id=request_id,
        source_image_id=source_image.id,
        name=f"{request.prompt[:30]} - 3D model",
        format=model_format,
    )
    model.job = ModelGenerationJob(
        status=JobStatus.PENDING,
        progress=0,
        priority=source_image.job.priority if source_image.job is not None else 0,
        provider_name=provider_name,
        provider_job_id=submission.job_id,
        provider_request_id=submission.request_id,
        started_at=utcnow(),
    )
    session.add(model)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        existing = await session.scalar(
            select(GeneratedModel.id).where(GeneratedModel.request_id == request_id)
        )
        if existing is None:
            raise
        raise ModelAlreadyExistsError(request_id) from exc
    return model


async def cancel_request(
    *, session: AsyncSession, request_id: UUID
) -> GenerationRequest:
    request = await require_request(session=session, request_id=request_id)
    if request.status not in CANCELLABLE_STATUSES:
        raise InvalidStateError(
            f"Request cannot be cancelled in status {request.status.value}."
        )

    request.status = RequestStatus.FAILED
    request.failed_at = utcnow()
    request.error_message = CANCELLED_MESSAGE
    await session.commit()
    return await require_request(session=session, request_id=request_id)


async def retry_request(
    *,
    session: AsyncSession,
    redis: Redis | None,
    settings: Settings,
    request_id: UUID,
    kind: Literal["images", "model"],
) -> GenerationRequest:
    request = await require_request(session=session, request_id=request_id)
    if request.status != RequestStatus.FAILED:
        raise InvalidStateError("Only failed requests can be retried.")

    if kind == "images":
        if request.phase != RequestPhase.IMAGE_GENERATION:
            raise InvalidStateError("Image generation already finished for this request.")
        # Completed images are kept; the worker resumes after them.
        for image in request.images:
            if image.image_status == GenerationStatus.COMPLETED:
                continue
            image.image_status = GenerationStatus.PENDING
            image.error_message = None
            image.failed_at = None
            image.job.status = JobStatus.PENDING
            image.job.error_message = None
            image.job.failed_at = None
        request.status = RequestStatus.IMAGE_PENDING
    else:
        if request.phase != RequestPhase.MODEL_GENERATION or request.selected_image_index is None:
            raise InvalidStateError("Model generation has not started for this request.")
        if request.model is not None:
            await session.delete(request.model)
        request.status = RequestStatus.MODEL_PENDING
        request.model_generation_started_at = None

    request.error_message = None
    request.failed_at = None
    await session.commit()
    queue_name = settings.image_queue_name if kind == "images" else settings.model_queue_name
    await enqueue_request(redis, queue_name, request_id)
    return await require_request(session=session, request_id=request_id)


async def delete_request(
    *, session: AsyncSession, storage: Storage, request_id: UUID
) -> None:
    request = await require_request(session=session, request_id=request_id)
    await session.delete(request)
    await session.commit()
    await storage.delete(request_storage_prefix(request_id))


async def _count_by(session: AsyncSession, column, enum_cls) -> dict[str, int]:
    counts = {member.value: 0 for member in enum_cls}
    result = await session.execute(select(column, func.count()).group_by(column))
    for value, count in result.all():
        counts[value.value] = int(count)
    return counts


async def get_metrics(*, session: AsyncSession) -> dict[str, dict[str, int]]:
    return {
        "image_jobs": await _count_by(session, ImageGenerationJob.status, JobStatus),
        "model_jobs": await _count_by(session, ModelGenerationJob.status, JobStatus),
        "request_phases": await _count_by(session, GenerationRequest.phase, RequestPhase),
        "request_statuses": await _count_by(session, GenerationRequest.status, RequestStatus),
    }
