from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    get_db_session,
    get_redis_client,
    get_registry_dep,
    get_settings_dep,
    get_storage,
    get_user_id,
)
from app.core.config import Settings
from app.models import GenerationRequest
from app.schemas.generation import (
    GenerationRequestCreate,
    GenerationRequestListResponse,
    GenerationRequestRead,
    RetryGeneration,
    SelectImage,
    TaskUpdate,
)
from app.schemas.pagination import Pagination, clamp_page_size
from app.services.notifications import ConnectionRegistry, EventType
from app.services.requests import (
    InvalidStateError,
    PromptValidationError,
    RequestNotFoundError,
    cancel_request,
    create_request,
    delete_request,
    get_request,
    list_requests,
    retry_request,
    select_image,
)
from app.services.storage import LocalStorage

router = APIRouter(prefix="/requests", tags=["requests"])


async def get_owned_request(
    request_id: UUID,
    session: AsyncSession = Depends(get_db_session),
    user_id: str = Depends(get_user_id),
) -> GenerationRequest:
    generation = await get_request(session=session, request_id=request_id)
    if generation is None or generation.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Request not found"
        )
    return generation


def _conflict(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=GenerationRequestRead)
async def submit_request(
    payload: GenerationRequestCreate,
    session: AsyncSession = Depends(get_db_session),
    redis: Redis | None = Depends(get_redis_client),
    settings: Settings = Depends(get_settings_dep),
    user_id: str = Depends(get_user_id),
) -> GenerationRequestRead:
    try:
        generation = await create_request(
            session=session,
            redis=redis,
            settings=settings,
            user_id=user_id,
            prompt=payload.prompt,
            priority=payload.priority,
        )
    except PromptValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    return GenerationRequestRead.model_validate(generation)


@router.get("", response_model=GenerationRequestListResponse)
async def list_generation_requests(
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
    user_id: str = Depends(get_user_id),
) -> GenerationRequestListResponse:
    page_size = clamp_page_size(
        limit, default=settings.default_page_size, maximum=settings.max_page_size
    )
    generations, total = await list_requests(
        session=session, user_id=user_id, limit=page_size, offset=offset
    )
    pagination = Pagination.for_page(
        total=total, limit=page_size, offset=offset, returned=len(generations)
    )
    items = [GenerationRequestRead.model_validate(item) for item in generations]
    return GenerationRequestListResponse(items=items, pagination=pagination)


@router.get("/{request_id}", response_model=GenerationRequestRead)
async def read_request(
    generation: GenerationRequest = Depends(get_owned_request),
) -> GenerationRequestRead:
    return GenerationRequestRead.model_validate(generation)


@router.post("/{request_id}/select", response_model=GenerationRequestRead)
async def select_request_image(
    payload: SelectImage,
    generation: GenerationRequest = Depends(get_owned_request),
    session: AsyncSession = Depends(get_db_session),
    redis: Redis | None = Depends(get_redis_client),
    settings: Settings = Depends(get_settings_dep),
    registry: ConnectionRegistry = Depends(get_registry_dep),
) -> GenerationRequestRead:
    try:
        generation = await select_image(
            session=session,
            redis=redis,
            settings=settings,
            request_id=generation.id,
            index=payload.index,
        )
    except InvalidStateError as exc:
        raise _conflict(exc) from exc
    registry.broadcast(generation.id, EventType.TASK_UPDATED, TaskUpdate.from_request(generation))
    return GenerationRequestRead.model_validate(generation)


@router.post("/{request_id}/cancel", response_model=GenerationRequestRead)
async def cancel_generation_request(
    generation: GenerationRequest = Depends(get_owned_request),
    session: AsyncSession = Depends(get_db_session),
    registry: ConnectionRegistry = Depends(get_registry_dep),
) -> GenerationRequestRead:
    try:
        generation = await cancel_request(session=session, request_id=generation.id)
    except InvalidStateError as exc:
        raise _conflict(exc) from exc
    registry.broadcast(generation.id, EventType.TASK_UPDATED, TaskUpdate.from_request(generation))
    return GenerationRequestRead.model_validate(generation)


@router.post("/{request_id}/retry", response_model=GenerationRequestRead)
async def retry_generation_request(
    payload: RetryGeneration,
    generation: GenerationRequest = Depends(get_owned_request),
    session: AsyncSession = Depends(get_db_session),
    redis: Redis | None = Depends(get_redis_client),
    settings: Settings = Depends(get_settings_dep),
    registry: ConnectionRegistry = Depends(get_registry_dep),
) -> GenerationRequestRead:
    try:
        generation = await retry_request(
            session=session,
            redis=redis,
            settings=settings,
            request_id=generation.id,
            kind=payload.kind,
        )
    except InvalidStateError as exc:
        raise _conflict(exc) from exc
    registry.broadcast(generation.id, EventType.TASK_UPDATED, TaskUpdate.from_request(generation))
    return GenerationRequestRead.model_validate(generation)


@router.delete("/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_generation_request(
    generation: GenerationRequest = Depends(get_owned_request),
    session: AsyncSession = Depends(get_db_session),
    storage: LocalStorage = Depends(get_storage),
) -> Response:
    try:
        await delete_request(session=session, storage=storage, request_id=generation.id)
    except RequestNotFoundError as exc:  # pragma: no cover - deleted concurrently
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Request not found"
        ) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
