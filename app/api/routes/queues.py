from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db_session
from app.models import QueueConfig
from app.schemas.queues import QueueConfigRead, QueueConfigUpdate
from app.services.queues import (
    UnknownQueueError,
    get_queue_config,
    list_queue_configs,
    update_queue_config,
)

router = APIRouter(prefix="/admin/queues", tags=["admin"])


def _not_found(exc: UnknownQueueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


async def _update(session: AsyncSession, queue_name: str, **changes) -> QueueConfig:
    try:
        return await update_queue_config(session=session, queue_name=queue_name, **changes)
    except UnknownQueueError as exc:
        raise _not_found(exc) from exc


@router.get("", response_model=list[QueueConfigRead])
async def list_queues(session: AsyncSession = Depends(get_db_session)) -> list[QueueConfigRead]:
    configs = await list_queue_configs(session=session)
    return [QueueConfigRead.model_validate(config) for config in configs]


@router.get("/{queue_name}", response_model=QueueConfigRead)
async def read_queue(
    queue_name: str, session: AsyncSession = Depends(get_db_session)
) -> QueueConfigRead:
    try:
        config = await get_queue_config(session=session, queue_name=queue_name)
    except UnknownQueueError as exc:
        raise _not_found(exc) from exc
    return QueueConfigRead.model_validate(config)


@router.patch("/{queue_name}", response_model=QueueConfigRead)
async def patch_queue(
    queue_name: str,
    payload: QueueConfigUpdate,
    session: AsyncSession = Depends(get_db_session),
) -> QueueConfigRead:
    config = await _update(
        session,
        queue_name,
        is_active=payload.is_active,
        enable_priority=payload.enable_priority,
    )
    return QueueConfigRead.model_validate(config)


@router.post("/{queue_name}/pause", response_model=QueueConfigRead)
async def pause_queue(
    queue_name: str, session: AsyncSession = Depends(get_db_session)
) -> QueueConfigRead:
    """Workers stop claiming from this queue at their next poll; in-flight work finishes."""
    config = await _update(session, queue_name, is_active=False)
    return QueueConfigRead.model_validate(config)


@router.delete("/{queue_name}/pause", response_model=QueueConfigRead)
async def resume_queue(
    queue_name: str, session: AsyncSession = Depends(get_db_session)
) -> QueueConfigRead:
    config = await _update(session, queue_name, is_active=True)
    return QueueConfigRead.model_validate(config)
