from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db_session, get_registry_dep
from app.schemas.generation import PipelineMetrics
from app.services.notifications import ConnectionRegistry
from app.services.requests import get_metrics

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("", response_model=PipelineMetrics)
async def read_metrics(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    registry: ConnectionRegistry = Depends(get_registry_dep),
) -> PipelineMetrics:
    metrics = await get_metrics(session=session)
    workers = getattr(request.app.state, "workers", None)
    return PipelineMetrics(
        **metrics,
        connections=registry.stats(),
        workers=workers.status() if workers is not None else {},
    )
