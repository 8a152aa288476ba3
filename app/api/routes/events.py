from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.api.deps import get_registry_dep, get_settings_dep
from app.api.routes.requests import get_owned_request
from app.core.config import Settings
from app.models import GenerationRequest
from app.schemas.generation import GenerationRequestRead
from app.services.notifications import ConnectionRegistry, EventType, format_event

router = APIRouter(prefix="/requests", tags=["events"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/{request_id}/events")
async def stream_request_events(
    generation: GenerationRequest = Depends(get_owned_request),
    registry: ConnectionRegistry = Depends(get_registry_dep),
    settings: Settings = Depends(get_settings_dep),
) -> StreamingResponse:
    """Push lifecycle events of one request as server-sent events.

    The first frame is ``task:init`` with the full current state; clients
    that reconnect rely on it instead of a replay of missed events.
    """
    snapshot = GenerationRequestRead.model_validate(generation)
    connection = registry.add_connection(generation.id)
    connection.write(format_event(EventType.TASK_INIT, snapshot))
    return StreamingResponse(
        registry.stream(connection, heartbeat_interval=settings.sse_heartbeat_interval),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
