from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models import GenerationRequest
from app.models.enums import GenerationStatus, JobStatus, RequestPhase, RequestStatus
from app.schemas.pagination import Pagination


class GenerationRequestCreate(BaseModel):
    prompt: str = Field(min_length=1)
    priority: int = Field(default=0, ge=0)


class SelectImage(BaseModel):
    index: int = Field(ge=0)


class RetryGeneration(BaseModel):
    kind: Literal["images", "model"] = "images"


class JobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: JobStatus
    priority: int
    retry_count: int
    provider_job_id: str | None
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None


class ModelJobRead(JobRead):
    progress: int


class ImageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    index: int
    image_url: str | None
    image_prompt: str | None
    image_status: GenerationStatus
    error_message: str | None
    completed_at: datetime | None
    failed_at: datetime | None
    job: JobRead | None


class ModelRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    source_image_id: UUID | None
    status: GenerationStatus
    format: str
    model_url: str | None
    preview_image_url: str | None
    error_message: str | None
    created_at: datetime
    completed_at: datetime | None
    failed_at: datetime | None
    job: ModelJobRead | None


class GenerationRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    prompt: str
    status: RequestStatus
    phase: RequestPhase
    selected_image_index: int | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    image_generation_started_at: datetime | None
    image_generation_completed_at: datetime | None
    model_generation_started_at: datetime | None
    model_generation_completed_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None
    images: list[ImageRead]
    model: ModelRead | None


class GenerationRequestListResponse(BaseModel):
    items: list[GenerationRequestRead]
    pagination: Pagination


class TaskUpdate(BaseModel):
    """Payload of ``task:updated`` events."""

    request_id: UUID
    status: RequestStatus
    phase: RequestPhase
    selected_image_index: int | None = None
    error_message: str | None = None

    @classmethod
    def from_request(cls, request: GenerationRequest) -> "TaskUpdate":
        return cls(
            request_id=request.id,
            status=request.status,
            phase=request.phase,
            selected_image_index=request.selected_image_index,
            error_message=request.error_message,
        )


class PipelineMetrics(BaseModel):
    image_jobs: dict[str, int]
    model_jobs: dict[str, int]
    request_phases: dict[str, int]
    request_statuses: dict[str, int]
    connections: dict[str, int]
    workers: dict[str, dict[str, int | bool]] = Field(default_factory=dict)
