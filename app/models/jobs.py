from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin
from app.models.enums import JobStatus

if TYPE_CHECKING:
    from app.models.generated_image import GeneratedImage
    from app.models.generated_model import GeneratedModel


class JobMixin(TimestampMixin):
    """Columns shared by the per-image and per-model work orders."""

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, length=32),
        default=JobStatus.PENDING,
        index=True,
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    provider_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_job_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class ImageGenerationJob(JobMixin, Base):
    __tablename__ = "image_generation_jobs"

    image_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("generated_images.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    image: Mapped[GeneratedImage] = relationship(back_populates="job")


class ModelGenerationJob(JobMixin, Base):
    __tablename__ = "model_generation_jobs"

    model_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("generated_models.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    model: Mapped[GeneratedModel] = relationship(back_populates="job")
