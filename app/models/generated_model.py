from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin
from app.models.enums import GenerationStatus, JobStatus

if TYPE_CHECKING:
    from app.models.generated_image import GeneratedImage
    from app.models.generation_request import GenerationRequest
    from app.models.jobs import ModelGenerationJob


class GeneratedModel(TimestampMixin, Base):
    """The single 3D artifact of a request.

    There is no stored status column: a model is terminal once ``completed_at``
    or ``failed_at`` is set, and in-flight progress is read from its job.
    """

    __tablename__ = "generated_models"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("generation_requests.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    source_image_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("generated_images.id", ondelete="SET NULL"),
        unique=True,
        nullable=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    model_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    preview_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    format: Mapped[str] = mapped_column(String(16), default="OBJ", nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    request: Mapped[GenerationRequest] = relationship(back_populates="model")
    source_image: Mapped[GeneratedImage | None] = relationship()
    job: Mapped[ModelGenerationJob] = relationship(
        back_populates="model",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def status(self) -> GenerationStatus:
        if self.completed_at is not None:
            return GenerationStatus.COMPLETED
        if self.failed_at is not None:
            return GenerationStatus.FAILED
        if self.job is not None and self.job.status == JobStatus.RUNNING:
            return GenerationStatus.GENERATING
        return GenerationStatus.PENDING
