from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin
from app.models.enums import GenerationStatus

if TYPE_CHECKING:
    from app.models.generation_request import GenerationRequest
    from app.models.jobs import ImageGenerationJob


class GeneratedImage(TimestampMixin, Base):
    __tablename__ = "generated_images"
    __table_args__ = (
        UniqueConstraint("request_id", "index", name="uq_generated_images_request_index"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("generation_requests.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_status: Mapped[GenerationStatus] = mapped_column(
        Enum(GenerationStatus, native_enum=False, length=32),
        default=GenerationStatus.PENDING,
        index=True,
        nullable=False,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    request: Mapped[GenerationRequest] = relationship(back_populates="images")
    job: Mapped[ImageGenerationJob] = relationship(
        back_populates="image",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
