from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin
from app.models.enums import RequestPhase, RequestStatus

if TYPE_CHECKING:
    from app.models.generated_image import GeneratedImage
    from app.models.generated_model import GeneratedModel


class GenerationRequest(TimestampMixin, Base):
    __tablename__ = "generation_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[RequestStatus] = mapped_column(
        Enum(RequestStatus, native_enum=False, length=32),
        default=RequestStatus.IMAGE_PENDING,
        index=True,
        nullable=False,
    )
    phase: Mapped[RequestPhase] = mapped_column(
        Enum(RequestPhase, native_enum=False, length=32),
        default=RequestPhase.IMAGE_GENERATION,
        index=True,
        nullable=False,
    )
    selected_image_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    image_generation_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    image_generation_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    model_generation_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    model_generation_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    images: Mapped[list[GeneratedImage]] = relationship(
        back_populates="request",
        order_by="GeneratedImage.index",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    model: Mapped[GeneratedModel | None] = relationship(
        back_populates="request",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
