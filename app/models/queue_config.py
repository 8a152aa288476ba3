from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class QueueConfig(TimestampMixin, Base):
    """Runtime switches of one worker queue, editable without a restart."""

    __tablename__ = "queue_configs"

    queue_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    enable_priority: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
