from datetime import datetime

from pydantic import BaseModel, ConfigDict


class QueueConfigRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    queue_name: str
    is_active: bool
    enable_priority: bool
    updated_at: datetime


class QueueConfigUpdate(BaseModel):
    is_active: bool | None = None
    enable_priority: bool | None = None
