"""Runtime switches for the two worker queues.

Workers read their queue's row on every poll, so pausing a queue or turning on
priority ordering takes effect at the next claim without a restart. A missing
row behaves like the defaults: active, ordered by creation time.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import QueueConfig

IMAGE_GENERATION_QUEUE = "image_generation"
MODEL_GENERATION_QUEUE = "model_generation"
QUEUE_NAMES = (IMAGE_GENERATION_QUEUE, MODEL_GENERATION_QUEUE)


class UnknownQueueError(Exception):
    def __init__(self, queue_name: str) -> None:
        super().__init__(f"Queue {queue_name} does not exist.")
        self.queue_name = queue_name


def _check_name(queue_name: str) -> None:
    if queue_name not in QUEUE_NAMES:
        raise UnknownQueueError(queue_name)


async def get_queue_config(*, session: AsyncSession, queue_name: str) -> QueueConfig:
    """Return the queue's config row, creating it with defaults on first access."""
    _check_name(queue_name)
    config = await session.get(QueueConfig, queue_name, populate_existing=True)
    if config is None:
        config = QueueConfig(queue_name=queue_name, is_active=True, enable_priority=False)
        session.add(config)
        await session.commit()
    return config


async def list_queue_configs(*, session: AsyncSession) -> list[QueueConfig]:
    return [
        await get_queue_config(session=session, queue_name=name) for name in QUEUE_NAMES
    ]


async def update_queue_config(
    *,
    session: AsyncSession,
    queue_name: str,
    is_active: bool | None = None,
    enable_priority: bool | None = None,
) -> QueueConfig:
    config = await get_queue_config(session=session, queue_name=queue_name)
    if is_active is not None:
        config.is_active = is_active
    if enable_priority is not None:
        config.enable_priority = enable_priority
    await session.commit()
    return config


async def read_queue_switches(
    *, session: AsyncSession, queue_name: str
) -> tuple[bool, bool]:
    """``(is_active, enable_priority)`` for a worker poll; read-only."""
    _check_name(queue_name)
    row = (
        await session.execute(
            select(QueueConfig.is_active, QueueConfig.enable_priority).where(
                QueueConfig.queue_name == queue_name
            )
        )
    ).first()
    if row is None:
        return True, False
    return bool(row.is_active), bool(row.enable_priority)
