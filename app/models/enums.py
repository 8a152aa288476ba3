"""Persisted status vocabularies.

Values are stored and serialised verbatim, so they must stay bit-exact with
what clients expect.
"""

import enum


class RequestPhase(str, enum.Enum):
    IMAGE_GENERATION = "IMAGE_GENERATION"
    AWAITING_SELECTION = "AWAITING_SELECTION"
    MODEL_GENERATION = "MODEL_GENERATION"
    COMPLETED = "COMPLETED"


class RequestStatus(str, enum.Enum):
    IMAGE_PENDING = "IMAGE_PENDING"
    IMAGE_GENERATING = "IMAGE_GENERATING"
    IMAGE_COMPLETED = "IMAGE_COMPLETED"
    MODEL_PENDING = "MODEL_PENDING"
    MODEL_GENERATING = "MODEL_GENERATING"
    MODEL_COMPLETED = "MODEL_COMPLETED"
    FAILED = "FAILED"


class GenerationStatus(str, enum.Enum):
    """Status of a single artifact (image or model)."""

    PENDING = "PENDING"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    RETRYING = "RETRYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


# Request statuses in which a worker may still be acting on the request.
CANCELLABLE_STATUSES = frozenset(
    {
        RequestStatus.IMAGE_PENDING,
        RequestStatus.IMAGE_GENERATING,
        RequestStatus.MODEL_PENDING,
        RequestStatus.MODEL_GENERATING,
    }
)
