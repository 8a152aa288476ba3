from app.models.enums import GenerationStatus, JobStatus, RequestPhase, RequestStatus
from app.models.generated_image import GeneratedImage
from app.models.generated_model import GeneratedModel
from app.models.generation_request import GenerationRequest
from app.models.jobs import ImageGenerationJob, ModelGenerationJob
from app.models.queue_config import QueueConfig

__all__ = [
    "GeneratedImage",
    "GeneratedModel",
    "GenerationRequest",
    "GenerationStatus",
    "ImageGenerationJob",
    "JobStatus",
    "ModelGenerationJob",
    "QueueConfig",
    "RequestPhase",
    "RequestStatus",
]
