"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from pixmuse.models.account import Account
from pixmuse.models.generated_image import GeneratedImage
from pixmuse.models.job import (
    FailureReason,
    InvalidStateTransition,
    Job,
    JobKind,
    JobStatus,
)
from pixmuse.models.payment_event import PaymentEvent
from pixmuse.models.trained_model import TrainedModel
from pixmuse.models.upload import Upload

__all__ = [
    "Account",
    "Job",
    "JobKind",
    "JobStatus",
    "FailureReason",
    "InvalidStateTransition",
    "TrainedModel",
    "GeneratedImage",
    "PaymentEvent",
    "Upload",
]
