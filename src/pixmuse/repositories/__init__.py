"""Repository layer for PixMuse backend.

Provides data access abstractions for all domain entities.
Each repository is self-contained (no base classes).
"""

from pixmuse.repositories.account import AccountRepository
from pixmuse.repositories.generated_image import GeneratedImageRepository
from pixmuse.repositories.job import JobRepository
from pixmuse.repositories.payment_event import PaymentEventRepository
from pixmuse.repositories.trained_model import TrainedModelRepository
from pixmuse.repositories.upload import UploadRepository

__all__ = [
    "AccountRepository",
    "JobRepository",
    "TrainedModelRepository",
    "GeneratedImageRepository",
    "PaymentEventRepository",
    "UploadRepository",
]
