"""External job client contract.

A provider accepts a long-running unit of work (LoRA training or image
generation) and returns a JobHandle. Waiting on the handle delivers zero or
more progress updates with non-decreasing percentages, then exactly one
terminal outcome. Provider and transport errors surface as a JobFailed
outcome, never as a hang.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

import structlog

from pixmuse.models.job import FailureReason
from pixmuse.services.exceptions import ProviderError, ProviderTransientError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProgressUpdate:
    percent: int
    message: str = ""


@dataclass(frozen=True)
class TrainingArtifacts:
    weights_url: str
    config_url: str


@dataclass(frozen=True)
class GenerationArtifacts:
    image_urls: tuple[str, ...]


@dataclass(frozen=True)
class JobSucceeded:
    artifacts: Union[TrainingArtifacts, GenerationArtifacts]


@dataclass(frozen=True)
class JobFailed:
    reason: FailureReason
    message: str


JobOutcome = Union[JobSucceeded, JobFailed]
ProgressCallback = Callable[[ProgressUpdate], Awaitable[None]]
Reporter = Callable[[int, str], Awaitable[None]]


class JobHandle(ABC):
    """Observable handle on one submitted provider job."""

    def __init__(self, external_id: str):
        self.external_id = external_id
        self._last_percent = 0
        self._outcome: JobOutcome | None = None

    async def wait(self, on_progress: ProgressCallback) -> JobOutcome:
        """Observe the job until it reaches a terminal outcome.

        Args:
            on_progress: Awaited for every accepted progress update

        Returns:
            The terminal outcome; delivered exactly once per handle

        Raises:
            RuntimeError: If the outcome was already delivered
        """
        if self._outcome is not None:
            raise RuntimeError(f"Outcome for job {self.external_id} already delivered")

        async def report(percent: int, message: str = "") -> None:
            percent = max(0, min(100, int(percent)))
            if percent < self._last_percent:
                return
            self._last_percent = percent
            await on_progress(ProgressUpdate(percent=percent, message=message))

        try:
            outcome = await self._observe(report)
        except ProviderTransientError as e:
            logger.warning("provider.transport_error", external_id=self.external_id, error=str(e))
            outcome = JobFailed(FailureReason.TRANSPORT_ERROR, str(e))
        except ProviderError as e:
            logger.warning("provider.job_error", external_id=self.external_id, error=str(e))
            outcome = JobFailed(FailureReason.PROVIDER_FAILURE, str(e))

        self._outcome = outcome
        return outcome

    @abstractmethod
    async def _observe(self, report: Reporter) -> JobOutcome:
        """Drive the provider job to completion, calling report(percent, message)."""

    async def cancel(self) -> None:
        """Best-effort cancellation of the provider job (timeouts, shutdown)."""


class ExternalJobClient(ABC):
    """One interface for the real provider and the local simulation."""

    name: str = "provider"

    @abstractmethod
    async def submit_training(self, archive_url: str) -> JobHandle:
        """Start LoRA training from a zip archive of photos."""

    @abstractmethod
    async def submit_generation(self, weights_url: str, prompt: str, image_count: int) -> JobHandle:
        """Start image generation with trained LoRA weights."""

    @abstractmethod
    async def upload_archive(self, data: bytes, filename: str) -> str:
        """Store a training archive with the provider and return its URL."""
