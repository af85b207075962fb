"""Local simulation of the training/generation provider.

Honors the same contract as the real client: evenly spaced progress updates
followed by exactly one terminal outcome. Used for development and tests.
"""

import asyncio
import secrets
import time
from uuid import uuid4

import structlog

from pixmuse.services.providers.base import (
    ExternalJobClient,
    GenerationArtifacts,
    JobHandle,
    JobOutcome,
    JobSucceeded,
    Reporter,
    TrainingArtifacts,
)

logger = structlog.get_logger(__name__)

MOCK_FILES_BASE = "https://files.pixmuse.local/mock"


class SimulatedJobHandle(JobHandle):
    def __init__(self, external_id: str, steps: int, step_delay: float, outcome: JobOutcome):
        super().__init__(external_id)
        self._steps = steps
        self._step_delay = step_delay
        self._result = outcome

    async def _observe(self, report: Reporter) -> JobOutcome:
        for step in range(1, self._steps + 1):
            if self._step_delay:
                await asyncio.sleep(self._step_delay)
            percent = step * 100 // self._steps
            await report(percent, f"step {step}/{self._steps}")
        return self._result


class SimulatedJobClient(ExternalJobClient):
    """ExternalJobClient that fabricates artifacts with mock URLs."""

    name = "simulated"

    def __init__(self, steps: int = 10, step_delay: float = 0.5):
        self._steps = steps
        self._step_delay = step_delay

    def _external_id(self) -> str:
        return f"sim-{uuid4().hex[:12]}"

    async def submit_training(self, archive_url: str) -> JobHandle:
        external_id = self._external_id()
        logger.info("simulated.training_submitted", external_id=external_id, archive_url=archive_url)
        outcome = JobSucceeded(
            TrainingArtifacts(
                weights_url=f"{MOCK_FILES_BASE}/{external_id}/pytorch_lora_weights.safetensors",
                config_url=f"{MOCK_FILES_BASE}/{external_id}/config.json",
            )
        )
        return SimulatedJobHandle(external_id, self._steps, self._step_delay, outcome)

    async def submit_generation(self, weights_url: str, prompt: str, image_count: int) -> JobHandle:
        external_id = self._external_id()
        logger.info(
            "simulated.generation_submitted", external_id=external_id, image_count=image_count
        )
        outcome = JobSucceeded(
            GenerationArtifacts(
                image_urls=tuple(
                    f"{MOCK_FILES_BASE}/{external_id}/generated_image_{i}.png"
                    for i in range(1, image_count + 1)
                )
            )
        )
        return SimulatedJobHandle(external_id, self._steps, self._step_delay, outcome)

    async def upload_archive(self, data: bytes, filename: str) -> str:
        millis = int(time.time() * 1000)
        return f"{MOCK_FILES_BASE}/{secrets.token_hex(4)}_{millis}.zip"
