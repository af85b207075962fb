"""Provider selection, performed once at process start."""

import structlog

from pixmuse.core.config import Settings
from pixmuse.services.providers.base import ExternalJobClient
from pixmuse.services.providers.replicate_provider import ReplicateJobClient
from pixmuse.services.providers.simulated import SimulatedJobClient

logger = structlog.get_logger(__name__)


def create_job_client(settings: Settings) -> ExternalJobClient:
    """Build the configured ExternalJobClient.

    Raises:
        ValueError: If JOB_PROVIDER names an unknown provider
    """
    if settings.job_provider == "replicate":
        client: ExternalJobClient = ReplicateJobClient(
            api_token=settings.replicate_api_token,
            training_model=settings.replicate_training_model,
            training_version=settings.replicate_training_version,
            training_destination=settings.replicate_training_destination,
            training_steps=settings.replicate_training_steps,
            generation_model=settings.replicate_generation_model,
            poll_interval=settings.provider_poll_interval_seconds,
        )
    elif settings.job_provider == "simulated":
        client = SimulatedJobClient(
            steps=settings.simulated_steps,
            step_delay=settings.simulated_step_delay_seconds,
        )
    else:
        raise ValueError(f"Unknown JOB_PROVIDER: {settings.job_provider}")

    logger.info("provider.selected", provider=client.name)
    return client
