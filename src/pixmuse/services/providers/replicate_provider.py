"""Replicate-backed job client for LoRA training and image generation."""

import asyncio
import io
from typing import Any, Callable

import httpx
import replicate
import structlog
from replicate.exceptions import ReplicateError as ReplicateAPIError

from pixmuse.models.job import FailureReason
from pixmuse.services.exceptions import (
    ProviderContentPolicyError,
    ProviderError,
    ProviderPermanentError,
    ProviderTransientError,
)
from pixmuse.services.providers.base import (
    ExternalJobClient,
    GenerationArtifacts,
    JobFailed,
    JobHandle,
    JobOutcome,
    JobSucceeded,
    Reporter,
    TrainingArtifacts,
)
from pixmuse.services.providers.progress import parse_latest_progress

logger = structlog.get_logger(__name__)

TERMINAL_FAILURE_STATUSES = ("failed", "canceled")


def classify_error(exception: Exception) -> ProviderError:
    """Classify exception into retry category.

    Args:
        exception: Original exception from Replicate SDK or network layer

    Returns:
        Classified ProviderError subclass instance

    Classification rules:
        - Timeout errors → ProviderTransientError
        - 429 (rate limit) → ProviderTransientError
        - 503 (service unavailable) → ProviderTransientError
        - 401/403 (authentication) → ProviderPermanentError
        - Content policy violations → ProviderContentPolicyError
        - Connection errors → ProviderTransientError
        - Anything else → ProviderPermanentError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if "timeout" in error_message_lower or isinstance(
        exception, (TimeoutError, httpx.TimeoutException)
    ):
        return ProviderTransientError(f"Network timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return ProviderTransientError(f"Rate limit exceeded: {error_message}")

    if "503" in error_message or "service unavailable" in error_message_lower:
        return ProviderTransientError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return ProviderPermanentError(f"Authentication failed: {error_message}")

    if (
        "content policy" in error_message_lower
        or "nsfw" in error_message_lower
        or "safety" in error_message_lower
        or "inappropriate" in error_message_lower
    ):
        return ProviderContentPolicyError(f"Content policy violation: {error_message}")

    if isinstance(exception, (ConnectionError, OSError, httpx.TransportError)):
        return ProviderTransientError(f"Connection error: {error_message}")

    return ProviderPermanentError(f"Permanent error: {error_message}")


async def _call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a synchronous SDK call in the thread pool with error classification."""
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except (ReplicateAPIError, httpx.TransportError, ConnectionError, OSError, TimeoutError) as e:
        raise classify_error(e) from e


class ReplicateJobHandle(JobHandle):
    """Polls a Replicate prediction or training until it settles.

    Progress is parsed from the accumulated logs on every poll. Up to
    max_poll_failures consecutive transient errors are tolerated before the
    handle gives up with a transport error.
    """

    def __init__(
        self,
        external_id: str,
        fetch: Callable[[str], Any],
        cancel: Callable[[str], Any],
        extract: Callable[[Any], JobOutcome],
        poll_interval: float,
        max_poll_failures: int = 3,
    ):
        super().__init__(external_id)
        self._fetch = fetch
        self._cancel = cancel
        self._extract = extract
        self._poll_interval = poll_interval
        self._max_poll_failures = max_poll_failures

    async def _observe(self, report: Reporter) -> JobOutcome:
        failures = 0
        while True:
            try:
                remote = await _call(self._fetch, self.external_id)
                failures = 0
            except ProviderTransientError as e:
                failures += 1
                logger.warning(
                    "replicate.poll_failed",
                    external_id=self.external_id,
                    attempt=failures,
                    error=str(e),
                )
                if failures >= self._max_poll_failures:
                    raise
                await asyncio.sleep(self._poll_interval)
                continue

            parsed = parse_latest_progress(getattr(remote, "logs", None))
            if parsed:
                await report(*parsed)

            if remote.status == "succeeded":
                return self._extract(remote.output)
            if remote.status in TERMINAL_FAILURE_STATUSES:
                return JobFailed(
                    FailureReason.PROVIDER_FAILURE,
                    str(remote.error or f"Replicate job {remote.status}"),
                )

            await asyncio.sleep(self._poll_interval)

    async def cancel(self) -> None:
        try:
            await _call(self._cancel, self.external_id)
        except ProviderError as e:
            logger.warning("replicate.cancel_failed", external_id=self.external_id, error=str(e))


def _extract_training(output: Any) -> JobOutcome:
    """Training output: {"version": "owner/model:sha", "weights": "https://..."}."""
    if not isinstance(output, dict) or not output.get("weights"):
        return JobFailed(
            FailureReason.INVALID_OUTPUT, f"Unexpected training output from Replicate: {output!r}"
        )
    weights_url = str(output["weights"])
    return JobSucceeded(
        TrainingArtifacts(weights_url=weights_url, config_url=str(output.get("version") or ""))
    )


def _extract_generation(output: Any) -> JobOutcome:
    """Generation output: list of image URLs (or a single URL)."""
    if isinstance(output, str):
        urls = [output]
    elif isinstance(output, list):
        urls = [str(item) for item in output if item]
    else:
        return JobFailed(
            FailureReason.INVALID_OUTPUT,
            f"Unexpected output format from Replicate: {type(output).__name__}",
        )
    return JobSucceeded(GenerationArtifacts(image_urls=tuple(urls)))


class ReplicateJobClient(ExternalJobClient):
    """ExternalJobClient backed by the Replicate API."""

    name = "replicate"

    def __init__(
        self,
        api_token: str,
        training_model: str,
        training_version: str,
        training_destination: str,
        training_steps: int,
        generation_model: str,
        poll_interval: float = 2.0,
    ):
        if not api_token:
            raise ProviderPermanentError("REPLICATE_API_TOKEN not configured")
        self._client = replicate.Client(api_token=api_token)
        self._training_version = f"{training_model}:{training_version}"
        self._training_destination = training_destination
        self._training_steps = training_steps
        self._generation_model = generation_model
        self._poll_interval = poll_interval

    async def submit_training(self, archive_url: str) -> JobHandle:
        training = await _call(
            self._client.trainings.create,
            version=self._training_version,
            input={
                "input_images": archive_url,
                "steps": self._training_steps,
                "trigger_word": "TOK",
            },
            destination=self._training_destination,
        )
        logger.info("replicate.training_submitted", external_id=training.id)
        return ReplicateJobHandle(
            external_id=training.id,
            fetch=self._client.trainings.get,
            cancel=self._client.trainings.cancel,
            extract=_extract_training,
            poll_interval=self._poll_interval,
        )

    async def submit_generation(self, weights_url: str, prompt: str, image_count: int) -> JobHandle:
        prediction = await _call(
            self._client.predictions.create,
            model=self._generation_model,
            input={
                "prompt": prompt,
                "lora_weights": weights_url,
                "num_outputs": image_count,
                "output_format": "png",
            },
        )
        logger.info("replicate.prediction_submitted", external_id=prediction.id)
        return ReplicateJobHandle(
            external_id=prediction.id,
            fetch=self._client.predictions.get,
            cancel=self._client.predictions.cancel,
            extract=_extract_generation,
            poll_interval=self._poll_interval,
        )

    async def upload_archive(self, data: bytes, filename: str) -> str:
        buffer = io.BytesIO(data)
        buffer.name = filename
        uploaded = await _call(self._client.files.create, buffer)
        url = uploaded.urls.get("get") if uploaded.urls else None
        if not url:
            raise ProviderPermanentError("Replicate file upload returned no URL")
        return url
