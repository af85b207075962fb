"""Job Runner: lifecycle of credit-gated training and generation jobs.

Workflow per job:
1. Validate input (before any Ledger interaction)
2. Reserve the fixed cost and create the job row in one transaction
   (pending -> running); no job exists if the reservation fails
3. Submit to the ExternalJobClient in a background task and relay progress
   to the ProgressBroadcaster
4. Succeeded: persist results, mark succeeded, commit the reservation (one transaction)
5. Failed / timed out: refund and mark failed (one transaction)

If results cannot be persisted after the provider succeeded, the job stays
running with needs_reconciliation set: the artifacts exist, so refunding
would hand them out for free.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Union
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from pixmuse.core.config import Settings
from pixmuse.models.job import FailureReason, Job, JobKind, JobStatus
from pixmuse.services.broadcaster import ProgressBroadcaster
from pixmuse.services.exceptions import (
    JobAlreadyInProgressError,
    JobNotFoundError,
    JobValidationError,
    ProviderError,
    ProviderTransientError,
    ResultPersistenceError,
)
from pixmuse.services.ledger import Ledger, Reservation
from pixmuse.services.providers.base import (
    ExternalJobClient,
    GenerationArtifacts,
    JobFailed,
    JobHandle,
    JobOutcome,
    JobSucceeded,
    ProgressUpdate,
    TrainingArtifacts,
)
from pixmuse.services.result_store import ResultStore
from pixmuse.services.validation import (
    validate_archive_url,
    validate_image_count,
    validate_prompt,
)
from pixmuse.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TrainingRequest:
    archive_url: str


@dataclass(frozen=True)
class GenerationRequest:
    model_id: UUID
    prompt: str
    image_count: int = 1


JobRequest = Union[TrainingRequest, GenerationRequest]
Submit = Callable[[], Awaitable[JobHandle]]


class JobRunner:
    """Starts jobs and drives each one to a settled state."""

    def __init__(
        self,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        job_client: ExternalJobClient,
        broadcaster: ProgressBroadcaster,
        settings: Settings,
        ledger: Ledger | None = None,
        result_store: ResultStore | None = None,
    ):
        self._uow_factory = uow_factory
        self._client = job_client
        self._broadcaster = broadcaster
        self._settings = settings
        self._ledger = ledger or Ledger()
        self._results = result_store or ResultStore()
        self._training_locks: dict[UUID, asyncio.Lock] = {}
        self._training_lock_users: dict[UUID, int] = {}
        self._broadcast_percent: dict[UUID, int] = {}
        self._tasks: dict[UUID, asyncio.Task] = {}

    # Pricing

    def cost_for(self, kind: JobKind, image_count: int = 1) -> int:
        if kind == JobKind.TRAINING:
            return self._settings.training_cost
        return self._settings.generation_cost_per_image * image_count

    def timeout_for(self, kind: JobKind) -> float:
        if kind == JobKind.TRAINING:
            return self._settings.training_timeout_seconds
        return self._settings.generation_timeout_seconds

    # Starting jobs

    async def start(self, account_id: UUID, request: JobRequest) -> UUID:
        """Start a job of the kind implied by request and return its id."""
        if isinstance(request, TrainingRequest):
            job = await self.start_training(account_id, request.archive_url)
        else:
            job = await self.start_generation(
                account_id, request.model_id, request.prompt, request.image_count
            )
        return job.id

    async def start_training(self, account_id: UUID, archive_url: str) -> Job:
        """Reserve the training cost and launch LoRA training.

        Raises:
            JobValidationError: If archive_url is malformed
            JobAlreadyInProgressError: If a training job is already active
            InsufficientCreditsError: If balance < training cost
        """
        archive_url = validate_archive_url(archive_url)
        cost = self.cost_for(JobKind.TRAINING)

        async with self._training_slot(account_id):
            async with await self._uow_factory() as uow:
                if await uow.jobs.has_active_training(account_id):
                    logger.info("job.rejected_in_progress", account_id=str(account_id))
                    raise JobAlreadyInProgressError(
                        "A training job is already in progress for this account"
                    )
                job, reservation = await self._create_job(
                    uow, account_id, JobKind.TRAINING, cost, input_ref=archive_url
                )

        self._launch(job, reservation, lambda: self._client.submit_training(archive_url))
        return job

    @asynccontextmanager
    async def _training_slot(self, account_id: UUID) -> AsyncIterator[None]:
        """Serialize the "no active training" check with the insert for one account.

        The lock is dropped once no caller holds or awaits it.
        """
        lock = self._training_locks.setdefault(account_id, asyncio.Lock())
        self._training_lock_users[account_id] = self._training_lock_users.get(account_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._training_lock_users[account_id] - 1
            if remaining:
                self._training_lock_users[account_id] = remaining
            else:
                del self._training_lock_users[account_id]
                del self._training_locks[account_id]

    async def start_generation(
        self, account_id: UUID, model_id: UUID, prompt: str, image_count: int = 1
    ) -> Job:
        """Reserve image_count * per-image cost and launch generation.

        Raises:
            JobValidationError: If prompt/image_count are invalid or the model
                does not belong to the account
            InsufficientCreditsError: If balance < cost
        """
        prompt = validate_prompt(prompt, self._settings.max_prompt_length)
        image_count = validate_image_count(image_count, self._settings.max_images_per_request)
        cost = self.cost_for(JobKind.GENERATION, image_count)

        async with await self._uow_factory() as uow:
            model = await uow.trained_models.get_for_account(model_id, account_id)
            if model is None:
                raise JobValidationError("Invalid model ID or unauthorized access")
            weights_url = model.weights_url
            job, reservation = await self._create_job(
                uow,
                account_id,
                JobKind.GENERATION,
                cost,
                input_ref=weights_url,
                model_id=model.id,
                prompt=prompt,
                image_count=image_count,
            )

        self._launch(
            job,
            reservation,
            lambda: self._client.submit_generation(weights_url, prompt, image_count),
        )
        return job

    async def _create_job(
        self,
        uow: UnitOfWork,
        account_id: UUID,
        kind: JobKind,
        cost: int,
        **job_input,
    ) -> tuple[Job, Reservation]:
        reservation = await self._ledger.reserve(uow, account_id, cost)
        job = await uow.jobs.add(Job(account_id=account_id, kind=kind, cost=cost, **job_input))
        reservation.job_id = job.id
        job.mark_running()
        logger.info(
            "job.created",
            job_id=str(job.id),
            account_id=str(account_id),
            kind=kind.value,
            cost=cost,
        )
        return job, reservation

    def _launch(self, job: Job, reservation: Reservation, submit: Submit) -> None:
        task = asyncio.create_task(self._execute(job.id, job.kind, reservation, submit))
        self._tasks[job.id] = task

        def on_done(finished: asyncio.Task, job_id: UUID = job.id) -> None:
            self._tasks.pop(job_id, None)
            self._broadcast_percent.pop(job_id, None)
            if finished.cancelled():
                logger.info("job.task_cancelled", job_id=str(job_id))
                return
            exc = finished.exception()
            if exc:
                logger.error(
                    "job.task_crashed",
                    job_id=str(job_id),
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=exc,
                )

        task.add_done_callback(on_done)

    # Execution

    async def _execute(
        self, job_id: UUID, kind: JobKind, reservation: Reservation, submit: Submit
    ) -> None:
        log = logger.bind(job_id=str(job_id), kind=kind.value, account_id=str(reservation.account_id))
        timeout = self.timeout_for(kind)
        handles: list[JobHandle] = []
        log.info("job.started", cost=reservation.amount, provider=self._client.name)

        try:
            outcome = await asyncio.wait_for(
                self._submit_and_wait(job_id, submit, handles), timeout=timeout
            )
        except asyncio.TimeoutError:
            log.warning("job.timed_out", timeout_seconds=timeout)
            if handles:
                try:
                    await handles[0].cancel()
                except Exception as e:
                    # The refund below must run even if the provider cannot be reached
                    log.error("job.cancel_failed", error=str(e), error_type=type(e).__name__)
            outcome = JobFailed(FailureReason.TIMEOUT, f"No result within {timeout} seconds")
        except ProviderError as e:
            reason = (
                FailureReason.TRANSPORT_ERROR
                if isinstance(e, ProviderTransientError)
                else FailureReason.PROVIDER_FAILURE
            )
            outcome = JobFailed(reason, str(e))
        except asyncio.CancelledError:
            # Job stays running; startup recovery refunds it
            log.warning("job.interrupted")
            raise
        except Exception as e:
            log.error("job.unexpected_error", error=str(e), error_type=type(e).__name__, exc_info=True)
            outcome = JobFailed(FailureReason.PROVIDER_FAILURE, f"Unexpected error: {e}")

        if isinstance(outcome, JobSucceeded):
            await self._settle_success(job_id, reservation, outcome)
        else:
            await self._settle_failure(job_id, reservation, outcome)

    async def _submit_and_wait(
        self, job_id: UUID, submit: Submit, handles: list[JobHandle]
    ) -> JobOutcome:
        handle = await submit()
        handles.append(handle)

        async with await self._uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            if job is not None:
                job.external_job_id = handle.external_id

        async def on_progress(update: ProgressUpdate) -> None:
            self._broadcaster.publish(job_id, update.percent, update.message)
            self._broadcast_percent[job_id] = max(
                update.percent, self._broadcast_percent.get(job_id, 0)
            )
            try:
                async with await self._uow_factory() as uow:
                    await uow.jobs.update_progress(job_id, update.percent)
            except SQLAlchemyError as e:
                # Progress is informational; the terminal status is what must persist
                logger.warning("job.progress_not_persisted", job_id=str(job_id), error=str(e))

        return await handle.wait(on_progress)

    async def _persist_results(
        self, uow: UnitOfWork, job: Job, artifacts: Union[TrainingArtifacts, GenerationArtifacts]
    ) -> dict:
        if isinstance(artifacts, TrainingArtifacts):
            model = await self._results.save_model(
                uow,
                job.account_id,
                weights_url=artifacts.weights_url,
                config_url=artifacts.config_url,
                training_data_url=job.input_ref,
                job_id=job.id,
            )
            return {"model_id": str(model.id), "model_name": model.name}

        if job.model_id is None or job.prompt is None:
            raise ValueError(f"Generation job {job.id} has no model or prompt")
        images = await self._results.save_generated_images(
            uow,
            job.account_id,
            job.model_id,
            job.prompt,
            list(artifacts.image_urls),
            job_id=job.id,
        )
        return {
            "image_ids": [str(image.id) for image in images],
            "image_urls": [image.image_url for image in images],
        }

    async def _settle_success(
        self, job_id: UUID, reservation: Reservation, outcome: JobSucceeded
    ) -> None:
        log = logger.bind(job_id=str(job_id), account_id=str(reservation.account_id))
        artifacts = outcome.artifacts

        if isinstance(artifacts, GenerationArtifacts) and not artifacts.image_urls:
            await self._settle_failure(
                job_id,
                reservation,
                JobFailed(FailureReason.INVALID_OUTPUT, "Provider returned no images"),
            )
            return

        try:
            async with await self._uow_factory() as uow:
                job = await uow.jobs.get_by_id(job_id)
                if job is None:
                    raise ResultPersistenceError(f"Job {job_id} disappeared before commit")
                result = await self._persist_results(uow, job, artifacts)
                if (
                    isinstance(artifacts, GenerationArtifacts)
                    and len(artifacts.image_urls) < job.image_count
                ):
                    # Charged per requested image; no proportional refund
                    log.warning(
                        "job.partial_output",
                        requested=job.image_count,
                        delivered=len(artifacts.image_urls),
                    )
                job.mark_succeeded(result)
        except Exception as e:
            await self._flag_for_reconciliation(job_id, artifacts, e)
            return

        self._ledger.commit(reservation)
        log.info("job.succeeded", result=result)
        self._broadcaster.publish_terminal(job_id, JobStatus.SUCCEEDED, 100, {"result": result})

    async def _settle_failure(
        self, job_id: UUID, reservation: Reservation, outcome: JobFailed
    ) -> None:
        log = logger.bind(job_id=str(job_id), account_id=str(reservation.account_id))
        if outcome.reason != FailureReason.TIMEOUT:
            log.warning("job.provider_failed", reason=outcome.reason.value, error=outcome.message)

        try:
            async with await self._uow_factory() as uow:
                job = await uow.jobs.get_by_id(job_id)
                if job is None:
                    raise JobNotFoundError(f"Job {job_id} disappeared before refund")
                await self._ledger.refund(uow, reservation)
                job.mark_failed(outcome.reason, outcome.message)
                progress = job.progress
        except Exception as e:
            await self._flag_for_reconciliation(job_id, None, e)
            return

        log.info("job.failed", reason=outcome.reason.value, refunded=reservation.amount)
        self._broadcaster.publish_terminal(
            job_id,
            JobStatus.FAILED,
            self._terminal_percent(job_id, progress),
            {"reason": outcome.reason.value, "error": "Job failed"},
        )

    def _terminal_percent(self, job_id: UUID, persisted: int) -> int:
        """Percent for the final event: never below what subscribers already saw."""
        return max(persisted, self._broadcast_percent.pop(job_id, 0))

    async def _flag_for_reconciliation(
        self,
        job_id: UUID,
        artifacts: Union[TrainingArtifacts, GenerationArtifacts, None],
        exc: Exception,
    ) -> None:
        logger.error(
            "job.commit_failed",
            job_id=str(job_id),
            needs_reconciliation=True,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=exc,
        )
        error_data: dict = {"error": str(exc), "error_type": type(exc).__name__}
        persisted = 0
        if isinstance(artifacts, TrainingArtifacts):
            error_data["artifacts"] = {
                "weights_url": artifacts.weights_url,
                "config_url": artifacts.config_url,
            }
        elif isinstance(artifacts, GenerationArtifacts):
            error_data["artifacts"] = {"image_urls": list(artifacts.image_urls)}

        try:
            async with await self._uow_factory() as uow:
                job = await uow.jobs.get_by_id(job_id)
                if job is not None:
                    persisted = job.progress
                    if job.status == JobStatus.RUNNING:
                        job.flag_for_reconciliation(error_data)
        except Exception as flag_exc:
            logger.critical(
                "job.reconciliation_flag_failed",
                job_id=str(job_id),
                error=str(flag_exc),
                error_data=error_data,
            )

        self._broadcaster.publish_terminal(
            job_id,
            JobStatus.RUNNING,
            self._terminal_percent(job_id, persisted),
            {"error": "reconciliation_required", "needs_reconciliation": True, "status_code": 500},
        )

    # Operations

    async def recover_orphaned_jobs(self) -> int:
        """Fail and refund jobs a previous process left pending/running.

        Must run at startup before new jobs are accepted. Jobs flagged for
        reconciliation are left alone.

        Returns:
            Number of jobs recovered
        """
        async with await self._uow_factory() as uow:
            jobs = await uow.jobs.list_orphaned()
            for job in jobs:
                await self._ledger.refund(uow, Reservation(job.account_id, job.cost, job.id))
                job.mark_failed(
                    FailureReason.INTERRUPTED, "Server restarted before the job finished"
                )

        if jobs:
            logger.info("job.orphans_recovered", refunded=len(jobs))
        return len(jobs)

    async def resolve_succeeded(self, job_id: UUID) -> Job:
        """Settle a flagged job as succeeded; the charge stays debited.

        Artifacts recorded when the commit failed are persisted first. A job
        flagged without artifacts is marked succeeded as-is.

        Raises:
            JobNotFoundError: If the job does not exist
            ValueError: If the job is not flagged for reconciliation
        """
        async with await self._uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if not job.needs_reconciliation:
                raise ValueError(f"Job {job_id} is not flagged for reconciliation")
            recorded = (job.error_data or {}).get("artifacts")
            result: dict = {"resolved": "manual"}
            if recorded:
                artifacts: Union[TrainingArtifacts, GenerationArtifacts]
                if job.kind == JobKind.TRAINING:
                    artifacts = TrainingArtifacts(
                        weights_url=recorded["weights_url"], config_url=recorded["config_url"]
                    )
                else:
                    artifacts = GenerationArtifacts(image_urls=tuple(recorded["image_urls"]))
                result = await self._persist_results(uow, job, artifacts)

            job.mark_succeeded(result)
            self._ledger.commit(Reservation(job.account_id, job.cost, job.id))

        logger.info("job.reconciled", job_id=str(job_id), resolution="succeeded")
        return job

    async def resolve_refund(self, job_id: UUID) -> Job:
        """Refund a flagged job and mark it failed.

        Raises:
            JobNotFoundError: If the job does not exist
            ValueError: If the job is not flagged for reconciliation
        """
        async with await self._uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if not job.needs_reconciliation:
                raise ValueError(f"Job {job_id} is not flagged for reconciliation")
            await self._ledger.refund(uow, Reservation(job.account_id, job.cost, job.id))
            job.mark_failed(FailureReason.PROVIDER_FAILURE, "Refunded during manual reconciliation")

        logger.info("job.reconciled", job_id=str(job_id), resolution="refunded")
        return job

    @property
    def active_job_ids(self) -> list[UUID]:
        return list(self._tasks)

    async def wait_for(self, job_id: UUID) -> None:
        """Wait until the background task of job_id (if any) has settled."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight jobs; they are refunded by recovery on next start."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("job_runner.stopped", cancelled=len(tasks))
