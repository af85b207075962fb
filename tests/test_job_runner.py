"""Job Runner tests.

Drives the runner with the scripted provider from conftest and checks the
ledger/job/result invariants after each job settles:
- Succeeded: results persisted, reservation stays debited
- Failed / timed out: balance restored exactly, no results
- Commit-phase failure: job left running and flagged, funds untouched
"""

import asyncio
from uuid import UUID, uuid4

import pytest

from pixmuse.models.job import FailureReason, Job, JobKind, JobStatus
from pixmuse.services.exceptions import (
    InsufficientCreditsError,
    JobAlreadyInProgressError,
    JobValidationError,
    ProviderPermanentError,
    ProviderTransientError,
)
from pixmuse.services.job_runner import GenerationRequest, JobRunner, TrainingRequest
from pixmuse.services.providers.base import GenerationArtifacts, JobFailed, JobSucceeded
from pixmuse.services.result_store import ResultStore

ARCHIVE_URL = "https://files.test/training_photos.zip"


async def load_job(uow_factory, job_id: UUID) -> Job:
    async with await uow_factory() as uow:
        job = await uow.jobs.get_by_id(job_id)
    assert job is not None
    return job


async def create_model(uow_factory, account_id: UUID):
    async with await uow_factory() as uow:
        return await ResultStore().save_model(
            uow,
            account_id,
            weights_url="https://files.test/existing.safetensors",
            config_url="https://files.test/existing.json",
        )


async def list_model_names(uow_factory, account_id: UUID) -> list[str]:
    async with await uow_factory() as uow:
        models = await uow.trained_models.list_for_account(account_id)
    return [model.name for model in models]


class FailingResultStore(ResultStore):
    """Provider succeeded but the database write for results fails."""

    async def save_model(self, *args, **kwargs):
        raise RuntimeError("disk full")

    async def save_generated_images(self, *args, **kwargs):
        raise RuntimeError("disk full")


# Training


@pytest.mark.asyncio
async def test_training_success_creates_model_and_keeps_charge(
    job_runner, uow_factory, make_account, get_balance, broadcaster
):
    """25 credits, training costs 20: balance 5 and a model named model1."""
    account_id = await make_account(balance=25)

    job = await job_runner.start_training(account_id, ARCHIVE_URL)
    assert job.status == JobStatus.RUNNING
    assert job.cost == 20
    assert await get_balance(account_id) == 5

    subscription = broadcaster.subscribe(job.id)
    events = [event async for event in subscription]
    subscription.close()
    await job_runner.wait_for(job.id)

    assert [e.percent for e in events if not e.terminal] == [25, 50, 75, 100]
    assert events[-1].terminal
    assert events[-1].status == JobStatus.SUCCEEDED

    stored = await load_job(uow_factory, job.id)
    assert stored.status == JobStatus.SUCCEEDED
    assert stored.progress == 100
    assert stored.external_job_id == "scripted-1"
    assert stored.result_data["model_name"] == "model1"
    assert await get_balance(account_id) == 5
    assert await list_model_names(uow_factory, account_id) == ["model1"]


@pytest.mark.asyncio
async def test_training_insufficient_credits_creates_no_job(
    job_runner, job_client, uow_factory, make_account, get_balance
):
    account_id = await make_account(balance=5)

    with pytest.raises(InsufficientCreditsError):
        await job_runner.start_training(account_id, ARCHIVE_URL)

    assert await get_balance(account_id) == 5
    assert job_client.submissions == []
    async with await uow_factory() as uow:
        assert await uow.jobs.list_for_account(account_id) == []


@pytest.mark.asyncio
async def test_training_rejects_malformed_archive_url(job_runner, make_account, get_balance):
    account_id = await make_account(balance=25)

    with pytest.raises(JobValidationError):
        await job_runner.start_training(account_id, "not-a-url")

    assert await get_balance(account_id) == 25


@pytest.mark.asyncio
async def test_concurrent_training_only_one_accepted(
    job_runner, job_client, uow_factory, make_account, get_balance
):
    account_id = await make_account(balance=100)
    job_client.gate = asyncio.Event()

    results = await asyncio.gather(
        job_runner.start_training(account_id, ARCHIVE_URL),
        job_runner.start_training(account_id, ARCHIVE_URL),
        return_exceptions=True,
    )

    started = [r for r in results if isinstance(r, Job)]
    rejected = [r for r in results if isinstance(r, JobAlreadyInProgressError)]
    assert len(started) == 1
    assert len(rejected) == 1
    assert await get_balance(account_id) == 80

    job_client.gate.set()
    await job_runner.wait_for(started[0].id)

    # Once settled, the next training is accepted
    second = await job_runner.start_training(account_id, ARCHIVE_URL)
    await job_runner.wait_for(second.id)
    assert (await load_job(uow_factory, second.id)).status == JobStatus.SUCCEEDED
    assert await get_balance(account_id) == 60


@pytest.mark.asyncio
async def test_training_locks_released_after_start(job_runner, job_client, make_account):
    """Per-account locks live only while a start is in flight, rejected or not."""
    job_client.gate = asyncio.Event()
    accounts = [await make_account(balance=100) for _ in range(5)]

    jobs = await asyncio.gather(
        *(job_runner.start_training(account_id, ARCHIVE_URL) for account_id in accounts)
    )
    retries = await asyncio.gather(
        job_runner.start_training(accounts[0], ARCHIVE_URL),
        job_runner.start_training(accounts[0], ARCHIVE_URL),
        return_exceptions=True,
    )
    assert all(isinstance(r, JobAlreadyInProgressError) for r in retries)
    assert job_runner._training_locks == {}

    job_client.gate.set()
    for job in jobs:
        await job_runner.wait_for(job.id)

    assert job_runner._training_locks == {}
    assert job_runner._training_lock_users == {}
    assert job_runner._broadcast_percent == {}


@pytest.mark.asyncio
async def test_failed_training_does_not_consume_model_number(
    job_runner, job_client, uow_factory, make_account
):
    """model1, model2, a failed attempt, then model3."""
    account_id = await make_account(balance=100)

    for outcome in (None, None, JobFailed(FailureReason.PROVIDER_FAILURE, "bad photos"), None):
        job_client.training_outcome = outcome
        job = await job_runner.start_training(account_id, ARCHIVE_URL)
        await job_runner.wait_for(job.id)

    assert await list_model_names(uow_factory, account_id) == ["model3", "model2", "model1"]


# Generation


@pytest.mark.asyncio
async def test_generation_charges_per_image(
    job_runner, job_client, uow_factory, make_account, get_balance
):
    account_id = await make_account(balance=10)
    model = await create_model(uow_factory, account_id)

    job = await job_runner.start_generation(account_id, model.id, "a castle at dusk", 3)
    assert job.cost == 3
    assert await get_balance(account_id) == 7

    await job_runner.wait_for(job.id)

    assert job_client.submissions[-1] == (
        "generation",
        model.weights_url,
        "a castle at dusk",
        3,
    )
    async with await uow_factory() as uow:
        rows = await uow.generated_images.list_for_account(account_id)
    assert len(rows) == 3
    assert all(name == model.name for _, name in rows)
    assert await get_balance(account_id) == 7


@pytest.mark.asyncio
async def test_generation_partial_output_is_not_refunded(
    job_runner, job_client, uow_factory, make_account, get_balance
):
    """Requested 3, provider delivered 2: two rows, full charge kept."""
    account_id = await make_account(balance=10)
    model = await create_model(uow_factory, account_id)
    job_client.generation_outcome = JobSucceeded(
        GenerationArtifacts(image_urls=("https://files.test/a.png", "https://files.test/b.png"))
    )

    job = await job_runner.start_generation(account_id, model.id, "portrait", 3)
    await job_runner.wait_for(job.id)

    stored = await load_job(uow_factory, job.id)
    assert stored.status == JobStatus.SUCCEEDED
    assert len(stored.result_data["image_ids"]) == 2
    assert await get_balance(account_id) == 7


@pytest.mark.asyncio
async def test_generation_with_no_images_is_refunded(
    job_runner, job_client, uow_factory, make_account, get_balance
):
    account_id = await make_account(balance=10)
    model = await create_model(uow_factory, account_id)
    job_client.generation_outcome = JobSucceeded(GenerationArtifacts(image_urls=()))

    job = await job_runner.start_generation(account_id, model.id, "portrait", 2)
    await job_runner.wait_for(job.id)

    stored = await load_job(uow_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.failure_reason == FailureReason.INVALID_OUTPUT
    assert await get_balance(account_id) == 10


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "prompt,image_count",
    [("", 1), ("   ", 1), ("x" * 1001, 1), ("portrait", 0), ("portrait", 5)],
)
async def test_generation_validation_happens_before_ledger(
    job_runner, uow_factory, make_account, get_balance, prompt, image_count
):
    account_id = await make_account(balance=10)
    model = await create_model(uow_factory, account_id)

    with pytest.raises(JobValidationError):
        await job_runner.start_generation(account_id, model.id, prompt, image_count)

    assert await get_balance(account_id) == 10


@pytest.mark.asyncio
async def test_generation_rejects_model_of_other_account(
    job_runner, uow_factory, make_account, get_balance
):
    owner_id = await make_account(balance=10)
    other_id = await make_account(balance=10)
    model = await create_model(uow_factory, owner_id)

    with pytest.raises(JobValidationError, match="Invalid model ID"):
        await job_runner.start_generation(other_id, model.id, "portrait", 1)
    with pytest.raises(JobValidationError):
        await job_runner.start_generation(other_id, uuid4(), "portrait", 1)

    assert await get_balance(other_id) == 10


# Failures


@pytest.mark.asyncio
async def test_provider_failure_refunds_and_publishes_terminal(
    job_runner, job_client, uow_factory, make_account, get_balance, broadcaster
):
    account_id = await make_account(balance=10)
    model = await create_model(uow_factory, account_id)
    job_client.generation_outcome = JobFailed(FailureReason.PROVIDER_FAILURE, "nsfw detected")

    job = await job_runner.start_generation(account_id, model.id, "portrait", 3)
    subscription = broadcaster.subscribe(job.id)
    events = [event async for event in subscription]
    subscription.close()
    await job_runner.wait_for(job.id)

    terminal = events[-1]
    assert terminal.status == JobStatus.FAILED
    assert terminal.detail["reason"] == "provider_failure"

    stored = await load_job(uow_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.failure_reason == FailureReason.PROVIDER_FAILURE
    assert await get_balance(account_id) == 10
    async with await uow_factory() as uow:
        assert await uow.generated_images.list_for_account(account_id) == []


@pytest.mark.asyncio
async def test_submit_error_refunds(job_runner, job_client, uow_factory, make_account, get_balance):
    account_id = await make_account(balance=25)
    job_client.submit_error = ProviderPermanentError("Authentication failed: 401")

    job = await job_runner.start_training(account_id, ARCHIVE_URL)
    await job_runner.wait_for(job.id)

    stored = await load_job(uow_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.failure_reason == FailureReason.PROVIDER_FAILURE
    assert await get_balance(account_id) == 25


@pytest.mark.asyncio
async def test_dropped_connection_is_transport_error(
    job_runner, job_client, uow_factory, make_account, get_balance
):
    account_id = await make_account(balance=25)
    job_client.observe_error = ProviderTransientError("Connection error: reset by peer")

    job = await job_runner.start_training(account_id, ARCHIVE_URL)
    await job_runner.wait_for(job.id)

    stored = await load_job(uow_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.failure_reason == FailureReason.TRANSPORT_ERROR
    assert await get_balance(account_id) == 25


@pytest.mark.asyncio
async def test_unexpected_handle_error_refunds(
    job_runner, job_client, uow_factory, make_account, get_balance
):
    account_id = await make_account(balance=25)
    job_client.observe_error = RuntimeError("unexpected payload")

    job = await job_runner.start_training(account_id, ARCHIVE_URL)
    await job_runner.wait_for(job.id)

    stored = await load_job(uow_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert await get_balance(account_id) == 25


@pytest.mark.asyncio
async def test_timeout_refunds_and_cancels_provider_job(
    job_client, uow_factory, broadcaster, settings, make_account, get_balance
):
    runner = JobRunner(
        uow_factory=uow_factory,
        job_client=job_client,
        broadcaster=broadcaster,
        settings=settings.model_copy(update={"generation_timeout_seconds": 0.2}),
    )
    account_id = await make_account(balance=10)
    model = await create_model(uow_factory, account_id)
    job_client.hang = True

    job = await runner.start_generation(account_id, model.id, "portrait", 2)
    await runner.wait_for(job.id)

    stored = await load_job(uow_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.failure_reason == FailureReason.TIMEOUT
    assert job_client.handles[0].cancelled is True
    assert await get_balance(account_id) == 10


@pytest.mark.asyncio
async def test_timeout_refunds_even_if_provider_cancel_fails(
    job_client, uow_factory, broadcaster, settings, make_account, get_balance
):
    runner = JobRunner(
        uow_factory=uow_factory,
        job_client=job_client,
        broadcaster=broadcaster,
        settings=settings.model_copy(update={"generation_timeout_seconds": 0.2}),
    )
    account_id = await make_account(balance=10)
    model = await create_model(uow_factory, account_id)
    job_client.hang = True
    job_client.cancel_error = RuntimeError("provider unreachable")

    job = await runner.start_generation(account_id, model.id, "portrait", 2)
    await runner.wait_for(job.id)

    stored = await load_job(uow_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.failure_reason == FailureReason.TIMEOUT
    assert job_client.handles[0].cancelled is True
    assert await get_balance(account_id) == 10


# Commit-phase failure and reconciliation


@pytest.fixture
def failing_runner(uow_factory, job_client, broadcaster, settings):
    return JobRunner(
        uow_factory=uow_factory,
        job_client=job_client,
        broadcaster=broadcaster,
        settings=settings,
        result_store=FailingResultStore(),
    )


@pytest.mark.asyncio
async def test_commit_failure_flags_job_without_refund(
    failing_runner, uow_factory, make_account, get_balance, broadcaster
):
    account_id = await make_account(balance=25)

    job = await failing_runner.start_training(account_id, ARCHIVE_URL)
    subscription = broadcaster.subscribe(job.id)
    events = [event async for event in subscription]
    subscription.close()
    await failing_runner.wait_for(job.id)

    assert events[-1].terminal
    assert events[-1].detail["needs_reconciliation"] is True
    percents = [event.percent for event in events]
    assert percents == sorted(percents)
    assert percents[-1] == 100

    stored = await load_job(uow_factory, job.id)
    assert stored.status == JobStatus.RUNNING
    assert stored.needs_reconciliation is True
    assert stored.error_data["artifacts"]["weights_url"].startswith("https://files.test/")
    assert await get_balance(account_id) == 5
    assert await list_model_names(uow_factory, account_id) == []

    # Not orphaned: startup recovery leaves it for an operator
    assert await failing_runner.recover_orphaned_jobs() == 0

    # Still counts as an active training
    with pytest.raises(JobAlreadyInProgressError):
        await failing_runner.start_training(account_id, ARCHIVE_URL)


@pytest.mark.asyncio
async def test_resolve_succeeded_persists_recorded_artifacts(
    failing_runner, job_runner, uow_factory, make_account, get_balance
):
    account_id = await make_account(balance=25)
    job = await failing_runner.start_training(account_id, ARCHIVE_URL)
    await failing_runner.wait_for(job.id)

    resolved = await job_runner.resolve_succeeded(job.id)

    assert resolved.status == JobStatus.SUCCEEDED
    assert await list_model_names(uow_factory, account_id) == ["model1"]
    assert await get_balance(account_id) == 5


@pytest.mark.asyncio
async def test_resolve_refund_returns_credits(
    failing_runner, job_runner, uow_factory, make_account, get_balance
):
    account_id = await make_account(balance=10)
    model = await create_model(uow_factory, account_id)
    job = await failing_runner.start_generation(account_id, model.id, "portrait", 4)
    await failing_runner.wait_for(job.id)
    assert await get_balance(account_id) == 6

    resolved = await job_runner.resolve_refund(job.id)

    assert resolved.status == JobStatus.FAILED
    assert await get_balance(account_id) == 10

    with pytest.raises(ValueError, match="not flagged"):
        await job_runner.resolve_refund(job.id)


# Startup recovery and dispatch


@pytest.mark.asyncio
async def test_recover_orphaned_jobs_refunds(job_runner, uow_factory, make_account, get_balance):
    """A job left running by a dead process is failed and its reservation returned."""
    account_id = await make_account(balance=5)
    async with await uow_factory() as uow:
        orphan = await uow.jobs.add(
            Job(account_id=account_id, kind=JobKind.TRAINING, cost=20, input_ref=ARCHIVE_URL)
        )
        orphan.mark_running()
        orphan_id = orphan.id

    recovered = await job_runner.recover_orphaned_jobs()

    assert recovered == 1
    stored = await load_job(uow_factory, orphan_id)
    assert stored.status == JobStatus.FAILED
    assert stored.failure_reason == FailureReason.INTERRUPTED
    assert await get_balance(account_id) == 25


@pytest.mark.asyncio
async def test_start_dispatches_on_request_type(job_runner, uow_factory, make_account):
    account_id = await make_account(balance=30)

    training_id = await job_runner.start(account_id, TrainingRequest(archive_url=ARCHIVE_URL))
    await job_runner.wait_for(training_id)
    model_id = UUID((await load_job(uow_factory, training_id)).result_data["model_id"])

    generation_id = await job_runner.start(
        account_id, GenerationRequest(model_id=model_id, prompt="TOK on a beach", image_count=2)
    )
    await job_runner.wait_for(generation_id)

    generation = await load_job(uow_factory, generation_id)
    assert generation.kind == JobKind.GENERATION
    assert generation.status == JobStatus.SUCCEEDED
    assert generation.cost == 2
