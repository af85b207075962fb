"""pytest fixtures for PixMuse backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- engine: Function-scoped SQLite database (file in tmp_path) with all tables
- session / uow_factory: Database access for the test
- settings: Test settings (short timeouts, webhook secret)
- job_client: Scripted provider whose progress and outcome tests control
- broadcaster / job_runner: Wired the same way the app lifespan wires them
- app / client: FastAPI app with app.state injected, httpx AsyncClient over ASGI
"""

import asyncio
import os
from typing import AsyncGenerator
from uuid import UUID

os.environ["APP_ENV"] = "test"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlmodel import SQLModel

from pixmuse import models  # noqa: F401
from pixmuse.core.config import Settings
from pixmuse.core.database import create_session_factory
from pixmuse.models.account import Account
from pixmuse.services.broadcaster import ProgressBroadcaster
from pixmuse.services.exceptions import ProviderError
from pixmuse.services.job_runner import JobRunner
from pixmuse.services.providers.base import (
    ExternalJobClient,
    GenerationArtifacts,
    JobHandle,
    JobOutcome,
    JobSucceeded,
    Reporter,
    TrainingArtifacts,
)
from pixmuse.services.result_store import ResultStore
from pixmuse.uow import create_uow_factory

WEBHOOK_SECRET = "whsec_test_secret"


class ScriptedJobHandle(JobHandle):
    """Reports a fixed list of percentages, then returns a fixed outcome.

    gate (if set) is awaited before the outcome so a test can hold the job
    in the running state; hang never returns (timeout tests); cancel_error is
    raised from cancel() after the cancellation is recorded.
    """

    def __init__(
        self,
        external_id: str,
        progress: list[int],
        outcome: JobOutcome,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
        hang: bool = False,
        cancel_error: Exception | None = None,
    ):
        super().__init__(external_id)
        self._cancel_error = cancel_error
        self._progress = progress
        self._result = outcome
        self._error = error
        self._gate = gate
        self._hang = hang
        self.cancelled = False

    async def _observe(self, report: Reporter) -> JobOutcome:
        for percent in self._progress:
            await report(percent, f"{percent}%")
            await asyncio.sleep(0)
        if self._gate is not None:
            await self._gate.wait()
        if self._hang:
            await asyncio.Event().wait()
        if self._error is not None:
            raise self._error
        return self._result

    async def cancel(self) -> None:
        self.cancelled = True
        if self._cancel_error is not None:
            raise self._cancel_error


class ScriptedJobClient(ExternalJobClient):
    """Test double for the provider; every knob is a plain attribute."""

    name = "scripted"

    def __init__(self):
        self.progress: list[int] = [25, 50, 75, 100]
        self.training_outcome: JobOutcome | None = None
        self.generation_outcome: JobOutcome | None = None
        self.submit_error: ProviderError | None = None
        self.observe_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.hang = False
        self.cancel_error: Exception | None = None
        self.handles: list[ScriptedJobHandle] = []
        self.submissions: list[tuple] = []
        self.uploads: list[tuple[str, int]] = []

    def _handle(self, outcome: JobOutcome) -> ScriptedJobHandle:
        if self.submit_error is not None:
            raise self.submit_error
        handle = ScriptedJobHandle(
            external_id=f"scripted-{len(self.handles) + 1}",
            progress=list(self.progress),
            outcome=outcome,
            error=self.observe_error,
            gate=self.gate,
            hang=self.hang,
            cancel_error=self.cancel_error,
        )
        self.handles.append(handle)
        return handle

    async def submit_training(self, archive_url: str) -> JobHandle:
        self.submissions.append(("training", archive_url))
        outcome = self.training_outcome or JobSucceeded(
            TrainingArtifacts(
                weights_url=f"https://files.test/lora-{len(self.handles) + 1}.safetensors",
                config_url=f"https://files.test/config-{len(self.handles) + 1}.json",
            )
        )
        return self._handle(outcome)

    async def submit_generation(self, weights_url: str, prompt: str, image_count: int) -> JobHandle:
        self.submissions.append(("generation", weights_url, prompt, image_count))
        outcome = self.generation_outcome or JobSucceeded(
            GenerationArtifacts(
                image_urls=tuple(f"https://files.test/image-{i}.png" for i in range(image_count))
            )
        )
        return self._handle(outcome)

    async def upload_archive(self, data: bytes, filename: str) -> str:
        self.uploads.append((filename, len(data)))
        return f"https://files.test/{filename}"


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Provide a fresh SQLite database with all tables created.

    Every transaction starts with BEGIN IMMEDIATE so concurrent units of
    work queue on the write lock instead of failing with "database is locked".
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pixmuse.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a session for direct repository tests (commit before other writers run)."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        APP_ENV="test",
        TRAINING_COST=20,
        GENERATION_COST_PER_IMAGE=1,
        MAX_IMAGES_PER_REQUEST=4,
        TRAINING_TIMEOUT_SECONDS=5,
        GENERATION_TIMEOUT_SECONDS=5,
        PROGRESS_HEARTBEAT_SECONDS=0.2,
        PAYMENT_WEBHOOK_SECRET=WEBHOOK_SECRET,
        UPLOAD_MAX_PHOTO_BYTES=1024,
    )


@pytest.fixture
def job_client() -> ScriptedJobClient:
    return ScriptedJobClient()


@pytest.fixture
def broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster()


@pytest_asyncio.fixture(scope="function")
async def job_runner(uow_factory, job_client, broadcaster, settings):
    runner = JobRunner(
        uow_factory=uow_factory,
        job_client=job_client,
        broadcaster=broadcaster,
        settings=settings,
    )
    yield runner
    # Release anything a test left waiting on the gate before the database goes away
    await runner.shutdown()


@pytest.fixture
def make_account(uow_factory):
    """Create an account with the given balance and return its id."""

    async def _make_account(balance: int = 0, email: str | None = None) -> UUID:
        async with await uow_factory() as uow:
            account = await uow.accounts.add(
                Account(email=email or f"user-{os.urandom(4).hex()}@example.com", balance=balance)
            )
            return account.id

    return _make_account


@pytest.fixture
def get_balance(uow_factory):
    async def _get_balance(account_id: UUID) -> int | None:
        async with await uow_factory() as uow:
            return await uow.accounts.get_balance(account_id)

    return _get_balance


@pytest_asyncio.fixture(scope="function")
async def app(settings, session_factory, uow_factory, job_client, broadcaster, job_runner):
    from pixmuse.app import create_app

    app = create_app(settings)
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.job_client = job_client
    app.state.broadcaster = broadcaster
    app.state.result_store = ResultStore()
    app.state.job_runner = job_runner
    return app


@pytest_asyncio.fixture(scope="function")
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
