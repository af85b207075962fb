"""Job entity - one invocation of the external training/generation provider."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from pixmuse.core.timezone import utcnow


class JobKind(str, Enum):
    """What the provider is asked to do."""

    TRAINING = "training"
    GENERATION = "generation"


class JobStatus(str, Enum):
    """Job lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a job ended in the failed state."""

    PROVIDER_FAILURE = "provider_failure"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"
    INTERRUPTED = "interrupted"
    INVALID_OUTPUT = "invalid_output"


TERMINAL_STATUSES = (JobStatus.SUCCEEDED, JobStatus.FAILED)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


class Job(SQLModel, table=True):
    """Job tracks one provider invocation from reservation to settlement.

    Lifecycle: pending -> running -> succeeded | failed. Terminal states are
    immutable. A job whose results could not be persisted after the provider
    succeeded stays running with needs_reconciliation set.
    """

    __tablename__ = "jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: UUID = Field(foreign_key="accounts.id", index=True)
    kind: JobKind = Field(index=True)
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    cost: int = Field(ge=0)
    progress: int = Field(default=0, ge=0, le=100)

    # Inputs: archive URL for training, model + prompt for generation
    input_ref: str
    model_id: Optional[UUID] = Field(default=None, foreign_key="trained_models.id")
    prompt: Optional[str] = Field(default=None)
    image_count: int = Field(default=1, ge=1)

    external_job_id: Optional[str] = Field(default=None, max_length=255)
    failure_reason: Optional[FailureReason] = Field(default=None)
    error_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    needs_reconciliation: bool = Field(default=False, index=True)
    result_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_running(self) -> None:
        """Transition from pending to running.

        Raises:
            InvalidStateTransition: If current status is not pending
        """
        if self.status != JobStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot mark running from {self.status.value}. Job must be in pending state."
            )
        self.status = JobStatus.RUNNING

    def record_progress(self, percent: int) -> bool:
        """Raise progress to percent; lower values are ignored.

        Returns:
            True if the stored progress changed
        """
        if self.status != JobStatus.RUNNING:
            return False
        percent = max(0, min(100, percent))
        if percent <= self.progress:
            return False
        self.progress = percent
        return True

    def mark_succeeded(self, result_data: dict) -> None:
        """Transition from running to succeeded.

        Args:
            result_data: Ids of the persisted results (model or images)

        Raises:
            InvalidStateTransition: If current status is not running
        """
        if self.status != JobStatus.RUNNING:
            raise InvalidStateTransition(
                f"Cannot mark succeeded from {self.status.value}. Job must be in running state."
            )
        self.status = JobStatus.SUCCEEDED
        self.progress = 100
        self.result_data = result_data
        self.needs_reconciliation = False
        self.completed_at = utcnow()

    def mark_failed(self, reason: FailureReason, message: str) -> None:
        """Transition from any non-terminal state to failed.

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        self.status = JobStatus.FAILED
        self.failure_reason = reason
        self.error_data = {"reason": reason.value, "message": message}
        self.needs_reconciliation = False
        self.completed_at = utcnow()

    def flag_for_reconciliation(self, error_dict: dict) -> None:
        """Keep the job running but mark it for manual settlement.

        Used when the provider produced artifacts but they could not be
        persisted; the reservation is neither committed nor refunded.
        """
        if self.status != JobStatus.RUNNING:
            raise InvalidStateTransition(
                f"Cannot flag {self.status.value} job for reconciliation. "
                "Job must be in running state."
            )
        self.needs_reconciliation = True
        self.error_data = error_dict
