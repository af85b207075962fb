"""Job repository for PixMuse backend.

Provides data access methods for Job entities.
"""

from uuid import UUID

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pixmuse.models.job import Job, JobKind, JobStatus


class JobRepository:
    """Repository for Job entities.

    Jobs are written by the Job Runner and read by the query endpoints.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: Job) -> Job:
        """Persist new job to database.

        Args:
            job: Job entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> Job | None:
        result = await self.session.execute(select(Job).where(Job.id == job_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_for_account(self, job_id: UUID, account_id: UUID) -> Job | None:
        """Retrieve job by id, scoped to its owning account.

        Returns:
            Job if it exists and belongs to account_id, None otherwise
        """
        result = await self.session.execute(
            select(Job).where(Job.id == job_id, Job.account_id == account_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def list_for_account(
        self, account_id: UUID, limit: int = 50, offset: int = 0
    ) -> list[Job]:
        """List account's jobs, newest first."""
        result = await self.session.execute(
            select(Job)
            .where(Job.account_id == account_id)  # type: ignore[arg-type]
            .order_by(Job.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def has_active_training(self, account_id: UUID) -> bool:
        """Check whether the account has a pending or running training job.

        Jobs flagged for reconciliation count as active: their outcome is not
        settled yet.
        """
        result = await self.session.execute(
            select(
                exists().where(
                    Job.account_id == account_id,  # type: ignore[arg-type]
                    Job.kind == JobKind.TRAINING,  # type: ignore[arg-type]
                    Job.status.in_([JobStatus.PENDING, JobStatus.RUNNING]),  # type: ignore[attr-defined]
                )
            )
        )
        return bool(result.scalar())

    async def update_progress(self, job_id: UUID, percent: int) -> bool:
        """Raise stored progress for a running job.

        Query:
            UPDATE jobs SET progress = :percent
            WHERE id = :job_id AND status = 'running' AND progress < :percent

        The WHERE clause keeps stored progress non-decreasing even when
        updates race.

        Returns:
            True if progress was raised
        """
        result = await self.session.execute(
            update(Job)
            .where(
                Job.id == job_id,  # type: ignore[arg-type]
                Job.status == JobStatus.RUNNING,  # type: ignore[arg-type]
                Job.progress < percent,  # type: ignore[arg-type]
            )
            .values(progress=percent)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def list_orphaned(self) -> list[Job]:
        """Jobs left pending/running by a previous process and not awaiting reconciliation."""
        result = await self.session.execute(
            select(Job)
            .where(
                Job.status.in_([JobStatus.PENDING, JobStatus.RUNNING]),  # type: ignore[attr-defined]
                Job.needs_reconciliation.is_(False),  # type: ignore[attr-defined]
            )
            .order_by(Job.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def list_needing_reconciliation(self) -> list[Job]:
        result = await self.session.execute(
            select(Job)
            .where(Job.needs_reconciliation.is_(True))  # type: ignore[attr-defined]
            .order_by(Job.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())
