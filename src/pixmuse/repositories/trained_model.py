"""TrainedModel repository for PixMuse backend.

Provides data access methods for TrainedModel entities and the per-account
sequence numbering.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pixmuse.models.trained_model import TrainedModel


class TrainedModelRepository:
    """Repository for TrainedModel entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, model: TrainedModel) -> TrainedModel:
        self.session.add(model)
        await self.session.flush()
        return model

    async def next_sequence_number(self, account_id: UUID) -> int:
        """Next sequence number for account: MAX(sequence_number) + 1.

        Numbering is derived from persisted rows only, so failed trainings
        never consume a number, and numbers below the maximum are never reused.
        """
        result = await self.session.execute(
            select(func.coalesce(func.max(TrainedModel.sequence_number), 0)).where(
                TrainedModel.account_id == account_id  # type: ignore[arg-type]
            )
        )
        return int(result.scalar_one()) + 1

    async def get_for_account(self, model_id: UUID, account_id: UUID) -> TrainedModel | None:
        result = await self.session.execute(
            select(TrainedModel).where(
                TrainedModel.id == model_id,  # type: ignore[arg-type]
                TrainedModel.account_id == account_id,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def list_for_account(self, account_id: UUID) -> list[TrainedModel]:
        """List account's models, newest first."""
        result = await self.session.execute(
            select(TrainedModel)
            .where(TrainedModel.account_id == account_id)  # type: ignore[arg-type]
            .order_by(
                TrainedModel.created_at.desc(),  # type: ignore[attr-defined]
                TrainedModel.sequence_number.desc(),  # type: ignore[attr-defined]
            )
        )
        return list(result.scalars().all())
