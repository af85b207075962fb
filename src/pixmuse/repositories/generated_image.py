"""GeneratedImage repository for PixMuse backend."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pixmuse.models.generated_image import GeneratedImage
from pixmuse.models.trained_model import TrainedModel


class GeneratedImageRepository:
    """Repository for GeneratedImage entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add_many(self, images: list[GeneratedImage]) -> list[GeneratedImage]:
        """Persist images in the current transaction (all or nothing at commit)."""
        self.session.add_all(images)
        await self.session.flush()
        return images

    async def list_for_account(self, account_id: UUID) -> list[tuple[GeneratedImage, str | None]]:
        """List account's images with the generating model's name, newest first.

        Returns:
            List of (image, model_name) tuples
        """
        result = await self.session.execute(
            select(GeneratedImage, TrainedModel.name)
            .outerjoin(TrainedModel, GeneratedImage.model_id == TrainedModel.id)  # type: ignore[arg-type]
            .where(GeneratedImage.account_id == account_id)  # type: ignore[arg-type]
            .order_by(GeneratedImage.created_at.desc())  # type: ignore[attr-defined]
        )
        return [(row[0], row[1]) for row in result.all()]
