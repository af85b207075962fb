"""PaymentEvent repository for PixMuse backend.

Provides duplicate detection for payment provider events.
"""

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from pixmuse.models.payment_event import PaymentEvent


class PaymentEventRepository:
    """Repository for PaymentEvent entities.

    Provides duplicate detection to prevent crediting the same payment twice.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, event: PaymentEvent) -> PaymentEvent:
        self.session.add(event)
        await self.session.flush()
        return event

    async def exists(self, event_id: str) -> bool:
        """Check if a payment event was already processed.

        Args:
            event_id: Payment provider's event identifier

        Returns:
            True if event exists, False otherwise
        """
        result = await self.session.execute(
            select(exists().where(PaymentEvent.event_id == event_id))  # type: ignore[arg-type]
        )
        return bool(result.scalar())
