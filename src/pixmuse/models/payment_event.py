"""PaymentEvent entity - processed payment provider events (credit idempotency)."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from pixmuse.core.timezone import utcnow


class PaymentEvent(SQLModel, table=True):
    """Records each payment event id once so credits are granted at most once."""

    __tablename__ = "payment_events"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    event_id: str = Field(max_length=255, unique=True, index=True)
    account_id: UUID = Field(foreign_key="accounts.id", index=True)
    credits: int = Field(gt=0)
    created_at: datetime = Field(default_factory=utcnow)
