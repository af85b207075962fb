"""TrainedModel entity - result of a successful training job."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from pixmuse.core.timezone import utcnow


class TrainedModel(SQLModel, table=True):
    """Personalized model weights trained from an account's photos.

    Names follow the per-account sequence model1, model2, ... derived from
    persisted rows; never mutated after creation.
    """

    __tablename__ = "trained_models"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("account_id", "sequence_number", name="uq_trained_models_account_seq"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: UUID = Field(foreign_key="accounts.id", index=True)
    sequence_number: int = Field(ge=1)
    name: str = Field(max_length=64)
    weights_url: str
    config_url: str
    training_data_url: Optional[str] = Field(default=None)
    job_id: Optional[UUID] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
