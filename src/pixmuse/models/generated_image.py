"""GeneratedImage entity - one image produced by a generation job."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from pixmuse.core.timezone import utcnow


class GeneratedImage(SQLModel, table=True):
    """One persisted output image; a generation job produces one row per image."""

    __tablename__ = "generated_images"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: UUID = Field(foreign_key="accounts.id", index=True)
    model_id: UUID = Field(foreign_key="trained_models.id", index=True)
    job_id: Optional[UUID] = Field(default=None)
    prompt: str
    image_url: str
    created_at: datetime = Field(default_factory=utcnow)
