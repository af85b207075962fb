"""Upload entity - archived training photos handed to the provider."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from pixmuse.core.timezone import utcnow


class Upload(SQLModel, table=True):
    __tablename__ = "uploads"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: UUID = Field(foreign_key="accounts.id", index=True)
    status: str = Field(default="completed", max_length=50)
    file_count: int = Field(ge=1)
    archive_url: str
    created_at: datetime = Field(default_factory=utcnow)
