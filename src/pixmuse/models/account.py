"""Account entity - billable identity owning a credit balance."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from pixmuse.core.timezone import utcnow


class Account(SQLModel, table=True):
    """Account owns credits, jobs, trained models and generated images.

    The balance is only ever changed through the Ledger service, which
    issues conditional UPDATE statements against this table.
    """

    __tablename__ = "accounts"  # type: ignore[assignment]
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    email: str = Field(max_length=320, unique=True, index=True)  # stored lower-cased
    balance: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
