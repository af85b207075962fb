"""Credit ledger: the only component allowed to change account balances.

Every balance mutation is a single conditional UPDATE issued through the
AccountRepository inside the caller's Unit of Work, so a reservation commits
or rolls back together with the job row that owns it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError

from pixmuse.core.timezone import utcnow
from pixmuse.models.payment_event import PaymentEvent
from pixmuse.services.exceptions import (
    AccountNotFoundError,
    InsufficientCreditsError,
    ReservationAlreadySettledError,
)
from pixmuse.uow import UnitOfWork

logger = structlog.get_logger(__name__)


class ReservationState(str, Enum):
    HELD = "held"
    COMMITTED = "committed"
    REFUNDED = "refunded"


@dataclass
class Reservation:
    """Debited-but-not-final credit amount tied to one job."""

    account_id: UUID
    amount: int
    job_id: UUID | None = None
    state: ReservationState = ReservationState.HELD
    reserved_at: datetime = field(default_factory=utcnow)

    def _settle(self, state: ReservationState) -> None:
        if self.state != ReservationState.HELD:
            raise ReservationAlreadySettledError(
                f"Reservation for job {self.job_id} already {self.state.value}"
            )
        self.state = state


class Ledger:
    """Atomic reserve / refund / commit / credit operations on account balances."""

    async def reserve(self, uow: UnitOfWork, account_id: UUID, amount: int) -> Reservation:
        """Debit amount from the account if balance >= amount.

        The debit becomes durable when the caller's Unit of Work commits; if
        anything in that transaction fails the balance is left unchanged.

        Raises:
            ValueError: If amount is negative
            AccountNotFoundError: If the account does not exist
            InsufficientCreditsError: If balance < amount
        """
        if amount < 0:
            raise ValueError(f"Reservation amount must be non-negative, got {amount}")

        debited = await uow.accounts.debit_if_sufficient(account_id, amount)
        if not debited:
            available = await uow.accounts.get_balance(account_id)
            if available is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            logger.info(
                "ledger.insufficient_credits",
                account_id=str(account_id),
                required=amount,
                available=available,
            )
            raise InsufficientCreditsError(required=amount, available=available)

        logger.info("ledger.reserved", account_id=str(account_id), amount=amount)
        return Reservation(account_id=account_id, amount=amount)

    async def refund(self, uow: UnitOfWork, reservation: Reservation) -> None:
        """Return a held reservation to the account balance.

        Raises:
            ReservationAlreadySettledError: If the reservation was already
                committed or refunded
        """
        reservation._settle(ReservationState.REFUNDED)
        if reservation.amount:
            updated = await uow.accounts.credit(reservation.account_id, reservation.amount)
            if not updated:
                raise AccountNotFoundError(f"Account {reservation.account_id} not found")
        logger.info(
            "ledger.refunded",
            account_id=str(reservation.account_id),
            amount=reservation.amount,
            job_id=str(reservation.job_id),
        )

    def commit(self, reservation: Reservation) -> None:
        """Mark a reservation final; the funds stay debited."""
        reservation._settle(ReservationState.COMMITTED)
        logger.info(
            "ledger.committed",
            account_id=str(reservation.account_id),
            amount=reservation.amount,
            job_id=str(reservation.job_id),
        )

    async def credit(self, uow: UnitOfWork, account_id: UUID, amount: int, event_id: str) -> bool:
        """Grant purchased credits, at most once per payment event id.

        Returns:
            True if credits were granted, False if event_id was already processed

        Raises:
            ValueError: If amount is not positive
            AccountNotFoundError: If the account does not exist
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")

        if await uow.payment_events.exists(event_id):
            logger.warning("ledger.duplicate_credit", event_id=event_id)
            return False

        if await uow.accounts.get_balance(account_id) is None:
            raise AccountNotFoundError(f"Account {account_id} not found")

        try:
            # The unique event_id constraint rejects a concurrent duplicate
            await uow.payment_events.add(
                PaymentEvent(event_id=event_id, account_id=account_id, credits=amount)
            )
        except IntegrityError:
            await uow.session.rollback()
            logger.warning("ledger.duplicate_credit", event_id=event_id, race=True)
            return False

        await uow.accounts.credit(account_id, amount)
        logger.info(
            "ledger.credited", account_id=str(account_id), amount=amount, event_id=event_id
        )
        return True
