"""Account repository for PixMuse backend.

Provides data access methods for Account entities, including the atomic
conditional balance updates the Ledger relies on.
"""

from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pixmuse.models.account import Account


class AccountRepository:
    """Repository for Account entities.

    Methods:
    - get_by_id: Retrieve account by UUID
    - get_by_email: Case-insensitive e-mail lookup
    - add: Persist new account
    - get_or_create_by_email: First-login account creation
    - get_balance: Read the current balance straight from the database
    - debit_if_sufficient: Atomic check-and-decrement (single UPDATE)
    - credit: Atomic increment
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, account_id: UUID) -> Account | None:
        result = await self.session.execute(select(Account).where(Account.id == account_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Account | None:
        """Retrieve account by e-mail (case-insensitive)."""
        result = await self.session.execute(
            select(Account).where(func.lower(Account.email) == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def add(self, account: Account) -> Account:
        """Persist new account to database.

        Args:
            account: Account entity to persist

        Returns:
            Persisted account with generated ID
        """
        account.email = account.email.strip().lower()
        self.session.add(account)
        await self.session.flush()
        return account

    async def get_or_create_by_email(self, email: str) -> tuple[Account, bool]:
        """Return the account for email, creating it with a zero balance if absent.

        Returns:
            (account, created) tuple
        """
        account = await self.get_by_email(email)
        if account:
            return account, False
        account = await self.add(Account(email=email, balance=0))
        return account, True

    async def get_balance(self, account_id: UUID) -> int | None:
        """Read the balance column (bypasses the identity map)."""
        result = await self.session.execute(
            select(Account.balance).where(Account.id == account_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def debit_if_sufficient(self, account_id: UUID, amount: int) -> bool:
        """Decrement balance by amount only if balance >= amount.

        Query:
            UPDATE accounts SET balance = balance - :amount
            WHERE id = :account_id AND balance >= :amount

        The check and the decrement are one statement, so two concurrent
        debits can never both pass against the same stale balance.

        Returns:
            True if the row was updated, False if funds were insufficient
            or the account does not exist
        """
        result = await self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.balance >= amount)  # type: ignore[arg-type]
            .values(balance=Account.balance - amount)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def credit(self, account_id: UUID, amount: int) -> bool:
        """Increment balance by amount.

        Returns:
            True if the account exists and was updated
        """
        result = await self.session.execute(
            update(Account)
            .where(Account.id == account_id)  # type: ignore[arg-type]
            .values(balance=Account.balance + amount)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
