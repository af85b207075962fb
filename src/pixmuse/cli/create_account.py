"""CLI command for creating an account (or topping up an existing one).

Usage:
    python -m pixmuse.cli.create_account --email user@example.com [--credits 50]
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from uuid import uuid4

import structlog

from pixmuse.core import timezone  # noqa: F401
from pixmuse.core.config import Settings, configure_logging
from pixmuse.core.database import setup_db_session
from pixmuse.services.ledger import Ledger
from pixmuse.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    parser = ArgumentParser(description="Create an account and optionally grant credits")
    parser.add_argument("--email", required=True, help="Account e-mail (case-insensitive)")
    parser.add_argument(
        "--credits",
        type=int,
        default=0,
        help="Credits to grant through the ledger (default: 0)",
    )
    return parser.parse_args(argv)


async def create_account(uow_factory, email: str, credits: int) -> tuple[str, int, bool]:
    """Get or create the account and grant credits.

    Returns:
        (account_id, balance, created) tuple
    """
    async with await uow_factory() as uow:
        account, created = await uow.accounts.get_or_create_by_email(email)
        if credits > 0:
            await Ledger().credit(uow, account.id, credits, event_id=f"cli-{uuid4().hex}")
        balance = await uow.accounts.get_balance(account.id)

    logger.info(
        "cli.account_ready", account_id=str(account.id), created=created, balance=balance
    )
    return str(account.id), balance or 0, created


async def async_main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.credits < 0:
        print("Error: --credits must be non-negative", file=sys.stderr)
        return 1

    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)
    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)

    account_id, balance, created = await create_account(
        create_uow_factory(session_factory), args.email, args.credits
    )
    print(f"{'Created' if created else 'Found'} account {account_id} (balance {balance})")
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
