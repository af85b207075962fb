"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Payment webhook signature validation
- Resolving the authenticated account
- Access to the application-scoped services stored on app.state
"""

from typing import Annotated, Callable
from uuid import UUID

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from pixmuse.core.config import Settings
from pixmuse.models.account import Account
from pixmuse.services.broadcaster import ProgressBroadcaster
from pixmuse.services.job_runner import JobRunner
from pixmuse.services.payments.signature import validate_payment_signature
from pixmuse.services.providers.base import ExternalJobClient
from pixmuse.uow import UnitOfWork

logger = structlog.get_logger()


def get_settings(request: Request) -> Settings:
    """Get application settings built during lifespan startup."""
    return request.app.state.settings


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.accounts.get_by_id(account_id)
    """
    return request.app.state.uow_factory


def get_job_runner(request: Request) -> JobRunner:
    return request.app.state.job_runner


def get_broadcaster(request: Request) -> ProgressBroadcaster:
    return request.app.state.broadcaster


def get_job_client(request: Request) -> ExternalJobClient:
    return request.app.state.job_client


async def get_current_account(
    x_account_id: Annotated[str | None, Header()] = None,
    uow_factory=Depends(get_uow_factory),
) -> Account:
    """Resolve the account asserted by the upstream auth layer.

    Raises:
        HTTPException: 401 if the X-Account-Id header is missing, malformed
            or names an unknown account
    """
    if not x_account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Account-Id header"
        )

    try:
        account_id = UUID(x_account_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-Account-Id header"
        )

    async with await uow_factory() as uow:
        account = await uow.accounts.get_by_id(account_id)

    if account is None:
        logger.warning("auth.unknown_account", account_id=x_account_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown account")

    return account


async def validate_webhook_signature(
    request: Request,
    x_payment_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Validate payment webhook signature before processing request.

    Reads the raw request body and validates the HMAC-SHA256 signature from
    the X-Payment-Signature header before any parsing happens.

    Returns:
        Raw request body bytes (for further processing by the endpoint)

    Raises:
        HTTPException: 401 Unauthorized if signature is missing or invalid
    """
    if not x_payment_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Payment-Signature header"
        )

    # Must be the exact bytes received for signature validation
    raw_body = await request.body()

    is_valid = validate_payment_signature(
        raw_body=raw_body,
        signature=x_payment_signature,
        signing_key=settings.payment_webhook_secret,
    )

    if not is_valid:
        logger.warning("webhook.invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature"
        )

    return raw_body
