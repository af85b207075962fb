"""Payment webhook endpoint.

The payment processor notifies us of completed credit purchases. Each
notification is signed (HMAC-SHA256, X-Payment-Signature) and carries a
unique event_id; replays are acknowledged without crediting twice.
"""

import json
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, ValidationError

from pixmuse.api.dependencies import get_uow_factory, validate_webhook_signature
from pixmuse.services.ledger import Ledger

logger = structlog.get_logger()
router = APIRouter()


class PaymentEventPayload(BaseModel):
    event_id: str = Field(..., min_length=1, max_length=255)
    account_id: UUID
    credits: int = Field(..., gt=0)


@router.post("/payments")
async def receive_payment_webhook(
    raw_body: bytes = Depends(validate_webhook_signature),
    uow_factory=Depends(get_uow_factory),
):
    """Credit an account for a completed purchase.

    HTTP Status Codes:
        200: {"status": "credited"} or {"status": "duplicate"}
        400: Malformed payload
        401: Missing or invalid signature
        404: Unknown account
    """
    try:
        payload = PaymentEventPayload.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error("webhook.invalid_payload", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid payment payload: {e}",
        )

    log = logger.bind(event_id=payload.event_id, account_id=str(payload.account_id))
    log.info("webhook.received", credits=payload.credits)

    async with await uow_factory() as uow:
        if await uow.accounts.get_by_id(payload.account_id) is None:
            log.warning("webhook.unknown_account")
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

        credited = await Ledger().credit(
            uow, payload.account_id, payload.credits, payload.event_id
        )

    if not credited:
        return {"status": "duplicate", "event_id": payload.event_id}

    return {"status": "credited", "event_id": payload.event_id, "credits": payload.credits}
