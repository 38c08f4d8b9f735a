import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from credit_ledger.core.logging_config import sanitize_log_data
from credit_ledger.db.session import get_db
from credit_ledger.services.billing_events import build_processor
from credit_ledger.services.billing_provider import verify_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing Webhook"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
):
    payload = await request.body()

    try:
        event = verify_webhook(payload, stripe_signature)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    data = (event.get("data") or {}).get("object") or {}
    logger.debug(f"Webhook payload: type={event.get('type')}, object={sanitize_log_data(data)}")

    try:
        summary = build_processor(db).handle_stripe_event(event)
    except (ValueError, ValidationError) as e:
        # Acknowledge so Stripe stops retrying an event we can never map
        logger.error(f"Unprocessable webhook event: id={event.get('id')}, type={event.get('type')}, error={e}")
        return {"status": "ignored", "event_id": event.get("id"), "error": str(e)}

    logger.info(f"Webhook processed: id={event.get('id')}, summary={summary}")
    return {"status": "success", "event_id": event.get("id"), **summary}
