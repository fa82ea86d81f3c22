"""
Inbound webhook routes.

Payment events from Stripe and delivery notifications from the email
provider. Both verify a signature over the raw body before parsing it.
"""
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError

from creditledger.config import settings
from creditledger.dependencies.services import get_fulfillment_engine, get_receipt_service
from creditledger.errors import SignatureError, ValidationError
from creditledger.logging_config import bind_request_context, get_logger
from creditledger.services.event_dispatcher import dispatcher, verify_event
from creditledger.services.fulfillment_service import FulfillmentEngine
from creditledger.services.receipt_service import ReceiptService
from creditledger.services.signatures import verify_webhook_signature


logger = get_logger(component="webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

EMAIL_DELIVERED = "email.delivered"


class EmailDeliveryEvent(BaseModel):
    """Delivery notification from the email provider."""
    model_config = ConfigDict(extra="ignore")

    type: str
    receipt_id: str


@router.post("/stripe", response_model=dict)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    engine: FulfillmentEngine = Depends(get_fulfillment_engine),
):
    """
    Receive payment events.

    Answers 200 for handled and ignorable events, 400 for unauthentic ones.
    Anything else is a 500 so the gateway redelivers.
    """
    payload = await request.body()
    event = verify_event(payload, stripe_signature, settings.STRIPE_WEBHOOK_SECRET)
    bind_request_context(event_id=event.id)
    return await dispatcher.dispatch(event, engine)


@router.post("/email", response_model=dict)
async def email_webhook(
    request: Request,
    x_webhook_signature: str | None = Header(None, alias="X-Webhook-Signature"),
    receipt_service: ReceiptService = Depends(get_receipt_service),
):
    """Record that a receipt email reached the recipient."""
    payload = await request.body()
    if not verify_webhook_signature(payload, x_webhook_signature, settings.EMAIL_WEBHOOK_SECRET):
        raise SignatureError("email webhook signature mismatch")

    try:
        event = EmailDeliveryEvent.model_validate_json(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"malformed email event: {e.error_count()} errors") from e

    if event.type != EMAIL_DELIVERED:
        logger.info("email_event_ignored", event_type=event.type, receipt_id=event.receipt_id)
        return {"received": True, "updated": False}

    updated = await receipt_service.mark_email_delivered(event.receipt_id)
    logger.info("receipt_email_delivered", receipt_id=event.receipt_id, updated=updated)
    return {"received": True, "updated": updated}
