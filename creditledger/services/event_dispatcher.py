"""
Inbound payment event dispatch.

Verifies the gateway signature over the raw body, parses the event envelope
and routes it to a registered handler by event type. Handlers return the
acknowledgement body; exceptions propagate so the gateway redelivers.
"""
from typing import Any, Awaitable, Callable

import stripe
from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError

from creditledger.errors import SignatureError, ValidationError
from creditledger.logging_config import get_logger
from creditledger.services.fulfillment_service import FulfillmentEngine


logger = get_logger(component="event_dispatcher")

SIGNATURE_TOLERANCE_SECONDS = 300


class PaymentEventData(BaseModel):
    object: dict[str, Any]


class PaymentEvent(BaseModel):
    """The subset of the gateway's event envelope we route on."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    data: PaymentEventData


def verify_event(payload: bytes, signature_header: str | None, secret: str | None) -> PaymentEvent:
    """
    Authenticate and parse a raw webhook body.

    Raises:
        SignatureError: secret not configured, header missing or signature invalid
        ValidationError: authentic body that is not a payment event
    """
    if not secret:
        raise SignatureError("webhook secret is not configured")
    if not signature_header:
        raise SignatureError("missing Stripe-Signature header")

    try:
        payload_text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SignatureError("webhook body is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(
            payload_text,
            signature_header,
            secret,
            tolerance=SIGNATURE_TOLERANCE_SECONDS,
        )
    except stripe.SignatureVerificationError as e:
        raise SignatureError(f"signature verification failed: {e}") from e

    try:
        return PaymentEvent.model_validate_json(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"malformed event body: {e.error_count()} errors") from e


EventHandler = Callable[[PaymentEvent, FulfillmentEngine], Awaitable[dict]]


class EventDispatcher:
    """Routes events to handlers registered per event type."""

    def __init__(self):
        self._handlers: dict[str, EventHandler] = {}

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: EventHandler):
            self._handlers[event_type] = handler
            return handler
        return decorator

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, event: PaymentEvent, engine: FulfillmentEngine) -> dict:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("webhook_unhandled_event", event_id=event.id, event_type=event.type)
            return {"received": True, "handled": False}

        logger.info("webhook_event_received", event_id=event.id, event_type=event.type)
        return await handler(event, engine)


dispatcher = EventDispatcher()


@dispatcher.register("payment_intent.succeeded")
async def handle_payment_succeeded(event: PaymentEvent, engine: FulfillmentEngine) -> dict:
    intent = event.data.object
    result = await engine.fulfill_payment(intent.get("id"), intent.get("metadata") or {})
    body = {"received": True, "handled": True, "outcome": result.outcome.value}
    if result.receipt_status:
        body["receipt_status"] = result.receipt_status
    return body


@dispatcher.register("payment_intent.payment_failed")
async def handle_payment_failed(event: PaymentEvent, engine: FulfillmentEngine) -> dict:
    intent = event.data.object
    last_error = intent.get("last_payment_error") or {}
    logger.warning(
        "payment_failed",
        event_id=event.id,
        payment_reference=intent.get("id"),
        user_id=(intent.get("metadata") or {}).get("userId"),
        failure_code=last_error.get("code"),
        failure_message=last_error.get("message"),
    )
    return {"received": True, "handled": True}
