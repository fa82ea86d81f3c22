"""
Payment gateway client.

Wraps the Stripe SDK behind bounded, async-friendly calls and normalises
payment intents into PaymentDetails. Stripe errors are translated into the
service's error taxonomy here so callers never handle SDK exceptions.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any

import stripe

from creditledger.catalog import CreditPackage
from creditledger.config import settings
from creditledger.errors import NotFoundError, UpstreamGatewayError
from creditledger.logging_config import get_logger


logger = get_logger(component="payment_gateway")

DEFAULT_PAYMENT_METHOD = "Card"
DEFAULT_CARD_LAST4 = "****"


@dataclass
class PaymentMethodSummary:
    """Type, brand and last four digits only. Never full card data."""
    type: str = DEFAULT_PAYMENT_METHOD
    brand: str | None = None
    last4: str = DEFAULT_CARD_LAST4


@dataclass
class PaymentDetails:
    payment_reference: str
    status: str | None = None
    amount: int | None = None
    currency: str | None = None
    created: int | None = None
    description: str | None = None
    metadata: dict = field(default_factory=dict)
    charge_reference: str | None = None
    payment_method_reference: str | None = None
    receipt_url: str | None = None
    billing_name: str | None = None
    billing_email: str | None = None
    payment_method: PaymentMethodSummary = field(default_factory=PaymentMethodSummary)
    # False when the expanded charge was not available (e.g. test-mode payments)
    has_charge: bool = False


@dataclass
class CheckoutIntent:
    payment_reference: str
    client_secret: str


def _get(obj: Any, key: str, default=None):
    # StripeObject subclasses dict; unexpanded references are plain id strings
    if isinstance(obj, dict):
        value = obj.get(key)
        return default if value is None else value
    return default


def summarize_payment_method(charge: Any, payment_method: Any = None) -> PaymentMethodSummary:
    """Build a PaymentMethodSummary from charge details, else a PaymentMethod object."""
    details = _get(charge, "payment_method_details")
    source = details if isinstance(details, dict) else payment_method
    method_type = _get(source, "type")
    card = _get(source, "card")

    if method_type == "card" or card:
        return PaymentMethodSummary(
            type="Credit Card",
            brand=_get(card, "brand"),
            last4=_get(card, "last4", DEFAULT_CARD_LAST4),
        )
    if method_type:
        return PaymentMethodSummary(type=str(method_type).replace("_", " ").title())
    return PaymentMethodSummary()


def payment_details_from_intent(intent: Any) -> PaymentDetails:
    """Normalise a payment intent (with or without an expanded latest_charge)."""
    charge = _get(intent, "latest_charge")
    has_charge = isinstance(charge, dict)
    billing = _get(charge, "billing_details", {})
    currency = _get(intent, "currency")

    payment_method_reference = _get(charge, "payment_method")
    if not isinstance(payment_method_reference, str):
        payment_method_reference = _get(intent, "payment_method")
        if not isinstance(payment_method_reference, str):
            payment_method_reference = None

    return PaymentDetails(
        payment_reference=_get(intent, "id", ""),
        status=_get(intent, "status"),
        amount=_get(intent, "amount"),
        currency=currency.upper() if currency else None,
        created=_get(intent, "created"),
        description=_get(intent, "description"),
        metadata=dict(_get(intent, "metadata", {})),
        charge_reference=_get(charge, "id") if has_charge else (charge if isinstance(charge, str) else None),
        payment_method_reference=payment_method_reference,
        receipt_url=_get(charge, "receipt_url"),
        billing_name=_get(billing, "name"),
        billing_email=_get(billing, "email") or _get(intent, "receipt_email"),
        payment_method=summarize_payment_method(charge),
        has_charge=has_charge,
    )


class StripeGateway:
    """Bounded-latency access to payment intents and payment methods."""

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = settings.STRIPE_TIMEOUT_SECONDS,
        stripe_client=stripe,
    ):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.timeout = timeout
        self._stripe = stripe_client

    async def _call(self, func, *args, **params):
        if self.api_key:
            params["api_key"] = self.api_key
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **params),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning("stripe_call_timeout", timeout=self.timeout)
            raise UpstreamGatewayError("stripe call timed out") from e
        except stripe.InvalidRequestError as e:
            logger.info("stripe_invalid_request", error=str(e), code=getattr(e, "code", None))
            raise NotFoundError(f"stripe invalid request: {e}") from e
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            logger.warning("stripe_unavailable", error=str(e), error_type=type(e).__name__)
            raise UpstreamGatewayError(f"stripe unavailable: {e}") from e
        except stripe.StripeError as e:
            logger.error("stripe_error", error=str(e), error_type=type(e).__name__)
            raise UpstreamGatewayError(f"stripe error: {e}") from e

    async def retrieve_payment(self, payment_reference: str) -> PaymentDetails:
        """
        Fetch a payment intent with its latest charge expanded.

        Raises:
            NotFoundError: the gateway does not know this reference
            UpstreamGatewayError: network, timeout, auth or rate-limit failure
        """
        intent = await self._call(
            self._stripe.PaymentIntent.retrieve,
            payment_reference,
            expand=["latest_charge"],
        )
        details = payment_details_from_intent(intent)

        if details.payment_method.brand is None and details.payment_method_reference:
            try:
                method = await self.retrieve_payment_method(details.payment_method_reference)
            except (NotFoundError, UpstreamGatewayError) as e:
                logger.info(
                    "payment_method_lookup_skipped",
                    payment_reference=payment_reference,
                    error=e.detail,
                )
            else:
                details.payment_method = summarize_payment_method(None, method)
        return details

    async def retrieve_payment_method(self, payment_method_reference: str):
        return await self._call(self._stripe.PaymentMethod.retrieve, payment_method_reference)

    async def create_payment_intent(
        self,
        package: CreditPackage,
        user_id: str,
        receipt_email: str | None = None,
    ) -> CheckoutIntent:
        """
        Start a checkout for a catalog package.

        The metadata written here is exactly what fulfillment validates when the
        payment succeeds.

        Raises:
            UpstreamGatewayError: the gateway refused or could not be reached
        """
        params = {
            "amount": package.price_cents,
            "currency": package.currency.lower(),
            "description": f"{package.credits} Credits - Credit Package",
            "statement_descriptor_suffix": "CREDITS",
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": {
                "userId": user_id,
                "packageId": package.id,
                "credits": str(package.credits),
            },
        }
        if receipt_email:
            params["receipt_email"] = receipt_email

        try:
            intent = await self._call(self._stripe.PaymentIntent.create, **params)
        except NotFoundError as e:
            # An invalid request here is our fault, not a missing resource
            raise UpstreamGatewayError(
                e.detail,
                user_message="Unable to process payment at this time. Please try again or contact support.",
            ) from e

        logger.info("payment_intent_created", payment_reference=_get(intent, "id"), package_id=package.id)
        return CheckoutIntent(
            payment_reference=_get(intent, "id"),
            client_secret=_get(intent, "client_secret"),
        )


# Default gateway instance
payment_gateway = StripeGateway()
