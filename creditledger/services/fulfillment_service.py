"""
Credit fulfillment.

Turns a verified successful payment into exactly one credit grant, then asks
the receipt service for a receipt. The ledger insert is the idempotency gate;
the pre-check only spares redeliveries a write attempt.
"""
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from creditledger.catalog import CreditPackage, get_credit_package
from creditledger.config import settings
from creditledger.errors import FulfillmentOutcome, UnknownUserError, ValidationError
from creditledger.logging_config import get_logger
from creditledger.models.credit import CreditTransaction
from creditledger.models.user import User
from creditledger.sentry_config import capture_exception
from creditledger.services.credit_service import CreditService
from creditledger.services.masking import is_valid_payment_reference
from creditledger.services.payment_gateway import StripeGateway
from creditledger.services.receipt_service import ReceiptService
from creditledger.services.user_service import UserService


logger = get_logger(component="fulfillment")

PAYMENT_SUCCEEDED = "succeeded"


class FulfillmentRequest(BaseModel):
    """Payment metadata attached at checkout, plus the payment reference."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str = Field(alias="userId", min_length=1)
    package_id: str = Field(alias="packageId", min_length=1)
    credits: int
    payment_reference: str = Field(min_length=1)


@dataclass
class FulfillmentResult:
    outcome: FulfillmentOutcome
    payment_reference: str | None = None
    transaction_id: str | None = None
    receipt_id: str | None = None
    # "created" or "degraded" once a grant happened
    receipt_status: str | None = None
    reason: str | None = None


class FulfillmentEngine:
    """Grants credits for successful payments, at most once per payment reference."""

    def __init__(
        self,
        db: AsyncSession,
        receipt_service: ReceiptService,
        gateway: StripeGateway,
        jobs=None,
        expiration_years: int = settings.CREDITS_EXPIRATION_YEARS,
    ):
        self.db = db
        self.receipt_service = receipt_service
        self.gateway = gateway
        self.jobs = jobs
        self.expiration_years = expiration_years

    async def fulfill_payment(self, payment_reference: str | None, metadata: dict) -> FulfillmentResult:
        """
        Fulfill a payment from its raw metadata.

        Missing or malformed metadata is a structural rejection, not an error:
        redelivering the same event can never make it valid.
        """
        try:
            request = FulfillmentRequest.model_validate(
                {**metadata, "payment_reference": payment_reference}
            )
        except PydanticValidationError as e:
            missing = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            logger.warning(
                "fulfillment_rejected",
                payment_reference=payment_reference,
                reason="invalid_metadata",
                fields=missing,
            )
            return FulfillmentResult(
                outcome=FulfillmentOutcome.REJECTED,
                payment_reference=payment_reference,
                reason="invalid_metadata",
            )
        return await self.fulfill(request)

    async def fulfill(self, request: FulfillmentRequest) -> FulfillmentResult:
        log = logger.bind(
            payment_reference=request.payment_reference,
            user_id=request.user_id,
            package_id=request.package_id,
        )

        package = get_credit_package(request.package_id)
        if package is None:
            return self._reject(request, "unknown_package", log)
        if package.credits != request.credits:
            log.warning("credit_mismatch", claimed=request.credits, expected=package.credits)
            return self._reject(request, "credit_mismatch", log)

        credit_service = CreditService(self.db)
        existing = await credit_service.get_purchase_by_payment_reference(request.payment_reference)
        if existing:
            log.info("payment_already_fulfilled", transaction_id=existing.id)
            return FulfillmentResult(
                outcome=FulfillmentOutcome.ALREADY_FULFILLED,
                payment_reference=request.payment_reference,
                transaction_id=existing.id,
                receipt_id=existing.receipt_id,
            )

        user = await UserService(self.db).get_by_id(request.user_id)
        if user is None:
            # The user row may not be committed yet; fail so the event is redelivered
            log.warning("fulfillment_user_missing")
            raise UnknownUserError(f"no user {request.user_id} for {request.payment_reference}")

        transaction = await credit_service.grant_purchase(
            user_id=user.id,
            amount=package.credits,
            payment_reference=request.payment_reference,
            description=f"Purchased {package.credits} credits",
            expiration_years=self.expiration_years,
        )
        if transaction is None:
            # Lost the race on the unique index to a concurrent delivery
            log.info("payment_already_fulfilled", race=True)
            return FulfillmentResult(
                outcome=FulfillmentOutcome.ALREADY_FULFILLED,
                payment_reference=request.payment_reference,
            )

        transaction_id = transaction.id
        log.info("payment_fulfilled", credits=package.credits, transaction_id=transaction_id)

        receipt_id, receipt_status = await self._issue_receipt(transaction, user, package, log)
        return FulfillmentResult(
            outcome=FulfillmentOutcome.FULFILLED,
            payment_reference=request.payment_reference,
            transaction_id=transaction_id,
            receipt_id=receipt_id,
            receipt_status=receipt_status,
        )

    async def _issue_receipt(
        self,
        transaction: CreditTransaction,
        user: User,
        package: CreditPackage,
        log,
    ) -> tuple[str | None, str]:
        """Create the receipt. A failure here never undoes the grant."""
        transaction_id = transaction.id
        try:
            receipt = await self.receipt_service.create_receipt(
                transaction,
                user,
                transaction.payment_reference,
                fallback_amount=package.price_cents,
                fallback_currency=package.currency,
            )
        except Exception as e:
            await self.db.rollback()
            log.error("receipt_generation_failed", transaction_id=transaction_id, error=str(e))
            capture_exception(e, transaction_id=transaction_id)
            if self.jobs is not None:
                scheduled = await self.jobs.schedule_receipt_generation(transaction_id)
                log.info("receipt_regeneration_scheduled", scheduled=scheduled)
            return None, "degraded"
        return receipt.id, "created"

    def _reject(self, request: FulfillmentRequest, reason: str, log) -> FulfillmentResult:
        log.warning("fulfillment_rejected", reason=reason)
        return FulfillmentResult(
            outcome=FulfillmentOutcome.REJECTED,
            payment_reference=request.payment_reference,
            reason=reason,
        )

    async def confirm_payment(
        self,
        user_id: str,
        package_id: str,
        payment_reference: str,
    ) -> FulfillmentResult:
        """
        Client-side confirmation after checkout.

        Re-reads the payment from the gateway and runs the same fulfillment as
        the webhook, so whichever arrives second sees ALREADY_FULFILLED.

        Raises:
            ValidationError: bad reference, unknown package, unsucceeded or mismatched payment
            NotFoundError: the gateway does not know the payment
            UpstreamGatewayError: the gateway is unavailable
            UnknownUserError: the caller has no user row yet
        """
        if not is_valid_payment_reference(payment_reference):
            raise ValidationError(f"malformed payment reference {payment_reference!r}")

        package = get_credit_package(package_id)
        if package is None:
            raise ValidationError(f"unknown package {package_id!r}", user_message="Invalid package")

        details = await self.gateway.retrieve_payment(payment_reference)
        if details.status != PAYMENT_SUCCEEDED:
            raise ValidationError(
                f"payment {payment_reference} has status {details.status}",
                user_message="Payment has not succeeded",
            )

        metadata = details.metadata
        if (
            metadata.get("userId") != user_id
            or metadata.get("packageId") != package_id
            or str(metadata.get("credits")) != str(package.credits)
        ):
            logger.warning(
                "payment_confirmation_mismatch",
                payment_reference=payment_reference,
                user_id=user_id,
                package_id=package_id,
            )
            raise ValidationError(
                "payment metadata does not match the confirmation",
                user_message="Payment does not match this purchase",
            )

        result = await self.fulfill_payment(payment_reference, metadata)
        if result.outcome == FulfillmentOutcome.REJECTED:
            raise ValidationError(f"fulfillment rejected: {result.reason}")
        return result
