"""
Receipt read path.

SECURITY: Every owner-facing read is filtered by the caller's user id. A
receipt that exists but belongs to someone else is reported exactly like one
that does not exist.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncSession

from creditledger.config import settings
from creditledger.errors import (
    NotFoundError,
    UnsupportedFormatError,
    UpstreamGatewayError,
    ValidationError,
)
from creditledger.logging_config import get_logger
from creditledger.models.credit import CreditTransaction
from creditledger.models.receipt import Receipt
from creditledger.models.user import User
from creditledger.services.credit_service import CreditService
from creditledger.services.masking import is_valid_payment_reference, mask_receipt_info
from creditledger.services.payment_gateway import DEFAULT_CARD_LAST4, PaymentDetails, StripeGateway
from creditledger.services.receipt_service import ReceiptService, build_download_url


logger = get_logger(component="receipt_access")

HTML_FORMAT = "html"
PDF_FORMAT = "pdf"
MAX_PAGE_SIZE = 50


def default_trusted_hosts() -> list[str]:
    """Gateway receipt hosts plus our own, which serves the token download."""
    hosts = list(settings.RECEIPT_URL_TRUSTED_HOSTS)
    site_host = urlparse(settings.SITE_URL).hostname
    if site_host and site_host not in hosts:
        hosts.append(site_host)
    return hosts


def _unix_seconds(moment: datetime | None) -> int | None:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


@dataclass(frozen=True)
class ReceiptDocument:
    receipt_number: str
    html: str

    @property
    def filename(self) -> str:
        return f"receipt-{self.receipt_number}.html"


class ReceiptAccessGateway:
    """Ownership-checked, masked access to receipts."""

    def __init__(
        self,
        db: AsyncSession,
        receipt_service: ReceiptService,
        gateway: StripeGateway,
        trusted_hosts: list[str] | None = None,
    ):
        self.db = db
        self.receipt_service = receipt_service
        self.gateway = gateway
        self.trusted_hosts = trusted_hosts if trusted_hosts is not None else default_trusted_hosts()

    async def lookup(self, user_id: str, payment_reference: str | None) -> dict:
        """
        Receipt information for one of the caller's payments.

        Stored receipt fields win; the gateway supplies the live fields
        (hosted receipt URL, billing details). A gateway failure is only
        fatal when there is no stored receipt to answer from.

        Raises:
            ValidationError: malformed payment reference
            NotFoundError: unknown reference, or not the caller's
            UpstreamGatewayError: gateway unavailable and nothing stored
        """
        if not is_valid_payment_reference(payment_reference):
            raise ValidationError(f"malformed payment reference {payment_reference!r}")

        log = logger.bind(user_id=user_id, payment_reference=payment_reference)

        transaction = await CreditService(self.db).get_owned_purchase(payment_reference, user_id)
        if transaction is None:
            log.info("receipt_lookup_not_found")
            raise NotFoundError(f"no purchase {payment_reference} for user {user_id}")

        receipt = await self.receipt_service.get_by_transaction(transaction.id)

        try:
            details = await self.gateway.retrieve_payment(payment_reference)
        except (NotFoundError, UpstreamGatewayError) as e:
            if receipt is None:
                log.warning("receipt_lookup_gateway_failed", error=e.detail)
                raise UpstreamGatewayError(e.detail) from e
            log.info("receipt_lookup_served_from_store", error=e.detail)
            details = None

        user = await self.db.get(User, user_id)
        info = self._build_receipt_info(transaction, receipt, details, user)
        log.info("receipt_lookup", stored=receipt is not None, live=details is not None)
        return mask_receipt_info(info, self.trusted_hosts)

    def _build_receipt_info(
        self,
        transaction: CreditTransaction,
        receipt: Receipt | None,
        details: PaymentDetails | None,
        user: User | None,
    ) -> dict:
        details = details or PaymentDetails(payment_reference=transaction.payment_reference)

        if receipt is not None:
            amount, currency = receipt.amount, receipt.currency
            method = {
                "type": receipt.payment_method,
                "brand": receipt.card_brand,
                "last4": receipt.card_last4 or DEFAULT_CARD_LAST4,
            }
        else:
            amount, currency = details.amount, details.currency
            method = {
                "type": details.payment_method.type,
                "brand": details.payment_method.brand,
                "last4": details.payment_method.last4,
            }

        return {
            "receipt_url": details.receipt_url or transaction.receipt_url,
            "receipt_number": receipt.receipt_number if receipt else None,
            "amount": amount,
            "currency": currency,
            "created": details.created or _unix_seconds(transaction.created_at),
            "description": details.description or transaction.description,
            "payment_method_summary": method,
            "billing_details": {
                "name": details.billing_name or (user.display_name if user else None),
                "email": details.billing_email or (user.email if user else None),
            },
        }

    async def download(self, download_token: str | None, fmt: str | None = HTML_FORMAT) -> ReceiptDocument:
        """
        Public download by bearer token. Every successful call is counted.

        Raises:
            ValidationError: missing token or unknown format
            UnsupportedFormatError: pdf
            NotFoundError: unknown token
        """
        if not download_token:
            raise ValidationError("missing download token")

        fmt = (fmt or HTML_FORMAT).lower()
        if fmt == PDF_FORMAT:
            raise UnsupportedFormatError("pdf receipts are not implemented")
        if fmt != HTML_FORMAT:
            raise ValidationError(f"unknown receipt format {fmt!r}", user_message="Invalid format")

        receipt = await self.receipt_service.get_by_token(download_token)
        if receipt is None:
            logger.info("receipt_download_not_found", token=download_token)
            raise NotFoundError("unknown download token")

        receipt_id = receipt.id
        document = ReceiptDocument(
            receipt_number=receipt.receipt_number,
            html=await self.receipt_service.get_snapshot(receipt),
        )
        await self.receipt_service.record_download(receipt_id)
        logger.info("receipt_downloaded", receipt_id=receipt_id)
        return document

    async def resend(self, user_id: str, receipt_id: str) -> Receipt:
        """
        Send the receipt email again, synchronously.

        Raises:
            NotFoundError: unknown receipt, or not the caller's
            UpstreamGatewayError: the email provider did not accept it
        """
        receipt = await self.get_owned_receipt(user_id, receipt_id)
        sent = await self.receipt_service.send_receipt_email(receipt.id, tags=["resend"])
        if not sent:
            raise UpstreamGatewayError(
                f"email provider did not accept receipt {receipt_id}",
                user_message="Unable to send receipt email. Please try again later.",
            )
        return receipt

    async def get_owned_receipt(self, user_id: str, receipt_id: str) -> Receipt:
        receipt = await self.receipt_service.get_owned(receipt_id, user_id)
        if receipt is None:
            logger.info("receipt_not_found", user_id=user_id, receipt_id=receipt_id)
            raise NotFoundError(f"no receipt {receipt_id} for user {user_id}")
        return receipt

    async def get_download_url(self, user_id: str, receipt_id: str) -> str:
        receipt = await self.get_owned_receipt(user_id, receipt_id)
        return build_download_url(receipt.download_token)

    async def list_receipts(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10
    ) -> tuple[list[Receipt], int]:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        return await self.receipt_service.list_for_user(user_id, page, limit)
