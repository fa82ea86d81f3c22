"""
Receipt Service

Materialises receipts for fulfilled purchases and owns every write to the
receipts table: creation, download statistics and email timestamps.
"""
import secrets
import string
import time
from datetime import datetime, timezone

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from creditledger.catalog import get_credit_package_for_credits
from creditledger.config import settings
from creditledger.errors import NotFoundError, UpstreamGatewayError
from creditledger.logging_config import get_logger
from creditledger.models.credit import CreditTransaction
from creditledger.models.receipt import Receipt
from creditledger.models.user import User
from creditledger.services.credit_service import CreditService
from creditledger.services.email_service import EmailSender
from creditledger.services.payment_gateway import (
    DEFAULT_CARD_LAST4,
    PaymentDetails,
    StripeGateway,
)
from creditledger.services.receipt_renderer import (
    ReceiptData,
    format_receipt_date,
    render_receipt,
    render_receipt_email,
)


logger = get_logger(component="receipts")

RECEIPT_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
BASE36_ALPHABET = string.digits + string.ascii_uppercase
MAX_RECEIPT_NUMBER_ATTEMPTS = 3


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_receipt_number(now_ms: int | None = None) -> str:
    """RCPT-<base36 millisecond timestamp>-<4 random chars>."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(RECEIPT_SUFFIX_ALPHABET) for _ in range(4))
    return f"RCPT-{_to_base36(now_ms)}-{suffix}"


def generate_download_token() -> str:
    """High-entropy bearer secret for receipt downloads."""
    return f"tok_{secrets.token_urlsafe(32)}"


def build_download_url(download_token: str) -> str:
    return f"{settings.SITE_URL.rstrip('/')}/api/receipts/download?token={download_token}"


def receipt_email_subject(receipt_number: str) -> str:
    return f"Receipt for your purchase - {receipt_number}"


class ReceiptService:
    """Service for generating, reading and updating receipts."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: StripeGateway,
        email_sender: EmailSender,
        jobs=None,
    ):
        self.db = db
        self.gateway = gateway
        self.email_sender = email_sender
        self.jobs = jobs

    # -- reads -------------------------------------------------------------

    async def get_by_id(self, receipt_id: str) -> Receipt | None:
        result = await self.db.execute(select(Receipt).where(Receipt.id == receipt_id))
        return result.scalar_one_or_none()

    async def get_by_transaction(self, transaction_id: str) -> Receipt | None:
        result = await self.db.execute(
            select(Receipt).where(Receipt.transaction_id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def get_by_token(self, download_token: str) -> Receipt | None:
        result = await self.db.execute(
            select(Receipt).where(Receipt.download_token == download_token)
        )
        return result.scalar_one_or_none()

    async def get_owned(self, receipt_id: str, user_id: str) -> Receipt | None:
        """Get a receipt only if it belongs to user_id."""
        result = await self.db.execute(
            select(Receipt).where(
                Receipt.id == receipt_id,
                Receipt.user_id == user_id,  # SECURITY: ownership check
            )
        )
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10
    ) -> tuple[list[Receipt], int]:
        """
        Get a page of the user's receipts, newest first.

        Returns:
            (receipts, total count)
        """
        stmt = (
            select(Receipt)
            .where(Receipt.user_id == user_id)
            .order_by(Receipt.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        receipts = list((await self.db.execute(stmt)).scalars().all())
        total = (
            await self.db.execute(
                select(func.count(Receipt.id)).where(Receipt.user_id == user_id)
            )
        ).scalar_one()
        return receipts, total

    # -- creation ----------------------------------------------------------

    async def fetch_payment_details(self, payment_reference: str) -> PaymentDetails:
        """
        Best-effort gateway lookup.

        Never raises: on any gateway failure an empty PaymentDetails is
        returned and the caller falls back to defaults.
        """
        try:
            return await self.gateway.retrieve_payment(payment_reference)
        except (NotFoundError, UpstreamGatewayError) as e:
            logger.warning(
                "receipt_payment_details_unavailable",
                payment_reference=payment_reference,
                error=e.detail,
            )
            return PaymentDetails(payment_reference=payment_reference)

    async def create_receipt(
        self,
        transaction: CreditTransaction,
        user: User,
        payment_reference: str,
        fallback_amount: int = 0,
        fallback_currency: str = "USD",
    ) -> Receipt:
        """
        Create the receipt for a fulfilled transaction, or return the existing one.

        Args:
            transaction: The PURCHASE ledger row
            user: Owner of the transaction
            payment_reference: Gateway payment identifier
            fallback_amount: Amount in minor units when the gateway has none
            fallback_currency: Currency when the gateway has none

        Returns:
            The persisted Receipt
        """
        # Plain values only: a rollback below expires ORM instances
        transaction_id = transaction.id
        credits = transaction.amount
        description = transaction.description
        created_at = transaction.created_at or datetime.now(timezone.utc)
        user_id = user.id
        customer_name = user.display_name
        customer_email = user.email or ""

        existing = await self.get_by_transaction(transaction_id)
        if existing:
            return existing

        details = await self.fetch_payment_details(payment_reference)
        method = details.payment_method
        download_token = generate_download_token()

        for attempt in range(1, MAX_RECEIPT_NUMBER_ATTEMPTS + 1):
            receipt_number = generate_receipt_number()
            data = ReceiptData(
                customer_name=customer_name,
                customer_email=customer_email,
                receipt_number=receipt_number,
                transaction_date=format_receipt_date(
                    datetime.fromtimestamp(details.created, timezone.utc)
                    if details.created else created_at
                ),
                amount=details.amount if details.amount is not None else fallback_amount,
                currency=details.currency or fallback_currency.upper(),
                payment_method=method.type,
                card_brand=method.brand,
                card_last4=method.last4 or DEFAULT_CARD_LAST4,
                credits=credits,
                description=description,
                payment_reference=payment_reference,
                site_name=settings.SITE_NAME,
            )

            receipt = Receipt(
                user_id=user_id,
                transaction_id=transaction_id,
                payment_reference=payment_reference,
                charge_reference=details.charge_reference,
                receipt_number=receipt_number,
                amount=data.amount,
                currency=data.currency,
                payment_method=data.payment_method,
                card_brand=data.card_brand,
                card_last4=data.card_last4,
                html_content=render_receipt(data),
                download_token=download_token,
                download_count=0,
            )
            self.db.add(receipt)

            try:
                await self.db.flush()
                await CreditService(self.db).link_receipt(
                    transaction_id, receipt.id, build_download_url(download_token)
                )
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                concurrent = await self.get_by_transaction(transaction_id)
                if concurrent:
                    logger.info("receipt_already_created", transaction_id=transaction_id)
                    return concurrent
                logger.warning("receipt_number_collision", attempt=attempt)
                continue

            logger.info(
                "receipt_created",
                receipt_id=receipt.id,
                receipt_number=receipt_number,
                transaction_id=transaction_id,
                gateway_details=details.has_charge,
            )
            await self.dispatch_email(receipt.id)
            return receipt

        raise RuntimeError(f"could not allocate a receipt number for {transaction_id}")

    async def create_receipt_for_transaction(self, transaction_id: str) -> Receipt:
        """Create (or return) the receipt for a ledger row by id. Used by retries."""
        transaction = await CreditService(self.db).get_transaction(transaction_id)
        if not transaction or not transaction.payment_reference:
            raise NotFoundError(f"no purchase transaction {transaction_id}")
        user = await self.db.get(User, transaction.user_id)
        if not user:
            raise NotFoundError(f"no user {transaction.user_id} for transaction {transaction_id}")

        package = get_credit_package_for_credits(transaction.amount)
        return await self.create_receipt(
            transaction,
            user,
            transaction.payment_reference,
            fallback_amount=package.price_cents if package else 0,
            fallback_currency=package.currency if package else "USD",
        )

    # -- rendering ---------------------------------------------------------

    async def load_receipt_data(self, receipt: Receipt) -> ReceiptData:
        """Rebuild ReceiptData from stored receipt, transaction and user rows."""
        transaction = await self.db.get(CreditTransaction, receipt.transaction_id)
        user = await self.db.get(User, receipt.user_id)
        created_at = receipt.created_at or datetime.now(timezone.utc)

        return ReceiptData(
            customer_name=user.display_name if user else "Customer",
            customer_email=(user.email if user else "") or "",
            receipt_number=receipt.receipt_number,
            transaction_date=format_receipt_date(created_at),
            amount=receipt.amount,
            currency=receipt.currency,
            payment_method=receipt.payment_method,
            card_brand=receipt.card_brand,
            card_last4=receipt.card_last4 or DEFAULT_CARD_LAST4,
            credits=transaction.amount if transaction else 0,
            description=transaction.description if transaction else "Credit purchase",
            payment_reference=receipt.payment_reference,
            site_name=settings.SITE_NAME,
        )

    async def get_snapshot(self, receipt: Receipt) -> str:
        """Stored snapshot, or a fresh rendering when it is missing."""
        if receipt.html_content:
            return receipt.html_content
        logger.warning("receipt_snapshot_missing", receipt_id=receipt.id)
        return render_receipt(await self.load_receipt_data(receipt))

    # -- tracked mutations -------------------------------------------------

    async def record_download(self, receipt_id: str) -> None:
        await self.db.execute(
            update(Receipt)
            .where(Receipt.id == receipt_id)
            .values(
                download_count=Receipt.download_count + 1,
                last_downloaded_at=datetime.now(timezone.utc),
            )
        )
        await self.db.commit()

    async def mark_email_sent(self, receipt_id: str) -> None:
        await self.db.execute(
            update(Receipt)
            .where(Receipt.id == receipt_id)
            .values(email_sent_at=datetime.now(timezone.utc))
        )
        await self.db.commit()

    async def mark_email_delivered(self, receipt_id: str) -> bool:
        result = await self.db.execute(
            update(Receipt)
            .where(Receipt.id == receipt_id)
            .values(email_delivered_at=datetime.now(timezone.utc))
        )
        await self.db.commit()
        return result.rowcount > 0

    # -- email -------------------------------------------------------------

    async def dispatch_email(self, receipt_id: str) -> None:
        """Hand the receipt email to the background queue. Never raises."""
        if self.jobs is None:
            return
        try:
            await self.jobs.dispatch_receipt_email(receipt_id)
        except Exception as e:
            logger.error("receipt_email_dispatch_failed", receipt_id=receipt_id, error=str(e))

    async def send_receipt_email(self, receipt_id: str, tags: list[str] | None = None) -> bool:
        """
        Render and send the receipt email, recording email_sent_at on success.

        Returns:
            True if the provider accepted the email
        """
        receipt = await self.get_by_id(receipt_id)
        if not receipt:
            raise NotFoundError(f"receipt {receipt_id} not found")

        user = await self.db.get(User, receipt.user_id)
        if not user or not user.email:
            logger.warning("receipt_email_no_recipient", receipt_id=receipt_id)
            return False

        data = await self.load_receipt_data(receipt)
        html = render_receipt_email(data, build_download_url(receipt.download_token))

        sent = await self.email_sender.send(
            html=html,
            recipient=user.email,
            subject=receipt_email_subject(receipt.receipt_number),
            tags=tags or ["automated"],
        )
        if sent:
            await self.mark_email_sent(receipt_id)
            logger.info("receipt_email_sent", receipt_id=receipt_id)
        else:
            logger.warning("receipt_email_failed", receipt_id=receipt_id)
        return sent
