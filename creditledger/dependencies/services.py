"""
Service wiring for routes.

Each collaborator has its own provider so tests can override the gateway,
the email sender or the job queue independently.
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from creditledger.database import get_db
from creditledger.services.email_service import EmailSender, email_sender
from creditledger.services.fulfillment_service import FulfillmentEngine
from creditledger.services.payment_gateway import StripeGateway, payment_gateway
from creditledger.services.receipt_access import ReceiptAccessGateway
from creditledger.services.receipt_service import ReceiptService
from creditledger.worker import receipt_jobs


def get_payment_gateway() -> StripeGateway:
    return payment_gateway


def get_email_sender() -> EmailSender:
    return email_sender


def get_receipt_jobs():
    return receipt_jobs


async def get_receipt_service(
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    sender: EmailSender = Depends(get_email_sender),
    jobs=Depends(get_receipt_jobs),
) -> ReceiptService:
    return ReceiptService(db, gateway, sender, jobs=jobs)


async def get_fulfillment_engine(
    db: AsyncSession = Depends(get_db),
    receipt_service: ReceiptService = Depends(get_receipt_service),
    gateway: StripeGateway = Depends(get_payment_gateway),
    jobs=Depends(get_receipt_jobs),
) -> FulfillmentEngine:
    return FulfillmentEngine(db, receipt_service, gateway, jobs=jobs)


async def get_receipt_access(
    db: AsyncSession = Depends(get_db),
    receipt_service: ReceiptService = Depends(get_receipt_service),
    gateway: StripeGateway = Depends(get_payment_gateway),
) -> ReceiptAccessGateway:
    return ReceiptAccessGateway(db, receipt_service, gateway)
