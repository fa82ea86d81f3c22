"""
Credit API routes.

Provides endpoints for credit balance, transactions, checkout and payment
confirmation. Every endpoint is per-user rate limited.
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from creditledger.catalog import get_credit_package
from creditledger.database import get_db
from creditledger.dependencies.auth import TokenPayload
from creditledger.dependencies.rate_limit import enforce_rate_limit
from creditledger.dependencies.services import get_fulfillment_engine, get_payment_gateway
from creditledger.errors import ValidationError
from creditledger.logging_config import get_logger
from creditledger.services.credit_service import CreditService
from creditledger.services.fulfillment_service import FulfillmentEngine
from creditledger.services.payment_gateway import StripeGateway
from creditledger.services.user_service import UserService


router = APIRouter(prefix="/api/credits", tags=["credits"])
logger = get_logger(component="credits")


class CreatePaymentIntentRequest(BaseModel):
    """Request model for starting a checkout."""
    model_config = ConfigDict(populate_by_name=True)

    package_id: str = Field(alias="packageId", min_length=1)


class ConfirmPaymentRequest(BaseModel):
    """Request model for confirming a completed checkout."""
    model_config = ConfigDict(populate_by_name=True)

    package_id: str = Field(alias="packageId", min_length=1)
    payment_reference: str = Field(alias="paymentIntentId", min_length=1)


@router.get("", response_model=dict)
async def get_credits(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    current_user: TokenPayload = Depends(enforce_rate_limit),
    db: AsyncSession = Depends(get_db)
):
    """Get credit balance and transactions for the current user."""
    credit_service = CreditService(db)
    balance = await credit_service.get_balance(current_user.sub)
    transactions, total = await credit_service.get_transactions(current_user.sub, page, limit)

    return {
        "balance": balance,
        "transactions": [
            {
                "id": str(t.id),
                "amount": t.amount,
                "type": t.type.value if hasattr(t.type, 'value') else str(t.type),
                "description": t.description,
                "payment_reference": t.payment_reference,
                "receipt_id": t.receipt_id,
                "expiration_date": t.expiration_date.isoformat() if t.expiration_date else None,
                "created_at": t.created_at.isoformat() if t.created_at else None
            }
            for t in transactions
        ],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@router.post("/payment-intent", response_model=dict)
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    current_user: TokenPayload = Depends(enforce_rate_limit),
    gateway: StripeGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db)
):
    """
    Start a checkout for a catalog package.

    Returns the client secret the browser needs to complete payment. The
    payment carries the user, package and credit metadata that fulfillment
    later validates.
    """
    package = get_credit_package(request.package_id)
    if package is None:
        raise ValidationError(f"unknown package {request.package_id}", user_message="Invalid package")

    user = await UserService(db).get_by_id(current_user.sub)
    receipt_email = user.email if user else current_user.email

    intent = await gateway.create_payment_intent(package, current_user.sub, receipt_email=receipt_email)
    logger.info(
        "checkout_started",
        user_id=current_user.sub,
        package_id=package.id,
        payment_reference=intent.payment_reference,
    )

    return {
        "client_secret": intent.client_secret,
        "payment_reference": intent.payment_reference,
        "package": {
            "id": package.id,
            "credits": package.credits,
            "amount": package.price_cents,
            "currency": package.currency,
        },
    }


@router.post("/confirm", response_model=dict)
async def confirm_payment(
    request: ConfirmPaymentRequest,
    current_user: TokenPayload = Depends(enforce_rate_limit),
    engine: FulfillmentEngine = Depends(get_fulfillment_engine),
    db: AsyncSession = Depends(get_db)
):
    """
    Confirm a completed checkout from the client.

    Safe to call after (or racing with) the payment webhook: both paths
    converge on a single grant.
    """
    result = await engine.confirm_payment(
        user_id=current_user.sub,
        package_id=request.package_id,
        payment_reference=request.payment_reference,
    )
    balance = await CreditService(db).get_balance(current_user.sub)

    return {
        "success": True,
        "outcome": result.outcome.value,
        "receipt_id": result.receipt_id,
        "receipt_status": result.receipt_status,
        "balance": balance,
    }
