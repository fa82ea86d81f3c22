"""
Receipt API routes.

Owner-facing routes require a bearer token and are rate limited per user.
The download route is public and authorised by the receipt's token alone.
"""
from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, ConfigDict, Field

from creditledger.dependencies.auth import TokenPayload
from creditledger.dependencies.rate_limit import enforce_rate_limit
from creditledger.dependencies.services import get_receipt_access
from creditledger.models.receipt import Receipt
from creditledger.services.receipt_access import MAX_PAGE_SIZE, ReceiptAccessGateway


router = APIRouter(prefix="/api/receipts", tags=["receipts"])


class ResendReceiptRequest(BaseModel):
    """Request model for resending a receipt email."""
    model_config = ConfigDict(populate_by_name=True)

    receipt_id: str = Field(alias="receiptId", min_length=1)


def serialize_receipt(receipt: Receipt) -> dict:
    return {
        "id": receipt.id,
        "receipt_number": receipt.receipt_number,
        "payment_reference": receipt.payment_reference,
        "amount": receipt.amount,
        "currency": receipt.currency,
        "payment_method": receipt.payment_method,
        "card_brand": receipt.card_brand,
        "card_last4": receipt.card_last4,
        "download_count": receipt.download_count,
        "email_sent_at": receipt.email_sent_at.isoformat() if receipt.email_sent_at else None,
        "created_at": receipt.created_at.isoformat() if receipt.created_at else None,
    }


@router.get("", response_model=dict)
async def list_receipts(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    current_user: TokenPayload = Depends(enforce_rate_limit),
    access: ReceiptAccessGateway = Depends(get_receipt_access),
):
    """List the caller's receipts, newest first."""
    receipts, total = await access.list_receipts(current_user.sub, page, limit)
    return {
        "receipts": [serialize_receipt(r) for r in receipts],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@router.get("/lookup", response_model=dict)
async def lookup_receipt(
    payment_reference: str | None = Query(None),
    current_user: TokenPayload = Depends(enforce_rate_limit),
    access: ReceiptAccessGateway = Depends(get_receipt_access),
):
    """Masked receipt information for one of the caller's payments."""
    return await access.lookup(current_user.sub, payment_reference)


@router.get("/download", response_class=HTMLResponse)
async def download_receipt(
    token: str | None = Query(None),
    format: str = Query("html"),
    access: ReceiptAccessGateway = Depends(get_receipt_access),
):
    """Serve the receipt snapshot for a download token."""
    document = await access.download(token, format)
    return HTMLResponse(
        content=document.html,
        headers={
            "Cache-Control": "private, no-cache, no-store",
            "Content-Disposition": f'inline; filename="{document.filename}"',
        },
    )


@router.post("/resend", response_model=dict)
async def resend_receipt(
    request: ResendReceiptRequest,
    current_user: TokenPayload = Depends(enforce_rate_limit),
    access: ReceiptAccessGateway = Depends(get_receipt_access),
):
    """Email the receipt to the caller again."""
    receipt = await access.resend(current_user.sub, request.receipt_id)
    return {"sent": True, "receipt_id": receipt.id}


@router.get("/{receipt_id}/download-url", response_model=dict)
async def get_download_url(
    receipt_id: str,
    current_user: TokenPayload = Depends(enforce_rate_limit),
    access: ReceiptAccessGateway = Depends(get_receipt_access),
):
    """Shareable download link for one of the caller's receipts."""
    url = await access.get_download_url(current_user.sub, receipt_id)
    return {"receipt_id": receipt_id, "download_url": url}
