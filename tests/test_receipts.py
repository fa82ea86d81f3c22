"""
Receipt read path: ownership, masking, rate limiting, download and resend.
"""
import pytest
import pytest_asyncio
from sqlalchemy import update

from creditledger.errors import UpstreamGatewayError
from creditledger.models import Receipt
from creditledger.services.credit_service import CreditService

from conftest import auth_headers, make_payment_details, succeeded_intent


@pytest_asyncio.fixture
async def purchase(db, users, make_engine):
    intent = succeeded_intent("pi_owned1")
    result = await make_engine(db).fulfill_payment(intent["id"], intent["metadata"])
    receipt = await db.get(Receipt, result.receipt_id)
    return receipt


@pytest.mark.asyncio
async def test_lookup_returns_masked_receipt_for_owner(client, purchase):
    response = await client.get(
        "/api/receipts/lookup",
        params={"payment_reference": "pi_owned1"},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["receipt_number"] == purchase.receipt_number
    assert data["amount"] == 1000
    assert data["currency"] == "USD"
    assert data["payment_method_summary"] == {"type": "Credit Card", "brand": "visa", "last4": "4242"}
    assert data["billing_details"] == {"name": "Jane Doe", "email": "ja******@example.com"}
    assert data["receipt_url"] == "https://pay.stripe.com/receipts/acct_1/ch_123"


@pytest.mark.asyncio
async def test_lookup_drops_untrusted_receipt_url(client, purchase, gateway):
    gateway.retrieve_payment.side_effect = lambda ref: make_payment_details(
        ref, receipt_url="https://stripe.com.evil.example/receipt"
    )

    response = await client.get(
        "/api/receipts/lookup",
        params={"payment_reference": "pi_owned1"},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 200
    assert response.json()["receipt_url"] is None


@pytest.mark.asyncio
async def test_lookup_by_other_user_looks_like_missing_receipt(client, purchase):
    not_owned = await client.get(
        "/api/receipts/lookup",
        params={"payment_reference": "pi_owned1"},
        headers=auth_headers("u2"),
    )
    missing = await client.get(
        "/api/receipts/lookup",
        params={"payment_reference": "pi_doesnotexist"},
        headers=auth_headers("u2"),
    )

    assert not_owned.status_code == 404
    assert missing.status_code == 404
    assert not_owned.json() == missing.json() == {"error": "Receipt not found", "retryable": False}


@pytest.mark.asyncio
@pytest.mark.parametrize("reference", ["", "ch_123", "pi_bad-ref", "pi_'; drop table receipts"])
async def test_lookup_rejects_malformed_reference(client, users, reference):
    response = await client.get(
        "/api/receipts/lookup",
        params={"payment_reference": reference},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_lookup_requires_authentication(client, purchase):
    response = await client.get("/api/receipts/lookup", params={"payment_reference": "pi_owned1"})

    assert response.status_code == 401
    assert response.json() == {"error": "Authentication required", "retryable": False}


@pytest.mark.asyncio
async def test_lookup_rejects_invalid_token(client, purchase):
    response = await client.get(
        "/api/receipts/lookup",
        params={"payment_reference": "pi_owned1"},
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_lookup_serves_stored_receipt_when_gateway_is_down(client, purchase, gateway):
    gateway.retrieve_payment.side_effect = UpstreamGatewayError("timeout")

    response = await client.get(
        "/api/receipts/lookup",
        params={"payment_reference": "pi_owned1"},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["receipt_number"] == purchase.receipt_number
    assert data["billing_details"]["email"] == "ja******@example.com"
    # Falls back to our own download link, which is on a trusted host
    assert data["receipt_url"].startswith("http://localhost:3000/api/receipts/download?token=tok_")


@pytest.mark.asyncio
async def test_lookup_without_stored_receipt_fails_retryably_when_gateway_is_down(client, db, users, gateway):
    await CreditService(db).grant_purchase("u1", 1200, "pi_noreceipt", "Purchased 1200 credits", 2)
    gateway.retrieve_payment.side_effect = UpstreamGatewayError("timeout")

    response = await client.get(
        "/api/receipts/lookup",
        params={"payment_reference": "pi_noreceipt"},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 503
    assert response.json()["retryable"] is True


@pytest.mark.asyncio
async def test_lookup_is_rate_limited_per_user(client, purchase, clock):
    params = {"payment_reference": "pi_owned1"}

    for _ in range(10):
        response = await client.get("/api/receipts/lookup", params=params, headers=auth_headers("u1"))
        assert response.status_code == 200

    throttled = await client.get("/api/receipts/lookup", params=params, headers=auth_headers("u1"))
    assert throttled.status_code == 429
    assert throttled.json()["retryable"] is True
    assert int(throttled.headers["Retry-After"]) >= 1

    # Another user has their own window
    other = await client.get("/api/receipts/lookup", params=params, headers=auth_headers("u2"))
    assert other.status_code == 404

    clock.advance(61)
    recovered = await client.get("/api/receipts/lookup", params=params, headers=auth_headers("u1"))
    assert recovered.status_code == 200


@pytest.mark.asyncio
async def test_download_serves_snapshot_and_counts(client, purchase, session_maker):
    for _ in range(2):
        response = await client.get("/api/receipts/download", params={"token": purchase.download_token})
        assert response.status_code == 200

    assert response.headers["content-type"].startswith("text/html")
    assert response.headers["cache-control"] == "private, no-cache, no-store"
    assert response.headers["content-disposition"] == (
        f'inline; filename="receipt-{purchase.receipt_number}.html"'
    )
    assert purchase.receipt_number in response.text

    async with session_maker() as session:
        stored = await session.get(Receipt, purchase.id)
        assert stored.download_count == 2
        assert stored.last_downloaded_at is not None


@pytest.mark.asyncio
async def test_download_regenerates_missing_snapshot(client, purchase, db):
    await db.execute(update(Receipt).where(Receipt.id == purchase.id).values(html_content=None))
    await db.commit()

    response = await client.get("/api/receipts/download", params={"token": purchase.download_token})

    assert response.status_code == 200
    assert purchase.receipt_number in response.text
    assert "1,200 credits" in response.text


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "params, status_code",
    [
        ({"format": "pdf"}, 501),
        ({"format": "docx"}, 400),
        ({}, 200),
        ({"format": "HTML"}, 200),
    ],
)
async def test_download_formats(client, purchase, params, status_code):
    response = await client.get(
        "/api/receipts/download",
        params={"token": purchase.download_token, **params},
    )

    assert response.status_code == status_code


@pytest.mark.asyncio
async def test_download_with_unknown_or_missing_token(client, purchase):
    unknown = await client.get("/api/receipts/download", params={"token": "tok_unknown"})
    missing = await client.get("/api/receipts/download")

    assert unknown.status_code == 404
    assert missing.status_code == 400


@pytest.mark.asyncio
async def test_resend_sends_email_with_download_link(client, purchase, email_sender, session_maker):
    response = await client.post(
        "/api/receipts/resend",
        json={"receipt_id": purchase.id},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 200
    assert response.json() == {"sent": True, "receipt_id": purchase.id}

    kwargs = email_sender.send.await_args.kwargs
    assert kwargs["recipient"] == "jane.doe@example.com"
    assert purchase.receipt_number in kwargs["subject"]
    assert f"token={purchase.download_token}" in kwargs["html"]

    async with session_maker() as session:
        stored = await session.get(Receipt, purchase.id)
        assert stored.email_sent_at is not None


@pytest.mark.asyncio
async def test_resend_of_someone_elses_receipt_is_not_found(client, purchase, email_sender):
    response = await client.post(
        "/api/receipts/resend",
        json={"receipt_id": purchase.id},
        headers=auth_headers("u2"),
    )

    assert response.status_code == 404
    email_sender.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_resend_reports_email_provider_failure(client, purchase, email_sender):
    email_sender.send.return_value = False

    response = await client.post(
        "/api/receipts/resend",
        json={"receiptId": purchase.id},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 503
    assert response.json() == {
        "error": "Unable to send receipt email. Please try again later.",
        "retryable": True,
    }


@pytest.mark.asyncio
async def test_list_receipts_only_shows_own(client, purchase):
    own = await client.get("/api/receipts", headers=auth_headers("u1"))
    other = await client.get("/api/receipts", headers=auth_headers("u2"))

    assert own.status_code == 200
    assert [r["id"] for r in own.json()["receipts"]] == [purchase.id]
    assert "download_token" not in own.json()["receipts"][0]
    assert own.json()["pagination"]["total"] == 1
    assert other.json()["receipts"] == []


@pytest.mark.asyncio
async def test_download_url_is_owner_only(client, purchase):
    own = await client.get(f"/api/receipts/{purchase.id}/download-url", headers=auth_headers("u1"))
    other = await client.get(f"/api/receipts/{purchase.id}/download-url", headers=auth_headers("u2"))

    assert own.status_code == 200
    assert own.json()["download_url"].endswith(f"token={purchase.download_token}")
    assert other.status_code == 404
