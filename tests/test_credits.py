"""
Credit balance, history and client-side payment confirmation.
"""
import pytest

from creditledger.errors import NotFoundError, UpstreamGatewayError

from conftest import auth_headers, make_event, make_payment_details, sign_stripe_payload, succeeded_intent


@pytest.mark.asyncio
async def test_confirm_fulfills_succeeded_payment(client, users, gateway):
    response = await client.post(
        "/api/credits/confirm",
        json={"package_id": "p100", "payment_reference": "pi_confirm1"},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "fulfilled"
    assert data["receipt_status"] == "created"
    assert data["balance"] == 1200
    gateway.retrieve_payment.assert_awaited_with("pi_confirm1")


@pytest.mark.asyncio
async def test_confirm_and_webhook_converge_on_one_grant(client, users):
    confirm = await client.post(
        "/api/credits/confirm",
        json={"packageId": "p100", "paymentIntentId": "pi_both"},
        headers=auth_headers("u1"),
    )
    payload = make_event("payment_intent.succeeded", succeeded_intent("pi_both"))
    webhook = await client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": sign_stripe_payload(payload)},
    )
    balance = await client.get("/api/credits", headers=auth_headers("u1"))

    assert confirm.json()["outcome"] == "fulfilled"
    assert webhook.json()["outcome"] == "already_fulfilled"
    assert balance.json()["balance"] == 1200
    assert len(balance.json()["transactions"]) == 1


@pytest.mark.asyncio
async def test_confirm_rejects_unsucceeded_payment(client, users, gateway):
    gateway.retrieve_payment.side_effect = lambda ref: make_payment_details(ref, status="processing")

    response = await client.post(
        "/api/credits/confirm",
        json={"package_id": "p100", "payment_reference": "pi_pending"},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Payment has not succeeded"


@pytest.mark.asyncio
async def test_confirm_rejects_payment_made_by_someone_else(client, users):
    # Default payment metadata belongs to u1
    response = await client.post(
        "/api/credits/confirm",
        json={"package_id": "p100", "payment_reference": "pi_theirs"},
        headers=auth_headers("u2"),
    )
    balance = await client.get("/api/credits", headers=auth_headers("u2"))

    assert response.status_code == 400
    assert response.json()["error"] == "Payment does not match this purchase"
    assert balance.json()["balance"] == 0


@pytest.mark.asyncio
async def test_confirm_rejects_package_mismatch(client, users):
    response = await client.post(
        "/api/credits/confirm",
        json={"package_id": "p500", "payment_reference": "pi_wrongpkg"},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_confirm_unknown_payment_is_not_found(client, users, gateway):
    gateway.retrieve_payment.side_effect = NotFoundError("no such payment_intent")

    response = await client.post(
        "/api/credits/confirm",
        json={"package_id": "p100", "payment_reference": "pi_nope"},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_confirm_validates_reference_before_calling_gateway(client, users, gateway):
    response = await client.post(
        "/api/credits/confirm",
        json={"package_id": "p100", "payment_reference": "cs_checkout_session"},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 400
    gateway.retrieve_payment.assert_not_awaited()


@pytest.mark.asyncio
async def test_credits_require_authentication(client):
    response = await client.get("/api/credits")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_credit_history_is_paginated(client, users, db, make_engine):
    engine = make_engine(db)
    for i in range(3):
        intent = succeeded_intent(f"pi_page{i}")
        await engine.fulfill_payment(intent["id"], intent["metadata"])

    response = await client.get("/api/credits", params={"page": 2, "limit": 2}, headers=auth_headers("u1"))

    data = response.json()
    assert data["balance"] == 3600
    assert len(data["transactions"]) == 1
    assert data["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert data["transactions"][0]["type"] == "PURCHASE"


@pytest.mark.asyncio
async def test_payment_intent_carries_fulfillment_metadata(client, users, gateway):
    response = await client.post(
        "/api/credits/payment-intent",
        json={"packageId": "p250"},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["client_secret"] == "pi_checkout1_secret_abc"
    assert data["payment_reference"] == "pi_checkout1"
    assert data["package"] == {"id": "p250", "credits": 3000, "amount": 2500, "currency": "USD"}

    package, user_id = gateway.create_payment_intent.await_args.args
    assert package.id == "p250"
    assert user_id == "u1"
    assert gateway.create_payment_intent.await_args.kwargs["receipt_email"] == "jane.doe@example.com"


@pytest.mark.asyncio
async def test_payment_intent_rejects_unknown_package(client, users, gateway):
    response = await client.post(
        "/api/credits/payment-intent",
        json={"package_id": "p999"},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid package"
    gateway.create_payment_intent.assert_not_awaited()


@pytest.mark.asyncio
async def test_payment_intent_surfaces_gateway_outage(client, users, gateway):
    gateway.create_payment_intent.side_effect = UpstreamGatewayError("stripe unavailable")

    response = await client.post(
        "/api/credits/payment-intent",
        json={"package_id": "p100"},
        headers=auth_headers("u1"),
    )

    assert response.status_code == 503
    assert response.json()["retryable"] is True


@pytest.mark.asyncio
async def test_payment_intent_requires_authentication(client, gateway):
    response = await client.post("/api/credits/payment-intent", json={"package_id": "p100"})

    assert response.status_code == 401
    gateway.create_payment_intent.assert_not_awaited()


@pytest.mark.asyncio
async def test_credit_endpoints_are_rate_limited_per_user(client, users, gateway):
    for _ in range(10):
        assert (await client.get("/api/credits", headers=auth_headers("u1"))).status_code == 200

    limited = await client.post(
        "/api/credits/confirm",
        json={"package_id": "p100", "payment_reference": "pi_limited"},
        headers=auth_headers("u1"),
    )
    other_user = await client.get("/api/credits", headers=auth_headers("u2"))

    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) >= 1
    assert limited.json()["retryable"] is True
    gateway.retrieve_payment.assert_not_awaited()
    assert other_user.status_code == 200
