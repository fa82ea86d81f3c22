import re
from datetime import datetime, timezone

from creditledger.services.receipt_renderer import (
    ReceiptData,
    format_money,
    format_receipt_date,
    render_receipt,
    render_receipt_email,
)
from creditledger.services.receipt_service import (
    build_download_url,
    generate_download_token,
    generate_receipt_number,
)


def make_data(**overrides) -> ReceiptData:
    fields = {
        "customer_name": "Jane Doe",
        "customer_email": "jane.doe@example.com",
        "receipt_number": "RCPT-LZ3K9QX0-AB12",
        "transaction_date": "January 5, 2026",
        "amount": 1000,
        "currency": "USD",
        "payment_method": "Credit Card",
        "card_brand": "visa",
        "card_last4": "4242",
        "credits": 1200,
        "description": "Purchased 1200 credits",
        "payment_reference": "pi_abc123",
        "site_name": "CreditLedger",
    }
    fields.update(overrides)
    return ReceiptData(**fields)


def test_receipt_number_format():
    number = generate_receipt_number(now_ms=1_700_000_000_000)

    assert re.fullmatch(r"RCPT-[0-9A-Z]+-[0-9A-Z]{4}", number)
    assert int(number.split("-")[1], 36) == 1_700_000_000_000


def test_receipt_numbers_differ():
    assert len({generate_receipt_number() for _ in range(50)}) == 50


def test_download_tokens_are_prefixed_and_unique():
    tokens = {generate_download_token() for _ in range(50)}

    assert len(tokens) == 50
    assert all(t.startswith("tok_") and len(t) > 40 for t in tokens)


def test_download_url_points_at_download_route():
    assert build_download_url("tok_x").endswith("/api/receipts/download?token=tok_x")


def test_format_money():
    assert format_money(1000, "usd") == "$10.00"
    assert format_money(650000, "USD") == "$6,500.00"
    assert format_money(2500, "EUR") == "€25.00"
    assert format_money(1999, "CHF") == "19.99 CHF"


def test_format_receipt_date():
    assert format_receipt_date(datetime(2026, 1, 5, tzinfo=timezone.utc)) == "January 5, 2026"


def test_render_receipt_contains_summary():
    html = render_receipt(make_data())

    assert "RCPT-LZ3K9QX0-AB12" in html
    assert "1,200 credits" in html
    assert "$10.00" in html
    assert "Visa" in html and "4242" in html
    assert "pi_abc123" in html
    assert "View or download" not in html


def test_render_receipt_escapes_customer_fields():
    html = render_receipt(make_data(customer_name="<script>alert(1)</script>"))

    assert "<script>alert(1)</script>" not in html
    assert "&lt;script&gt;" in html


def test_card_details_are_omitted_without_brand():
    html = render_receipt(make_data(payment_method="Card", card_brand=None, card_last4="****"))

    assert "&bull;" not in html


def test_email_variant_links_to_download():
    html = render_receipt_email(make_data(), "https://example.com/api/receipts/download?token=tok_abc")

    assert 'href="https://example.com/api/receipts/download?token=tok_abc"' in html
