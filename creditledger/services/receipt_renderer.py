"""
Receipt rendering.

Receipts are rendered from in-memory Jinja2 templates with HTML autoescaping.
The same template produces the stored snapshot and the email body; the email
variant additionally carries the download link.
"""
from dataclasses import dataclass, replace
from datetime import datetime

from jinja2 import DictLoader, Environment, select_autoescape


@dataclass(frozen=True)
class ReceiptData:
    customer_name: str
    customer_email: str
    receipt_number: str
    transaction_date: str
    amount: int  # minor units
    currency: str
    payment_method: str
    card_brand: str | None
    card_last4: str | None
    credits: int
    description: str
    payment_reference: str
    site_name: str
    tax_amount: int = 0
    download_url: str | None = None


TEMPLATES = {
    "receipt.html": r"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Receipt {{ r.receipt_number }} - {{ r.site_name }}</title>
  <style>
    body { font-family: -apple-system, "Segoe UI", Helvetica, Arial, sans-serif; background: #f6f9fc; color: #1a1a1a; }
    .container { max-width: 600px; margin: 24px auto; background: #fff; padding: 32px; border-radius: 8px; }
    .muted { color: #6b7280; font-size: 13px; }
    table { width: 100%; border-collapse: collapse; }
    td { padding: 6px 0; }
    td.value { text-align: right; }
    .total td { font-weight: 600; border-top: 1px solid #e5e7eb; padding-top: 12px; }
    hr { border: none; border-top: 1px solid #e5e7eb; margin: 20px 0; }
  </style>
</head>
<body>
  <div class="container">
    <h1>{{ r.site_name }}</h1>
    <p class="muted">Payment Receipt</p>

    <table>
      <tr><td>Receipt #:</td><td class="value">{{ r.receipt_number }}</td></tr>
      <tr><td>Date:</td><td class="value">{{ r.transaction_date }}</td></tr>
    </table>
    <hr>

    <p><strong>Bill To:</strong></p>
    <p>{{ r.customer_name }}<br>{{ r.customer_email }}</p>
    <hr>

    <p><strong>Transaction Details</strong></p>
    <table>
      <tr><td>Description:</td><td class="value">{{ r.description }}</td></tr>
      <tr><td>Credits Purchased:</td><td class="value">{{ "{:,}".format(r.credits) }} credits</td></tr>
      <tr>
        <td>Payment Method:</td>
        <td class="value">{{ r.payment_method }}{% if r.card_brand and r.card_last4 %} ({{ r.card_brand|title }} &bull;&bull;&bull;&bull; {{ r.card_last4 }}){% endif %}</td>
      </tr>
    </table>
    <hr>

    <p><strong>Payment Summary</strong></p>
    <table>
      <tr><td>Subtotal:</td><td class="value">{{ money(r.amount - r.tax_amount, r.currency) }}</td></tr>
      {% if r.tax_amount %}<tr><td>Tax:</td><td class="value">{{ money(r.tax_amount, r.currency) }}</td></tr>{% endif %}
      <tr class="total"><td>Total Paid:</td><td class="value">{{ money(r.amount, r.currency) }}</td></tr>
    </table>

    {% if r.download_url %}
    <hr>
    <p><a href="{{ r.download_url }}">View or download this receipt</a></p>
    {% endif %}

    <hr>
    <p class="muted">Payment reference: {{ r.payment_reference }}</p>
    <p class="muted">Thank you for your purchase.</p>
  </div>
</body>
</html>
""",
}

env = Environment(loader=DictLoader(TEMPLATES), autoescape=select_autoescape(["html"]))

CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£"}


def format_money(amount_minor: int, currency: str) -> str:
    """1000, 'usd' -> '$10.00'; unknown currencies fall back to the ISO code."""
    currency = (currency or "USD").upper()
    value = f"{amount_minor / 100:,.2f}"
    symbol = CURRENCY_SYMBOLS.get(currency)
    return f"{symbol}{value}" if symbol else f"{value} {currency}"


def format_receipt_date(moment: datetime) -> str:
    return f"{moment:%B} {moment.day}, {moment.year}"


def render_receipt(data: ReceiptData) -> str:
    """Render the receipt document as HTML."""
    template = env.get_template("receipt.html")
    return template.render(r=data, money=format_money)


def render_receipt_email(data: ReceiptData, download_url: str) -> str:
    """Render the email body, which links back to the token download endpoint."""
    return render_receipt(replace(data, download_url=download_url))
