"""
Input validation and output masking for the receipt read path.
"""
import re
from urllib.parse import urlparse


PAYMENT_REFERENCE_PATTERN = re.compile(r"^pi_[A-Za-z0-9_]+$")
MAX_PAYMENT_REFERENCE_LENGTH = 255
VISIBLE_LOCAL_PART_CHARS = 2


def is_valid_payment_reference(payment_reference: str | None) -> bool:
    """Gateway payment intent ids look like pi_<alphanumerics>."""
    if not payment_reference or len(payment_reference) > MAX_PAYMENT_REFERENCE_LENGTH:
        return False
    return PAYMENT_REFERENCE_PATTERN.fullmatch(payment_reference) is not None


def mask_email(email: str | None) -> str | None:
    """
    Redact the local part of an email address, keeping the domain.

    jane.doe@example.com -> ja******@example.com. Local parts of two
    characters or fewer are left as they are.
    """
    if not email or "@" not in email:
        return email
    local_part, _, domain = email.rpartition("@")
    if not local_part or not domain:
        return email
    if len(local_part) <= VISIBLE_LOCAL_PART_CHARS:
        return email
    hidden = len(local_part) - VISIBLE_LOCAL_PART_CHARS
    return f"{local_part[:VISIBLE_LOCAL_PART_CHARS]}{'*' * hidden}@{domain}"


def host_is_trusted(host: str, trusted_hosts: list[str]) -> bool:
    host = host.lower().rstrip(".")
    for trusted in trusted_hosts:
        trusted = trusted.lower()
        if host == trusted or host.endswith("." + trusted):
            return True
    return False


def sanitize_receipt_url(url: str | None, trusted_hosts: list[str]) -> str | None:
    """Return the URL only if it is https/http on a trusted host, else None."""
    if not url:
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if parsed.scheme not in ("https", "http") or not parsed.hostname:
        return None
    if not host_is_trusted(parsed.hostname, trusted_hosts):
        return None
    return url


def mask_receipt_info(receipt_info: dict, trusted_hosts: list[str]) -> dict:
    """
    Mask a receipt-info payload before it leaves the server.

    Returns a copy; the input is not mutated.
    """
    masked = dict(receipt_info)

    billing = masked.get("billing_details")
    if billing:
        billing = dict(billing)
        billing["email"] = mask_email(billing.get("email"))
        masked["billing_details"] = billing

    masked["receipt_url"] = sanitize_receipt_url(masked.get("receipt_url"), trusted_hosts)
    return masked
