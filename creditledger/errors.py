"""
Error taxonomy for the fulfillment and receipt paths.

Every error carries a generic, user-facing message. Internal detail is passed
as the exception message and only ever reaches server-side logs.
"""
import enum


GENERIC_RECEIPT_MESSAGE = "Unable to process receipt request. Please try again."


class ReceiptServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    user_message: str = GENERIC_RECEIPT_MESSAGE
    retryable: bool = False

    def __init__(self, detail: str | None = None, user_message: str | None = None):
        super().__init__(detail or self.user_message)
        self.detail = detail or self.user_message
        if user_message is not None:
            self.user_message = user_message


class SignatureError(ReceiptServiceError):
    """Inbound event signature missing or invalid. Never retried."""
    status_code = 400
    user_message = "Invalid signature"


class ValidationError(ReceiptServiceError):
    """Malformed input, rejected before any downstream call."""
    status_code = 400
    user_message = "Invalid request"


class AuthorizationError(ReceiptServiceError):
    """Caller is not authenticated."""
    status_code = 401
    user_message = "Authentication required"


class NotFoundError(ReceiptServiceError):
    """Resource missing, or not owned by the caller."""
    status_code = 404
    user_message = "Receipt not found"


class ThrottledError(ReceiptServiceError):
    """Caller exceeded the per-user rate limit. Retry after backoff."""
    status_code = 429
    user_message = "Too many requests. Please try again later."
    retryable = True

    def __init__(self, retry_after: int, detail: str | None = None):
        super().__init__(detail)
        self.retry_after = max(int(retry_after), 1)


class UnsupportedFormatError(ReceiptServiceError):
    """Download format is declared but not implemented."""
    status_code = 501
    user_message = "Receipt format not supported yet"


class UpstreamGatewayError(ReceiptServiceError):
    """Payment gateway or email provider unavailable, timed out, or throttling us."""
    status_code = 503
    user_message = "Unable to connect to payment service. Please try again later."
    retryable = True


class UnknownUserError(ReceiptServiceError):
    """Payment names a user that does not exist yet. The sender should redeliver."""
    status_code = 503
    user_message = "Payment could not be applied yet. Please try again later."
    retryable = True


class FulfillmentOutcome(str, enum.Enum):
    """Non-failure results of a fulfillment attempt."""
    FULFILLED = "fulfilled"
    ALREADY_FULFILLED = "already_fulfilled"
    REJECTED = "rejected"
