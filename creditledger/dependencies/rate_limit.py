"""
Rate limit dependency for the per-user credit and receipt endpoints.
"""
from fastapi import Depends

from creditledger.dependencies.auth import TokenPayload, get_current_user
from creditledger.errors import ThrottledError
from creditledger.logging_config import get_logger
from creditledger.services.rate_limiter import receipt_rate_limiter


logger = get_logger(component="rate_limit")


def get_rate_limiter():
    """Limiter shared by credit and receipt routes. Overridden in tests."""
    return receipt_rate_limiter


async def enforce_rate_limit(
    current_user: TokenPayload = Depends(get_current_user),
    limiter=Depends(get_rate_limiter),
) -> TokenPayload:
    """
    Authenticate, then count the request against the caller's window.

    Raises ThrottledError (429 with Retry-After) if the limit is exceeded.
    """
    decision = await limiter.try_consume(current_user.sub)

    if not decision.allowed:
        logger.warning(
            "rate_limited",
            user_id=current_user.sub,
            retry_after=decision.retry_after,
        )
        raise ThrottledError(decision.retry_after, detail=f"rate limit exceeded for {current_user.sub}")

    return current_user
