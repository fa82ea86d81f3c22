"""
Authentication dependencies for FastAPI.

SECURITY: The user id in the token is the only identity the read path trusts.
Every owner-facing query MUST filter by it.
"""
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ValidationError as PydanticValidationError

from creditledger.errors import AuthorizationError
from creditledger.logging_config import bind_request_context
from creditledger.services.jwt_service import JWTService


# Security scheme; missing credentials are reported through our own error body
security = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str      # user_id
    email: str | None = None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.

    Returns token payload if valid, raises AuthorizationError (401) otherwise.

    Usage:
        @router.get("/protected")
        async def protected_route(user: TokenPayload = Depends(get_current_user)):
            ...
    """
    if credentials is None:
        raise AuthorizationError("missing bearer token")

    payload = JWTService().verify_token(credentials.credentials)
    if payload is None:
        raise AuthorizationError("invalid or expired token")

    try:
        user = TokenPayload(**payload)
    except PydanticValidationError as e:
        raise AuthorizationError("token is missing required claims") from e

    bind_request_context(user_id=user.sub)
    return user
