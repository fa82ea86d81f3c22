"""
JWT token service for authentication.

Sessions are issued elsewhere; this service only needs to agree with the
issuer on secret, algorithm and claims (sub = user id, email).
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from creditledger.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def __init__(
        self,
        secret_key: str | None = None,
        algorithm: str | None = None,
        expiration_minutes: int | None = None,
    ):
        self.secret_key = secret_key or settings.JWT_SECRET_KEY
        self.algorithm = algorithm or settings.JWT_ALGORITHM
        self.expiration_minutes = expiration_minutes or settings.JWT_EXPIRATION_MINUTES

    def create_token(self, user_id: str, email: str | None = None) -> str:
        """
        Create a JWT token for a user.

        Args:
            user_id: User's unique ID
            email: User's email

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=self.expiration_minutes)

        payload = {
            "sub": user_id,
            "email": email,
            "exp": expires
        }

        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            return None
