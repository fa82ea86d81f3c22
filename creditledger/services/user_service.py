"""
User lookups used by fulfillment and receipt generation.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from creditledger.models.user import User


class UserService:
    """Service for reading and creating users."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, user_id: str) -> User | None:
        """
        Get user by ID.

        Args:
            user_id: User UUID

        Returns:
            User or None if not found
        """
        stmt = select(User).where(User.id == user_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        email: str,
        first_name: str | None = None,
        last_name: str | None = None,
        user_id: str | None = None,
    ) -> User:
        """
        Create a new user with an empty balance.

        Args:
            email: User email address
            first_name: Given name (optional)
            last_name: Family name (optional)
            user_id: Explicit UUID (optional, generated otherwise)

        Returns:
            Newly created User
        """
        user = User(
            email=email,
            first_name=first_name,
            last_name=last_name,
            current_credits=0,
        )
        if user_id:
            user.id = user_id
        self.db.add(user)
        await self.db.commit()
        return user
