"""
User model.

Represents a paying user and their cached credit balance.
"""
from sqlalchemy import String, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship
from creditledger.models.base import Base, TimestampMixin, new_id


class User(Base, TimestampMixin):
    """
    User model.

    current_credits is a projection of the ledger: it is only ever changed by
    an atomic SQL increment in the same database transaction that writes the
    matching CreditTransaction row.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_id
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    current_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Relationships
    credit_transactions = relationship("CreditTransaction", back_populates="user")
    receipts = relationship("Receipt", back_populates="user")

    @property
    def display_name(self) -> str:
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.email or "Customer"

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, credits={self.current_credits})>"
