"""
Credit ledger model.

Append-only record of credit grants and debits per user.
"""
import enum
from datetime import datetime
from sqlalchemy import String, ForeignKey, Integer, DateTime, Index, Enum as SQLEnum, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from creditledger.models.base import Base, CreatedAtMixin, new_id


class TransactionType(str, enum.Enum):
    """Credit transaction type enum."""
    PURCHASE = "PURCHASE"
    USAGE = "USAGE"
    AI_USAGE = "AI_USAGE"
    REFUND = "REFUND"
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"


class CreditTransaction(Base, CreatedAtMixin):
    """
    Ledger row.

    Positive amounts grant credits, negative amounts debit them. Rows are
    never updated or deleted, except for the one-time receipt link.
    At most one PURCHASE row may exist per payment_reference.
    """
    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index(
            "uq_credit_transactions_purchase_reference",
            "payment_reference",
            unique=True,
            postgresql_where=text("type = 'PURCHASE' AND payment_reference IS NOT NULL"),
            sqlite_where=text("type = 'PURCHASE' AND payment_reference IS NOT NULL"),
        ),
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_id
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id"),
        nullable=False,
        index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SQLEnum(TransactionType, native_enum=False, length=32),
        nullable=False
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expiration_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Set once by the receipt generator
    receipt_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    receipt_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Relationships
    user = relationship("User", back_populates="credit_transactions")
    receipt = relationship("Receipt", back_populates="transaction", uselist=False)

    def __repr__(self):
        return (
            f"<CreditTransaction(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, type={self.type})>"
        )
