"""
Receipt model.

One receipt per fulfilled purchase, holding an immutable rendered snapshot and
the bearer token used by emailed download links.
"""
from datetime import datetime
from sqlalchemy import String, ForeignKey, Integer, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from creditledger.models.base import Base, TimestampMixin, new_id


class Receipt(Base, TimestampMixin):
    """
    Proof of purchase for a PURCHASE transaction.

    Only download statistics and email timestamps change after creation.
    """
    __tablename__ = "receipts"

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
    transaction_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("credit_transactions.id"),
        unique=True,
        nullable=False
    )
    payment_reference: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    charge_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    receipt_number: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)

    # Minor currency units (cents)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Payment method summary, never full card data
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False)
    card_brand: Mapped[str | None] = mapped_column(String(20), nullable=True)
    card_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)

    html_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    download_token: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_downloaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    email_delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="receipts")
    transaction = relationship("CreditTransaction", back_populates="receipt")

    def __repr__(self):
        return f"<Receipt(id={self.id}, number={self.receipt_number}, transaction_id={self.transaction_id})>"
