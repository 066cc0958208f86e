from decimal import Decimal
from sqlalchemy import String, DateTime, Numeric, Boolean, ForeignKey, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from staydesk.db.session import Base

class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        # At most one non-failed payment per booking.
        Index(
            "uq_payments_active_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("status <> 'FAILED'"),
            sqlite_where=text("status <> 'FAILED'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(36), ForeignKey("bookings.id"), index=True)
    channel: Mapped[str] = mapped_column(String(20))  # CARD, MOBILE_MONEY
    external_ref: Mapped[str] = mapped_column(String(120), unique=True, index=True)  # gateway intent id / mobile txn id
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="XOF")
    status: Mapped[str] = mapped_column(String(20), default="PENDING", index=True)  # PENDING, PAID, FAILED, REFUNDED

    # Mobile money only
    operator: Mapped[str | None] = mapped_column(String(20), nullable=True)  # ORANGE, WAVE, FREE
    phone_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    instructions_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmation_code: Mapped[str | None] = mapped_column(String(120), nullable=True)
    confirmed_by_user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    refund_ref: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    refund_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    needs_review: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    review_reason: Mapped[str] = mapped_column(String(200), default="")
    notes: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
