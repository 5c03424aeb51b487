from decimal import Decimal
from sqlalchemy import String, DateTime, Numeric, JSON, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from consultpay.db.session import Base

PROVIDERS = ("stripe", "paystack")
STATUSES = ("pending", "processing", "succeeded", "failed", "cancelled", "refunded")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        CheckConstraint("provider IN ('stripe', 'paystack')", name="ck_payments_provider"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    appointment_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    consultation_id: Mapped[str] = mapped_column(String(36), index=True)
    provider: Mapped[str] = mapped_column(String(20))  # stripe | paystack, immutable
    provider_payment_id: Mapped[str | None] = mapped_column(String(120), unique=True, index=True, nullable=True)
    provider_customer_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))  # major units
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    payment_method: Mapped[str | None] = mapped_column(String(60), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
