from sqlalchemy import String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from consultpay.db.session import Base


class PaymentEvent(Base):
    """Append-only: rows are inserted by services.event_log and never updated."""

    __tablename__ = "payment_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    payment_id: Mapped[str] = mapped_column(String(36), ForeignKey("payments.id"), index=True)
    event_type: Mapped[str] = mapped_column(String(80), index=True)  # e.g. payment.succeeded
    event_data: Mapped[dict] = mapped_column(JSON, default=dict)
    webhook_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("webhook_logs.id"), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
