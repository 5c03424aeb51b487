import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from consultpay.models.payment import Payment
from consultpay.providers.base import NormalizedIntent
from consultpay.services.payment_repository import clean_metadata

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELLED = "cancelled"
REFUNDED = "refunded"

TRANSITIONS = {
    PENDING: {PROCESSING, SUCCEEDED, FAILED, CANCELLED},
    PROCESSING: {SUCCEEDED, FAILED},
    SUCCEEDED: {REFUNDED},
    FAILED: set(),
    CANCELLED: set(),
    REFUNDED: set(),
}

# normalized intent status -> payment status; anything else leaves the payment alone
INTENT_STATUS_MAP = {
    "succeeded": SUCCEEDED,
    "payment_failed": FAILED,
    "canceled": CANCELLED,
    "processing": PROCESSING,
}

APPLIED = "applied"
NOOP = "noop"
REJECTED = "rejected"


@dataclass
class TransitionResult:
    outcome: str
    previous: str
    current: str

    @property
    def applied(self) -> bool:
        return self.outcome == APPLIED


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, set())


def update_status(db: Session, payment: Payment, new_status: str, extra: dict | None = None) -> TransitionResult:
    """Move ``payment`` to ``new_status`` if the transition is allowed.

    ``extra`` may carry ``payment_method``, ``provider_customer_id`` and
    ``metadata``; metadata is shallow-merged over what is stored. Nothing is
    committed here.

    The write only lands if the row still holds the status read into
    ``payment``, so two workers racing on one payment cannot both move it.
    The loser sees the winner's status and gets NOOP or REJECTED.
    """
    current = payment.status
    if new_status == current:
        return TransitionResult(NOOP, current, current)
    if not can_transition(current, new_status):
        logger.warning("Rejected payment %s transition %s -> %s", payment.id, current, new_status)
        return TransitionResult(REJECTED, current, current)

    extra = extra or {}
    values = {Payment.status: new_status, Payment.updated_at: datetime.now(timezone.utc)}
    if extra.get("payment_method"):
        values[Payment.payment_method] = extra["payment_method"]
    if extra.get("provider_customer_id"):
        values[Payment.provider_customer_id] = extra["provider_customer_id"]
    if extra.get("metadata"):
        values[Payment.metadata_] = clean_metadata({**(payment.metadata_ or {}), **extra["metadata"]})

    res = db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == current)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    db.refresh(payment)
    if res.rowcount == 0:
        if payment.status == new_status:
            return TransitionResult(NOOP, payment.status, payment.status)
        logger.warning("Payment %s moved to %s concurrently; dropped transition %s -> %s", payment.id, payment.status, current, new_status)
        return TransitionResult(REJECTED, payment.status, payment.status)
    logger.info("Payment %s %s -> %s", payment.id, current, new_status)
    return TransitionResult(APPLIED, current, new_status)


def status_for_intent(intent: NormalizedIntent) -> str | None:
    return INTENT_STATUS_MAP.get(intent.status)


def extras_from_intent(intent: NormalizedIntent) -> dict:
    metadata = {}
    if intent.last_error:
        metadata["last_error"] = intent.last_error
    if intent.confirmed_at:
        metadata["confirmed_at"] = intent.confirmed_at.isoformat()
    return {
        "payment_method": intent.payment_method,
        "provider_customer_id": intent.customer_id,
        "metadata": metadata,
    }
