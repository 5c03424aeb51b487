import json
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from consultpay.core.errors import DatabaseError, NotFoundError, ValidationError
from consultpay.models.payment import PROVIDERS, Payment

MAX_METADATA_KEYS = 50
MAX_METADATA_KEY_LENGTH = 40
MAX_METADATA_VALUE_LENGTH = 500


def clean_metadata(metadata: dict | None) -> dict:
    """Validate a metadata map and return a JSON-safe copy.

    Scalars are kept (Decimals become strings); nested values are kept as long
    as their JSON form fits the value limit.
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object", field="metadata")
    if len(metadata) > MAX_METADATA_KEYS:
        raise ValidationError(f"metadata cannot have more than {MAX_METADATA_KEYS} keys", field="metadata")

    out = {}
    for k, v in metadata.items():
        if not isinstance(k, str) or not k or len(k) > MAX_METADATA_KEY_LENGTH:
            raise ValidationError(f"metadata keys must be 1-{MAX_METADATA_KEY_LENGTH} characters", field="metadata")
        if isinstance(v, Decimal):
            v = str(v)
        elif isinstance(v, datetime):
            v = v.isoformat()
        if v is None or isinstance(v, (str, int, float, bool)):
            size = len(str(v)) if v is not None else 0
        else:
            v = json.loads(json.dumps(v, default=str))
            size = len(json.dumps(v))
        if size > MAX_METADATA_VALUE_LENGTH:
            raise ValidationError(f"metadata value for {k!r} is too long", field="metadata")
        out[k] = v
    return out


def create(db: Session, **fields) -> Payment:
    if fields.get("provider") not in PROVIDERS:
        raise ValidationError(f"Unsupported payment provider: {fields.get('provider')}", field="provider")
    p = Payment(id=str(uuid.uuid4()), **fields)
    p.metadata_ = clean_metadata(fields.get("metadata_"))
    db.add(p)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise DatabaseError("Payment with this provider reference already exists", operation="create_payment")
    return p


def get(db: Session, payment_id: str) -> Payment:
    p = db.get(Payment, payment_id)
    if not p:
        raise NotFoundError("Payment not found")
    return p


def get_by_provider_payment_id(db: Session, provider_payment_id: str, provider: str | None = None) -> Payment | None:
    q = select(Payment).where(Payment.provider_payment_id == provider_payment_id)
    if provider:
        q = q.where(Payment.provider == provider)
    return db.execute(q).scalar_one_or_none()


def list_for_user(db: Session, user_id: str, limit: int = 20, offset: int = 0) -> tuple[list[Payment], int]:
    total = db.execute(select(func.count(Payment.id)).where(Payment.user_id == user_id)).scalar_one()
    rows = db.execute(
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    return list(rows), total


def list_stale(db: Session, statuses: list[str], older_than: datetime, limit: int = 100) -> list[Payment]:
    rows = db.execute(
        select(Payment)
        .where(Payment.status.in_(statuses), Payment.updated_at < older_than)
        .order_by(Payment.updated_at.asc())
        .limit(limit)
    ).scalars().all()
    return list(rows)


def stats(db: Session, start: datetime | None = None, end: datetime | None = None) -> list[dict]:
    q = select(
        Payment.provider,
        Payment.currency,
        Payment.status,
        func.count(Payment.id),
        func.coalesce(func.sum(Payment.amount), 0),
        func.avg(Payment.amount),
    )
    if start:
        q = q.where(Payment.created_at >= start)
    if end:
        q = q.where(Payment.created_at <= end)
    q = q.group_by(Payment.provider, Payment.currency, Payment.status).order_by(Payment.provider, Payment.currency, Payment.status)
    try:
        rows = db.execute(q).all()
    except SQLAlchemyError:
        raise DatabaseError(operation="payment_stats")
    return [
        {
            "provider": provider,
            "currency": currency,
            "status": status,
            "count": count,
            "totalAmount": str(Decimal(str(total)).quantize(Decimal("0.01"))),
            "averageAmount": str(Decimal(str(avg)).quantize(Decimal("0.01"))) if avg is not None else None,
        }
        for provider, currency, status, count, total, avg in rows
    ]
