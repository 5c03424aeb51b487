import json
import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from consultpay.models.payment_event import PaymentEvent


def _jsonable(data) -> dict:
    return json.loads(json.dumps(data or {}, default=str))


def record_event(db: Session, payment_id: str, event_type: str, event_data: dict | None = None, webhook_id: str | None = None) -> PaymentEvent:
    ev = PaymentEvent(
        id=str(uuid.uuid4()),
        payment_id=payment_id,
        event_type=event_type,
        event_data=_jsonable(event_data),
        webhook_id=webhook_id,
    )
    db.add(ev)
    return ev


def list_events(db: Session, payment_id: str, limit: int = 100) -> list[PaymentEvent]:
    return list(db.execute(
        select(PaymentEvent)
        .where(PaymentEvent.payment_id == payment_id)
        .order_by(PaymentEvent.processed_at.asc())
        .limit(limit)
    ).scalars().all())


def event_stats(db: Session, start: datetime | None = None, end: datetime | None = None) -> list[dict]:
    day = func.date(PaymentEvent.processed_at)
    q = select(PaymentEvent.event_type, day, func.count(PaymentEvent.id))
    if start:
        q = q.where(PaymentEvent.processed_at >= start)
    if end:
        q = q.where(PaymentEvent.processed_at <= end)
    q = q.group_by(PaymentEvent.event_type, day).order_by(day.desc(), PaymentEvent.event_type)
    return [
        {"eventType": event_type, "date": str(d), "count": count}
        for event_type, d, count in db.execute(q).all()
    ]
