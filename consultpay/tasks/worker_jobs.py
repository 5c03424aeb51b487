import logging
from datetime import datetime, timezone, timedelta
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.exc import ProgrammingError

from consultpay.core.config import settings
from consultpay.core.errors import PaymentSystemError
from consultpay.db.session import SessionLocal
from consultpay.models.webhook_log import WebhookLog
from consultpay.providers.registry import get_providers
from consultpay.services import payment_repository as repo
from consultpay.services.payment_service import verify_payment
from consultpay.services.payment_state import PENDING, PROCESSING
from consultpay.services.webhook_service import INVALID_PAYLOAD, SIGNATURE_FAILED, WebhookDispatcher

logger = logging.getLogger(__name__)


def retry_failed_webhooks(limit: int = 50, db: Session | None = None, providers: dict | None = None):
    """Replay verified deliveries that failed to apply (or had no payment yet)."""
    own = db is None
    db = db or SessionLocal()
    try:
        try:
            logs = db.execute(
                select(WebhookLog)
                .where(
                    WebhookLog.processed.is_(False),
                    WebhookLog.error_message.is_not(None),
                    WebhookLog.error_message.not_in([SIGNATURE_FAILED, INVALID_PAYLOAD]),
                    WebhookLog.retry_count < settings.WEBHOOK_MAX_AUTO_RETRIES,
                )
                .order_by(WebhookLog.created_at.asc())
                .limit(limit)
            ).scalars().all()
        except ProgrammingError:
            # DB not migrated yet; don't crash the worker.
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}

        dispatcher = WebhookDispatcher(db, providers or get_providers())
        done = failed = 0
        for log in logs:
            result = dispatcher.retry(log.id)
            if result.status_code == 200 and db.get(WebhookLog, log.id).processed:
                done += 1
            else:
                failed += 1
        return {"retried": len(logs), "processed": done, "failed": failed}
    finally:
        if own:
            db.close()


def reconcile_pending_payments(db: Session | None = None, providers: dict | None = None):
    """Re-query the provider for payments stuck in pending/processing."""
    own = db is None
    db = db or SessionLocal()
    try:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.PENDING_RECONCILE_AFTER_MINUTES)
        try:
            stale = repo.list_stale(db, [PENDING, PROCESSING], cutoff)
        except ProgrammingError:
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}

        providers = providers or get_providers()
        updated = errors = 0
        for payment in stale:
            before = payment.status
            try:
                verify_payment(db, providers, payment, record_unchanged=False)
            except PaymentSystemError as e:
                db.rollback()
                errors += 1
                logger.warning("Reconcile of payment %s failed: %s", payment.id, e.message)
                continue
            if payment.status != before:
                updated += 1
        return {"checked": len(stale), "updated": updated, "errors": errors}
    finally:
        if own:
            db.close()
