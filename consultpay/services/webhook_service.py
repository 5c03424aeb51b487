"""Inbound webhook pipeline: log, verify, deduplicate, apply.

A WebhookLog row is committed before the signature is checked so every
delivery leaves a trace. The provider's event id is the idempotency key; once
a row with that id is processed, later deliveries of it are acknowledged
without side effects.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from consultpay.core.errors import ConflictError, InvalidSignatureError, NotFoundError, ValidationError
from consultpay.models.webhook_log import WebhookLog
from consultpay.providers.base import (
    PAYMENT_CANCELED,
    PAYMENT_FAILED,
    PAYMENT_PROCESSING,
    PAYMENT_SUCCEEDED,
    UNHANDLED_EVENT,
    WebhookOutcome,
)
from consultpay.providers.registry import get_provider, parse_provider
from consultpay.services.event_log import record_event
from consultpay.services.payment_repository import get_by_provider_payment_id
from consultpay.services.payment_state import APPLIED, CANCELLED, FAILED, PROCESSING, SUCCEEDED, extras_from_intent, update_status

logger = logging.getLogger(__name__)

SIGNATURE_FAILED = "signature verification failed"
INVALID_PAYLOAD = "invalid payload"
NO_MATCHING_PAYMENT = "no matching payment"

# outcome type -> (payment status, payment event type)
OUTCOME_ACTIONS = {
    PAYMENT_SUCCEEDED: (SUCCEEDED, "payment.succeeded"),
    PAYMENT_FAILED: (FAILED, "payment.failed"),
    PAYMENT_CANCELED: (CANCELLED, "payment.cancelled"),
    PAYMENT_PROCESSING: (PROCESSING, "payment.processing"),
}


@dataclass
class WebhookResult:
    status_code: int
    body: dict = field(default_factory=dict)


def _peek(provider, raw_body: bytes) -> tuple[str | None, str]:
    # unverified; only used to label the log row and find earlier deliveries
    try:
        event = json.loads(raw_body)
    except ValueError:
        return None, "unknown"
    if not isinstance(event, dict):
        return None, "unknown"
    event_id, event_type = provider.event_identity(event)
    return (event_id[:255] if event_id else None), (event_type or "unknown")[:100]


class WebhookDispatcher:
    def __init__(self, db: Session, providers: dict):
        self.db = db
        self.providers = providers

    def receive(self, provider_name, raw_body: bytes, signature: str | None) -> WebhookResult:
        provider = get_provider(provider_name, self.providers)
        event_id, event_type = _peek(provider, raw_body)

        log = None
        if event_id:
            log = self.db.execute(select(WebhookLog).where(WebhookLog.event_id == event_id)).scalar_one_or_none()
            if log is not None and log.processed:
                logger.warning("Duplicate %s webhook %s acknowledged without reprocessing", provider.name.value, event_id)
                return WebhookResult(200, {"received": True, "duplicate": True})

        redelivery = log is not None
        if log is None:
            log = WebhookLog(
                id=str(uuid.uuid4()),
                provider=provider.name.value,
                event_type=event_type,
                event_id=event_id,
                payload=raw_body.decode("utf-8", errors="replace"),
                signature=signature[:512] if signature else None,
                processed=False,
            )
            self.db.add(log)
            try:
                self.db.commit()
            except IntegrityError:
                # another worker logged the same event id first
                self.db.rollback()
                logger.warning("Concurrent %s webhook %s already in flight", provider.name.value, event_id)
                return WebhookResult(200, {"received": True, "duplicate": True})

        try:
            event = provider.verify_webhook_signature(raw_body, signature)
        except InvalidSignatureError:
            logger.warning("Rejected %s webhook %s: bad signature", provider.name.value, log.id)
            if not redelivery:
                self._record_error(log, SIGNATURE_FAILED)
            return WebhookResult(400, {"received": False, "error": SIGNATURE_FAILED})
        except ValidationError:
            if not redelivery:
                self._record_error(log, INVALID_PAYLOAD)
            return WebhookResult(400, {"received": False, "error": INVALID_PAYLOAD})

        if redelivery:
            # keep the latest authentic copy for later replays
            log.payload = raw_body.decode("utf-8", errors="replace")
            log.signature = signature[:512] if signature else None
        return self._apply(provider, log, event)

    def retry(self, log_id: str) -> WebhookResult:
        log = self.db.get(WebhookLog, log_id)
        if not log:
            raise NotFoundError("Webhook log not found")
        if log.processed:
            raise ConflictError("Webhook already processed")

        provider = get_provider(log.provider, self.providers)
        log.retry_count = (log.retry_count or 0) + 1
        self.db.commit()
        try:
            event = provider.verify_webhook_signature(log.payload.encode("utf-8"), log.signature, replay=True)
        except InvalidSignatureError:
            self._record_error(log, SIGNATURE_FAILED)
            return WebhookResult(400, {"received": False, "error": SIGNATURE_FAILED})
        except ValidationError:
            self._record_error(log, INVALID_PAYLOAD)
            return WebhookResult(400, {"received": False, "error": INVALID_PAYLOAD})
        logger.info("Retrying %s webhook %s (attempt %s)", log.provider, log.id, log.retry_count)
        return self._apply(provider, log, event)

    def _apply(self, provider, log: WebhookLog, event: dict) -> WebhookResult:
        log_id = log.id
        try:
            _, event_type = provider.event_identity(event)
            log.event_type = (event_type or "unknown")[:100]
            outcome = provider.process_webhook_event(event)

            if outcome.type == UNHANDLED_EVENT:
                logger.info("Unhandled %s event %s", provider.name.value, outcome.original_type)
                self._mark_processed(log)
                self.db.commit()
                return WebhookResult(200, {"received": True})

            reference = provider.extract_reference(event)
            payment = get_by_provider_payment_id(self.db, reference, provider=provider.name.value) if reference else None
            if payment is None:
                logger.warning("No %s payment matches webhook %s (reference %s)", provider.name.value, log_id, reference)
                log.processed = False
                log.error_message = NO_MATCHING_PAYMENT
                self.db.commit()
                return WebhookResult(200, {"received": True})

            self._apply_outcome(payment, outcome, log)
            self._mark_processed(log)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error("Failed to apply %s webhook %s", provider.name.value, log_id, exc_info=True)
            self._record_failure(log_id, str(e) or type(e).__name__)
            return WebhookResult(500, {"received": False, "error": "processing failed"})
        return WebhookResult(200, {"received": True})

    def _apply_outcome(self, payment, outcome: WebhookOutcome, log: WebhookLog):
        status, event_type = OUTCOME_ACTIONS[outcome.type]
        extra = extras_from_intent(outcome.payment_intent) if outcome.payment_intent else None
        result = update_status(self.db, payment, status, extra)
        if result.outcome != APPLIED:
            # same-state redeliveries and stale events leave no trace on the payment
            return
        intent = outcome.payment_intent
        record_event(self.db, payment.id, event_type, {
            "providerEvent": outcome.original_type,
            "previousStatus": result.previous,
            "providerStatus": intent.status if intent else None,
            "lastError": intent.last_error if intent else None,
        }, webhook_id=log.id)

    @staticmethod
    def _mark_processed(log: WebhookLog):
        log.processed = True
        log.error_message = None

    def _record_error(self, log: WebhookLog, message: str):
        log.processed = False
        log.error_message = message
        self.db.commit()

    def _record_failure(self, log_id: str, message: str):
        try:
            log = self.db.get(WebhookLog, log_id)
            if log is None:
                return
            log.processed = False
            log.error_message = message[:2000]
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Could not record failure on webhook log %s", log_id)

    def list_logs(
        self,
        provider: str | None = None,
        processed: bool | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookLog], int]:
        filters = []
        if provider:
            filters.append(WebhookLog.provider == parse_provider(provider).value)
        if processed is not None:
            filters.append(WebhookLog.processed == processed)
        if start:
            filters.append(WebhookLog.created_at >= start)
        if end:
            filters.append(WebhookLog.created_at <= end)

        total = self.db.execute(select(func.count(WebhookLog.id)).where(*filters)).scalar_one()
        rows = self.db.execute(
            select(WebhookLog).where(*filters).order_by(WebhookLog.created_at.desc()).limit(limit).offset(offset)
        ).scalars().all()
        return list(rows), total

    def stats(self, start: datetime | None = None, end: datetime | None = None) -> dict:
        filters = []
        if start:
            filters.append(WebhookLog.created_at >= start)
        if end:
            filters.append(WebhookLog.created_at <= end)
        processed_count = func.sum(case((WebhookLog.processed.is_(True), 1), else_=0))
        total_count = func.count(WebhookLog.id)

        by_provider: dict = {}
        rows = self.db.execute(
            select(WebhookLog.provider, WebhookLog.event_type, processed_count, total_count)
            .where(*filters)
            .group_by(WebhookLog.provider, WebhookLog.event_type)
        ).all()
        for provider, event_type, processed, total in rows:
            processed = int(processed or 0)
            by_provider.setdefault(provider, {})[event_type] = {
                "processed": processed,
                "failed": total - processed,
                "total": total,
            }

        day = func.date(WebhookLog.created_at)
        daily = [
            {"date": str(d), "provider": provider, "processed": int(processed or 0), "failed": total - int(processed or 0), "total": total}
            for d, provider, processed, total in self.db.execute(
                select(day, WebhookLog.provider, processed_count, total_count)
                .where(*filters)
                .group_by(day, WebhookLog.provider)
                .order_by(day.desc(), WebhookLog.provider)
            ).all()
        ]
        return {"byProvider": by_provider, "daily": daily}
