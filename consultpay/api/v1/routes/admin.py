from datetime import datetime
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from consultpay.api.deps import Principal, get_db, get_providers, require_roles
from consultpay.api.responses import iso, ok
from consultpay.models.webhook_log import WebhookLog
from consultpay.schemas.webhooks import WebhookLogOut
from consultpay.services.event_log import event_stats
from consultpay.services.webhook_service import WebhookDispatcher

router = APIRouter(tags=["admin"])

ADMIN_ROLES = ("admin", "finance", "superadmin")


def webhook_log_out(w: WebhookLog) -> dict:
    return WebhookLogOut(
        id=w.id,
        provider=w.provider,
        eventType=w.event_type,
        eventId=w.event_id,
        processed=w.processed,
        errorMessage=w.error_message,
        retryCount=w.retry_count or 0,
        createdAt=iso(w.created_at),
        updatedAt=iso(w.updated_at),
    ).model_dump()


@router.get("/admin/webhooks/logs")
def list_webhook_logs(provider: str | None = None, processed: bool | None = None,
                      start: datetime | None = None, end: datetime | None = None,
                      limit: int = 50, offset: int = 0,
                      db: Session = Depends(get_db),
                      providers: dict = Depends(get_providers),
                      me: Principal = Depends(require_roles(*ADMIN_ROLES))):
    items, total = WebhookDispatcher(db, providers).list_logs(
        provider=provider, processed=processed, start=start, end=end,
        limit=min(limit, 200), offset=max(offset, 0),
    )
    return ok({"total": total, "items": [webhook_log_out(w) for w in items]})


@router.post("/admin/webhooks/{log_id}/retry")
def retry_webhook(log_id: str,
                  db: Session = Depends(get_db),
                  providers: dict = Depends(get_providers),
                  me: Principal = Depends(require_roles(*ADMIN_ROLES))):
    result = WebhookDispatcher(db, providers).retry(log_id)
    log = db.get(WebhookLog, log_id)
    if result.status_code != 200:
        return JSONResponse(status_code=result.status_code, content={
            "success": False,
            "message": result.body.get("error") or "Webhook retry failed",
            "data": webhook_log_out(log) if log else None,
        })
    return ok(webhook_log_out(log), "Webhook reprocessed")


@router.get("/admin/webhooks/stats")
def webhook_stats(start: datetime | None = None, end: datetime | None = None,
                  db: Session = Depends(get_db),
                  providers: dict = Depends(get_providers),
                  me: Principal = Depends(require_roles(*ADMIN_ROLES))):
    return ok(WebhookDispatcher(db, providers).stats(start, end))


@router.get("/admin/payments/events/stats")
def payment_event_stats(start: datetime | None = None, end: datetime | None = None,
                        db: Session = Depends(get_db),
                        me: Principal = Depends(require_roles(*ADMIN_ROLES))):
    return ok(event_stats(db, start, end))
