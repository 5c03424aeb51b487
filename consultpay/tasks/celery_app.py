from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from celery import Celery
from consultpay.core.config import settings


def _redis_url_for_celery(url: str) -> str:
    """Celery requires ssl_cert_reqs for rediss:// (e.g. Upstash TLS)."""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" not in qs:
        qs["ssl_cert_reqs"] = ["CERT_NONE"]
        return urlunparse(parsed._replace(query=urlencode(qs, doseq=True)))
    return url


_redis_url = _redis_url_for_celery(settings.REDIS_URL)

celery = Celery(
    "consultpay",
    broker=_redis_url,
    backend=_redis_url,
    include=["consultpay.tasks.jobs"],
)

celery.conf.timezone = "UTC"

celery.conf.beat_schedule = {
    "retry-failed-webhooks-every-5-minutes": {
        "task": "consultpay.tasks.jobs.retry_failed_webhooks",
        "schedule": 300.0,
        "kwargs": {"limit": settings.WEBHOOK_RETRY_BATCH},
    },
    "reconcile-pending-payments-every-15-minutes": {
        "task": "consultpay.tasks.jobs.reconcile_pending_payments",
        "schedule": 900.0,
    },
}
