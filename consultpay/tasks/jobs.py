from consultpay.tasks.celery_app import celery
from consultpay.tasks import worker_jobs


@celery.task(name="consultpay.tasks.jobs.retry_failed_webhooks")
def retry_failed_webhooks(limit: int = 50):
    return worker_jobs.retry_failed_webhooks(limit=limit)


@celery.task(name="consultpay.tasks.jobs.reconcile_pending_payments")
def reconcile_pending_payments():
    return worker_jobs.reconcile_pending_payments()
