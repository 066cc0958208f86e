from staydesk.tasks.celery_app import celery
from staydesk.tasks import worker_jobs

@celery.task(name="staydesk.tasks.jobs.expire_pending_holds")
def expire_pending_holds():
    return worker_jobs.expire_pending_holds()

@celery.task(name="staydesk.tasks.jobs.complete_stays")
def complete_stays():
    return worker_jobs.complete_stays()

@celery.task(name="staydesk.tasks.jobs.expire_stale_payments")
def expire_stale_payments():
    return worker_jobs.expire_stale_payments()

@celery.task(name="staydesk.tasks.jobs.process_email_queue")
def process_email_queue():
    return worker_jobs.process_email_queue()
