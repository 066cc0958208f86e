from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from celery import Celery
from staydesk.core.config import settings


def _redis_url_for_celery(url: str) -> str:
    """Celery requires ssl_cert_reqs for rediss:// (e.g. Upstash TLS)."""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" not in qs:
        qs["ssl_cert_reqs"] = ["CERT_NONE"]
        new_query = urlencode(qs, doseq=True)
        return urlunparse(parsed._replace(query=new_query))
    return url


_redis_url = _redis_url_for_celery(settings.REDIS_URL)

celery = Celery(
    "staydesk",
    broker=_redis_url,
    backend=_redis_url,
    include=["staydesk.tasks.jobs"],
)

celery.conf.timezone = settings.HOTEL_TIMEZONE

celery.conf.beat_schedule = {
    "expire-pending-holds-every-minute": {
        "task": "staydesk.tasks.jobs.expire_pending_holds",
        "schedule": 60.0,
    },
    "complete-stays-hourly": {
        "task": "staydesk.tasks.jobs.complete_stays",
        "schedule": 3600.0,
    },
    "expire-stale-payments-every-5-min": {
        "task": "staydesk.tasks.jobs.expire_stale_payments",
        "schedule": 300.0,
    },
    "process-email-queue-every-2-min": {
        "task": "staydesk.tasks.jobs.process_email_queue",
        "schedule": 120.0,
    },
}
