import logging
from datetime import datetime

from sqlalchemy.exc import ProgrammingError, OperationalError

from staydesk.core.config import settings
from staydesk.db.session import Database
from staydesk.services import booking_service, email_service, payment_service

logger = logging.getLogger(__name__)


def _run(job, database: Database | None = None, now: datetime | None = None) -> dict:
    owned = database is None
    database = database or Database.from_settings(settings)
    db = database.session()
    try:
        try:
            return job(db, now=now)
        except (ProgrammingError, OperationalError) as e:
            # DB not migrated yet or unreachable; don't crash the worker.
            db.rollback()
            logger.warning("%s skipped: %s", job.__name__, e.__class__.__name__)
            return {"skipped": True, "reason": e.__class__.__name__}
    finally:
        db.close()
        if owned:
            database.dispose()


def expire_pending_holds(database: Database | None = None, now: datetime | None = None) -> dict:
    return _run(booking_service.expire_pending_holds, database, now)


def complete_stays(database: Database | None = None, now: datetime | None = None) -> dict:
    return _run(booking_service.complete_stays, database, now)


def expire_stale_payments(database: Database | None = None, now: datetime | None = None) -> dict:
    return _run(payment_service.expire_stale_payments, database, now)


def process_email_queue(database: Database | None = None, limit: int = 50) -> dict:
    """Retry queued or failed emails (e.g. SMTP was down when the booking changed)."""
    def process_pending_emails(db, now=None):
        return email_service.process_pending_emails(db, limit=limit)
    return _run(process_pending_emails, database)
