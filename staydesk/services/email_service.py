import base64
import logging
import smtplib
import uuid
from datetime import datetime, timezone
from email.message import EmailMessage

import requests
from sqlalchemy import select
from sqlalchemy.orm import Session

from staydesk.core.config import settings
from staydesk.models.booking import Booking
from staydesk.models.email_log import EmailLog
from staydesk.models.user import User

logger = logging.getLogger(__name__)

# Ids staged in the current unit of work, delivered once it commits.
_OUTBOX_KEY = "staydesk.outbox"
SEND_ERRORS = (smtplib.SMTPException, OSError, requests.RequestException, RuntimeError)


def stage_email(db: Session, to_email: str, subject: str, body: str, related_booking_ref: str = "") -> str:
    """Add a queued email to the current transaction. Nothing is sent until ``deliver_outbox``."""
    eid = str(uuid.uuid4())
    db.add(EmailLog(
        id=eid,
        to_email=to_email,
        subject=subject[:200],
        body=body,
        status="queued",
        related_booking_ref=related_booking_ref,
        attempts=0,
    ))
    db.info.setdefault(_OUTBOX_KEY, []).append(eid)
    return eid


def queue_email(db: Session, to_email: str, subject: str, body: str, related_booking_ref: str = "") -> str:
    """Queue and attempt immediate send. Body is stored so the worker can retry on failure."""
    eid = stage_email(db, to_email, subject, body, related_booking_ref)
    db.commit()
    deliver_outbox(db)
    return eid


def deliver_outbox(db: Session) -> int:
    """Try to send what the last committed transaction staged. Failures are left for the retry job."""
    sent = 0
    for eid in db.info.pop(_OUTBOX_KEY, []):
        log = db.get(EmailLog, eid)
        if log is None or log.status == "sent":
            # rolled back, or already handled
            continue
        if _attempt(log):
            sent += 1
        db.commit()
    return sent


def _attempt(log: EmailLog) -> bool:
    log.attempts = (log.attempts or 0) + 1
    try:
        send_email(log.to_email, log.subject, log.body or "")
    except SEND_ERRORS as e:
        log.status = "failed"
        logger.warning("Email %s to %s failed (attempt %d): %s", log.id, log.to_email, log.attempts, e)
        return False
    log.status = "sent"
    log.sent_at = datetime.now(timezone.utc)
    return True


def send_email(to_email: str, subject: str, body: str):
    """Send email via SendGrid if configured, otherwise SMTP."""
    if settings.SENDGRID_API_KEY:
        _send_via_sendgrid(to_email, subject, body)
        return

    msg = EmailMessage()
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as smtp:
        if settings.SMTP_USERNAME:
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        smtp.send_message(msg)


def _send_via_sendgrid(to_email: str, subject: str, body: str):
    payload = {
        "personalizations": [{"to": [{"email": to_email}]}],
        "from": {"email": settings.SENDGRID_FROM_EMAIL or settings.SMTP_FROM},
        "subject": subject,
        "content": [{"type": "text/plain", "value": body}],
    }
    r = requests.post(
        "https://api.sendgrid.com/v3/mail/send",
        json=payload,
        headers={"Authorization": f"Bearer {settings.SENDGRID_API_KEY}"},
        timeout=20,
    )
    if r.status_code >= 400:
        raise RuntimeError(f"SendGrid error {r.status_code}: {r.text}")


def process_pending_emails(db: Session, limit: int = 50) -> dict:
    """Retry up to ``limit`` queued or failed emails below the attempt cap. Returns counts."""
    pending = db.scalars(
        select(EmailLog)
        .where(EmailLog.status.in_(["queued", "failed"]), EmailLog.body.isnot(None), EmailLog.body != "",
               EmailLog.attempts < settings.EMAIL_MAX_ATTEMPTS)
        .order_by(EmailLog.created_at.asc())
        .limit(limit)
    ).all()
    sent = sum(1 for log in pending if _attempt(log))
    if pending:
        db.commit()
    return {"processed": len(pending), "sent": sent, "failed": len(pending) - sent}


# --------------------------------------------------------------------------
# Guest notices
# --------------------------------------------------------------------------
def _stay_lines(b: Booking) -> list[str]:
    return [
        f"Reference: {b.booking_ref}",
        f"Check-in:  {b.check_in.isoformat()}",
        f"Check-out: {b.check_out.isoformat()} ({b.nights} night{'s' if b.nights != 1 else ''})",
        f"Guests:    {b.guests}",
        f"Total:     {b.total_amount} {b.currency}",
    ]


NOTICES = {
    "confirmed": (
        "Booking confirmed: {ref}",
        "Your payment was received and your stay is confirmed.",
    ),
    "cancelled": (
        "Booking cancelled: {ref}",
        "Your booking has been cancelled.",
    ),
    "refunded": (
        "Refund completed: {ref}",
        "The refund for your cancelled booking has been completed.",
    ),
}


def stage_booking_notice(db: Session, booking: Booking, kind: str, extra: str = "") -> str | None:
    """Stage the guest notice for a booking transition (confirmed, cancelled, refunded)."""
    guest = db.get(User, booking.user_id)
    if guest is None or not guest.email:
        logger.warning("No email on file for booking %s; %s notice skipped", booking.booking_ref, kind)
        return None
    subject, lead = NOTICES[kind]
    lines = [f"Hello {guest.full_name or guest.email},", "", lead, "", *_stay_lines(booking)]
    if extra:
        lines += ["", extra]
    lines += ["", settings.HOTEL_NAME]
    return stage_email(db, guest.email, f"{settings.HOTEL_NAME} - " + subject.format(ref=booking.booking_ref),
                       "\n".join(lines), related_booking_ref=booking.booking_ref)
