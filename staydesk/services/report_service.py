from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from staydesk.core.access import Operation, Scope, authorize
from staydesk.core.config import settings
from staydesk.core.errors import ValidationError
from staydesk.models.booking import Booking
from staydesk.models.enums import BookingStatus, PaymentStatus
from staydesk.models.payment import Payment
from staydesk.models.room import Room
from staydesk.services.booking_state import hotel_today, hotel_tz


def _period(date_from: date | None, date_to: date | None) -> tuple[date, date]:
    date_to = date_to or hotel_today()
    date_from = date_from or date_to.replace(day=1)
    if date_from > date_to:
        raise ValidationError("fromDate must not be after toDate", fromDate=str(date_from), toDate=str(date_to))
    if (date_to - date_from).days > 366:
        raise ValidationError("report period is limited to one year")
    return date_from, date_to


def _money(value) -> str:
    return str(Decimal(str(value or 0)).quantize(Decimal("0.01")))


def financial_report(db: Session, actor, date_from: date | None = None, date_to: date | None = None) -> dict:
    """Bookings created and payments recorded in [date_from, date_to] (hotel dates).

    Staff get the operational counts; amounts, refunds and occupancy are admin only.
    """
    scope = authorize(actor, Operation.VIEW_FINANCIAL_REPORTS)
    date_from, date_to = _period(date_from, date_to)
    start = datetime.combine(date_from, time.min, tzinfo=hotel_tz()).astimezone(timezone.utc)
    end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=hotel_tz()).astimezone(timezone.utc)

    by_status = dict(db.execute(
        select(Booking.status, func.count(Booking.id))
        .where(Booking.created_at >= start, Booking.created_at < end)
        .group_by(Booking.status)
    ).all())
    payments_by_status = dict(db.execute(
        select(Payment.status, func.count(Payment.id))
        .where(Payment.created_at >= start, Payment.created_at < end)
        .group_by(Payment.status)
    ).all())
    pending_mobile = db.scalar(
        select(func.count(Payment.id)).where(Payment.channel == "MOBILE_MONEY", Payment.status == PaymentStatus.PENDING.value)
    ) or 0
    review_queue = db.scalar(select(func.count(Payment.id)).where(Payment.needs_review.is_(True))) or 0

    report = {
        "fromDate": date_from.isoformat(),
        "toDate": date_to.isoformat(),
        "scope": scope.value,
        "currency": settings.CURRENCY,
        "bookings": {
            "total": int(sum(by_status.values())),
            **{s.value.lower(): int(by_status.get(s.value, 0)) for s in BookingStatus},
        },
        "payments": {s.value.lower(): int(payments_by_status.get(s.value, 0)) for s in PaymentStatus},
        "pendingMobilePayments": int(pending_mobile),
        "reviewQueue": int(review_queue),
    }
    if scope is Scope.PARTIAL:
        return report

    paid_rows = db.execute(
        select(Payment.channel, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
        .where(Payment.status.in_((PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value)),
               Payment.created_at >= start, Payment.created_at < end)
        .group_by(Payment.channel)
    ).all()
    refunded = db.scalar(
        select(func.coalesce(func.sum(Payment.refund_amount), 0))
        .where(Payment.status == PaymentStatus.REFUNDED.value, Payment.refunded_at >= start, Payment.refunded_at < end)
    )
    outstanding = db.scalar(
        select(func.coalesce(func.sum(Booking.total_amount), 0))
        .where(Booking.status == BookingStatus.PENDING.value, Booking.created_at >= start, Booking.created_at < end)
    )
    gross = sum((Decimal(str(r[2] or 0)) for r in paid_rows), Decimal("0"))

    # Occupancy over the period from CONFIRMED/COMPLETED stays.
    days = (date_to - date_from).days + 1
    active_rooms = db.scalar(select(func.count(Room.id)).where(Room.is_active.is_(True))) or 0
    booked_nights = 0
    for check_in, check_out in db.execute(
        select(Booking.check_in, Booking.check_out).where(
            Booking.status.in_((BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value)),
            Booking.check_in <= date_to, Booking.check_out > date_from,
        )
    ).all():
        booked_nights += (min(check_out, date_to + timedelta(days=1)) - max(check_in, date_from)).days

    report["revenue"] = {
        "gross": _money(gross),
        "refunded": _money(refunded),
        "net": _money(gross - Decimal(str(refunded or 0))),
        "outstanding": _money(outstanding),
        "byChannel": {r[0]: {"count": int(r[1]), "amount": _money(r[2])} for r in paid_rows},
    }
    report["occupancy"] = {
        "roomNights": active_rooms * days,
        "bookedNights": booked_nights,
        "rate": round(booked_nights * 100 / (active_rooms * days), 1) if active_rooms else 0.0,
    }
    return report
