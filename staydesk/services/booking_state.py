"""Booking status lifecycle.

Derived fields (nights, total, canCancel) and the transition table live here
and nowhere else. ``apply`` mutates an in-memory Booking; persistence,
locking and auditing belong to the calling service.
"""
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from zoneinfo import ZoneInfo

from staydesk.core.config import settings
from staydesk.core.errors import InvalidTransition, ValidationError
from staydesk.models.enums import BookingStatus, PaymentStatus

PENDING = BookingStatus.PENDING.value
CONFIRMED = BookingStatus.CONFIRMED.value
CANCELLED = BookingStatus.CANCELLED.value
COMPLETED = BookingStatus.COMPLETED.value
ACTIVE = (PENDING, CONFIRMED)


class BookingEvent(str, Enum):
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    CANCEL = "cancel"
    EXPIRE = "expire"
    COMPLETE = "complete"


TRANSITIONS: dict[tuple[str, BookingEvent], str] = {
    (PENDING, BookingEvent.PAYMENT_CONFIRMED): CONFIRMED,
    (PENDING, BookingEvent.PAYMENT_FAILED): PENDING,
    (PENDING, BookingEvent.CANCEL): CANCELLED,
    (PENDING, BookingEvent.EXPIRE): CANCELLED,
    (CONFIRMED, BookingEvent.CANCEL): CANCELLED,
    (CONFIRMED, BookingEvent.COMPLETE): COMPLETED,
}


def hotel_tz() -> ZoneInfo:
    return ZoneInfo(settings.HOTEL_TIMEZONE)


def hotel_today(now: datetime | None = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(hotel_tz()).date()


def check_in_at(check_in: date) -> datetime:
    hh, mm = (int(x) for x in settings.CHECK_IN_TIME.split(":"))
    return datetime.combine(check_in, time(hh, mm), tzinfo=hotel_tz())


def compute_nights(check_in: date, check_out: date) -> int:
    if check_in is None or check_out is None:
        raise ValidationError("checkIn and checkOut are required")
    nights = (check_out - check_in).days
    if nights <= 0:
        raise ValidationError("checkIn must be before checkOut", checkIn=str(check_in), checkOut=str(check_out))
    return nights


def compute_total(unit_price: Decimal, nights: int) -> Decimal:
    return (Decimal(unit_price) * nights).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def can_cancel(booking, now: datetime | None = None, notice_hours: int | None = None) -> bool:
    """Guest cancellation policy: still active and before check-in minus the notice window."""
    if booking.status not in ACTIVE:
        return False
    now = now or datetime.now(timezone.utc)
    if notice_hours is None:
        notice_hours = settings.CANCELLATION_NOTICE_HOURS
    cutoff = check_in_at(booking.check_in) - timedelta(hours=notice_hours)
    return now < cutoff


def describe(booking, event: BookingEvent) -> str:
    return f"{booking.status} --{event.value}--> {TRANSITIONS.get((booking.status, event), '?')}"


def apply(booking, event: BookingEvent, *, now: datetime | None = None, reason: str | None = None, actor_id: str | None = None) -> str:
    """Validate ``event`` against the table and mutate ``booking``. Returns the new status."""
    target = TRANSITIONS.get((booking.status, event))
    if target is None:
        guard = "terminal state" if booking.status in (CANCELLED, COMPLETED) else "no such transition"
        raise InvalidTransition(
            f"cannot {event.value} a {booking.status} booking",
            attempted=f"{booking.status} --{event.value}-->", guard=guard,
        )
    now = now or datetime.now(timezone.utc)

    if event is BookingEvent.PAYMENT_CONFIRMED:
        # Status and payment status move together.
        booking.status = CONFIRMED
        booking.payment_status = PaymentStatus.PAID.value
    elif event is BookingEvent.PAYMENT_FAILED:
        if booking.payment_status == PaymentStatus.PAID.value:
            raise InvalidTransition("booking is already paid", attempted=describe(booking, event), guard="payment_status != PAID")
        booking.payment_status = PaymentStatus.FAILED.value
    elif event in (BookingEvent.CANCEL, BookingEvent.EXPIRE):
        booking.status = CANCELLED
        booking.cancellation_reason = (reason or event.value)[:500]
        booking.cancelled_at = now
        booking.cancelled_by_user_id = actor_id
    elif event is BookingEvent.COMPLETE:
        if booking.check_out >= hotel_today(now):
            raise InvalidTransition("stay has not ended yet", attempted=describe(booking, event), guard="check_out passed")
        if booking.payment_status != PaymentStatus.PAID.value:
            raise InvalidTransition("stay is not paid", attempted=describe(booking, event), guard="payment_status = PAID")
        booking.status = COMPLETED
    return target


def settle_refund(booking) -> None:
    """CANCELLED + PAID -> CANCELLED + REFUNDED once the refund has cleared."""
    if booking.status != CANCELLED or booking.payment_status != PaymentStatus.PAID.value:
        raise InvalidTransition(
            "refund can only settle on a cancelled, paid booking",
            attempted=f"{booking.status}/{booking.payment_status} --refund_settled-->",
            guard="status = CANCELLED and payment_status = PAID",
        )
    booking.payment_status = PaymentStatus.REFUNDED.value
