from datetime import date
from sqlalchemy import select
from sqlalchemy.orm import Session

from staydesk.core.errors import ValidationError
from staydesk.models.booking import Booking
from staydesk.models.enums import ACTIVE_BOOKING_STATUSES
from staydesk.models.room import Room
from staydesk.services.booking_state import hotel_today


def overlaps(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    """Half-open [start, end) intervals; back-to-back stays do not overlap."""
    return a_start < b_end and b_start < a_end


def validate_stay(check_in: date, check_out: date, today: date | None = None) -> None:
    if not isinstance(check_in, date) or not isinstance(check_out, date):
        raise ValidationError("checkIn and checkOut must be valid dates")
    if check_in >= check_out:
        raise ValidationError("checkIn must be before checkOut", checkIn=str(check_in), checkOut=str(check_out))
    today = today or hotel_today()
    if check_in < today:
        raise ValidationError("checkIn cannot be in the past", checkIn=str(check_in), today=str(today))


def find_conflicts(db: Session, room_id: str, check_in: date, check_out: date, excluding_booking_id: str | None = None) -> list[Booking]:
    q = select(Booking).where(Booking.room_id == room_id, Booking.status.in_(ACTIVE_BOOKING_STATUSES))
    if excluding_booking_id:
        q = q.where(Booking.id != excluding_booking_id)
    return [b for b in db.scalars(q) if overlaps(check_in, check_out, b.check_in, b.check_out)]


def is_available(db: Session, room_id: str, check_in: date, check_out: date,
                 excluding_booking_id: str | None = None, today: date | None = None) -> bool:
    validate_stay(check_in, check_out, today)
    return not find_conflicts(db, room_id, check_in, check_out, excluding_booking_id)


def available_rooms(db: Session, check_in: date, check_out: date, guests: int = 1, today: date | None = None) -> list[Room]:
    validate_stay(check_in, check_out, today)
    if guests < 1:
        raise ValidationError("guests must be >= 1")
    busy = select(Booking.room_id).where(
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.check_in < check_out,
        Booking.check_out > check_in,
    )
    q = (
        select(Room)
        .where(Room.is_active.is_(True), Room.capacity >= guests, Room.id.not_in(busy))
        .order_by(Room.price_per_night, Room.code)
    )
    return list(db.scalars(q))
