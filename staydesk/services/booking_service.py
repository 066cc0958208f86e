import logging
import random
import string
import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from staydesk.core.access import Operation, Scope, authorize
from staydesk.core.config import settings
from staydesk.core.errors import InvalidTransition, NotFound, RoomUnavailable, ServiceTimeout, ValidationError
from staydesk.db.session import concurrent_transition
from staydesk.models.booking import Booking
from staydesk.models.enums import BookingStatus, PaymentStatus
from staydesk.models.payment import Payment
from staydesk.models.room import Room
from staydesk.models.user import User
from staydesk.services import booking_state as bs
from staydesk.services import email_service, payment_service
from staydesk.services.audit_service import log_audit, log_rejected_transition
from staydesk.services.availability_service import find_conflicts, validate_stay

logger = logging.getLogger(__name__)


class RoomLocks:
    """Process-local lock per room, held across check-then-insert-then-commit.

    The room row lock covers concurrent processes on Postgres; this covers
    threads of one process on backends that ignore FOR UPDATE.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)

    @contextmanager
    def hold(self, room_id: str, timeout: float):
        with self._guard:
            lock = self._locks[room_id]
        if not lock.acquire(timeout=timeout):
            raise ServiceTimeout("room is busy, retry shortly", roomId=room_id)
        try:
            yield
        finally:
            lock.release()


room_locks = RoomLocks()


def make_booking_ref() -> str:
    return "HTL-" + "".join(random.choices(string.ascii_uppercase + string.digits, k=6))


def _allocate_ref(db: Session) -> str:
    # booking_ref must be unique
    for _ in range(10):
        ref = make_booking_ref()
        if not db.scalar(select(Booking.id).where(Booking.booking_ref == ref)):
            return ref
    raise ServiceTimeout("could not allocate booking reference")


def _resolve_owner(db: Session, actor: User, owner_id: str | None) -> str:
    if not owner_id or owner_id == actor.id:
        return actor.id
    owner = db.get(User, owner_id)
    if not owner:
        raise NotFound("guest not found", userId=owner_id)
    if not owner.is_active:
        raise ValidationError("guest account is inactive", userId=owner_id)
    return owner.id


def create_booking(db: Session, actor: User, *, room_id: str, check_in: date, check_out: date, guests: int = 1,
                   special_requests: str = "", owner_id: str | None = None, now: datetime | None = None) -> Booking:
    """Create a PENDING booking with its price frozen.

    Staff may book on behalf of a guest via ``owner_id``. Concurrent requests
    for overlapping dates on one room are serialised; losers get RoomUnavailable.
    """
    authorize(actor, Operation.CREATE_BOOKING, owner_id=owner_id)
    now = now or datetime.now(timezone.utc)
    validate_stay(check_in, check_out, today=bs.hotel_today(now))
    nights = bs.compute_nights(check_in, check_out)
    if not isinstance(guests, int) or guests < 1:
        raise ValidationError("guests must be >= 1")
    user_id = _resolve_owner(db, actor, owner_id)

    with room_locks.hold(room_id, settings.ROOM_LOCK_TIMEOUT_SECONDS):
        try:
            # Transactional lock to prevent double booking
            room = db.execute(select(Room).where(Room.id == room_id).with_for_update()).scalar_one_or_none()
            if not room or not room.is_active:
                raise NotFound("room not found", roomId=room_id)
            if guests > room.capacity:
                raise ValidationError(f"room {room.code} holds at most {room.capacity} guests",
                                      guests=guests, capacity=room.capacity)

            conflicts = find_conflicts(db, room.id, check_in, check_out)
            if conflicts:
                e = RoomUnavailable(
                    f"room {room.code} is not available from {check_in} to {check_out}",
                    roomId=room.id, conflicts=[b.booking_ref for b in conflicts],
                    attempted="(none) --create--> PENDING", guard="no overlapping active booking",
                )
                db.rollback()
                log_rejected_transition(db, actor.id, "room", room_id, e)
                raise e

            booking = Booking(
                id=str(uuid.uuid4()),
                booking_ref=_allocate_ref(db),
                room_id=room.id,
                user_id=user_id,
                created_by_user_id=actor.id,
                check_in=check_in,
                check_out=check_out,
                nights=nights,
                guests=guests,
                unit_price=room.price_per_night,
                total_amount=bs.compute_total(room.price_per_night, nights),
                currency=settings.CURRENCY,
                status=BookingStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                special_requests=(special_requests or "")[:1000],
            )
            db.add(booking)
            log_audit(db, actor.id, "booking.create", "booking", booking.id, {
                "bookingRef": booking.booking_ref, "roomId": room.id, "checkIn": check_in, "checkOut": check_out,
                "total": booking.total_amount, "onBehalfOf": user_id if user_id != actor.id else None,
            })
            db.commit()
        except OperationalError as e:
            db.rollback()
            logger.warning("Booking creation on room %s timed out: %s", room_id, e)
            raise ServiceTimeout("booking store is busy, retry shortly", roomId=room_id) from e

    logger.info("Booking %s created: room %s, %s -> %s, total %s", booking.booking_ref, room.code, check_in, check_out,
                booking.total_amount)
    return booking


def _lock_booking(db: Session, booking_id: str) -> Booking:
    b = db.execute(
        select(Booking).where(Booking.id == booking_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not b:
        raise NotFound("booking not found", bookingId=booking_id)
    return b


@concurrent_transition("--cancel--> CANCELLED")
def cancel_booking(db: Session, actor: User, booking_id: str, reason: str = "", gateway=None,
                   now: datetime | None = None) -> Booking:
    """Cancel at once; a PAID booking keeps payment_status PAID until its refund settles."""
    now = now or datetime.now(timezone.utc)
    booking = _lock_booking(db, booking_id)
    scope = authorize(actor, Operation.CANCEL_BOOKING, owner_id=booking.user_id)
    try:
        if scope is Scope.OWN and booking.status in bs.ACTIVE and not bs.can_cancel(booking, now=now):
            raise InvalidTransition(
                "cancellation window has closed",
                attempted=f"{booking.status} --cancel--> CANCELLED", guard="canCancel",
                checkIn=str(booking.check_in), noticeHours=settings.CANCELLATION_NOTICE_HOURS,
            )
        bs.apply(booking, bs.BookingEvent.CANCEL, now=now, reason=reason or "cancelled", actor_id=actor.id)
    except InvalidTransition as e:
        db.rollback()
        log_rejected_transition(db, actor.id, "booking", booking_id, e)
        raise

    payment_service.abandon_provisional_payments(db, booking, f"[ABANDONED] booking cancelled by {actor.email}")
    log_audit(db, actor.id, "booking.cancel", "booking", booking.id, {
        "reason": booking.cancellation_reason, "paymentStatus": booking.payment_status,
    })
    paid = booking.payment_status == PaymentStatus.PAID.value
    email_service.stage_booking_notice(db, booking, "cancelled", extra="\n".join(x for x in [
        f"Reason: {reason}" if reason else "",
        "A full refund of your payment is on its way." if paid else "",
    ] if x))
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        e = InvalidTransition("booking changed concurrently, reload and retry",
                              attempted="--cancel--> CANCELLED", guard="version unchanged")
        log_rejected_transition(db, actor.id, "booking", booking_id, e)
        raise e
    logger.info("Booking %s cancelled by %s", booking.booking_ref, actor.email)
    email_service.deliver_outbox(db)

    if booking.payment_status == PaymentStatus.PAID.value:
        payment_service.refund_after_cancellation(db, booking.id, actor.id, gateway, now=now)
        db.refresh(booking)
    return booking


def get_booking(db: Session, actor: User, booking_id: str) -> Booking:
    b = db.get(Booking, booking_id)
    if not b:
        raise NotFound("booking not found", bookingId=booking_id)
    authorize(actor, Operation.VIEW_BOOKING, owner_id=b.user_id)
    return b


def list_bookings(db: Session, actor: User, status: str | None = None, room_id: str | None = None,
                  limit: int = 100, offset: int = 0) -> list[Booking]:
    scope = authorize(actor, Operation.VIEW_BOOKING)
    q = select(Booking)
    if scope is Scope.OWN:
        q = q.where(Booking.user_id == actor.id)
    if status:
        q = q.where(Booking.status == status.upper())
    if room_id:
        q = q.where(Booking.room_id == room_id)
    q = q.order_by(Booking.created_at.desc()).limit(max(1, min(limit, 500))).offset(max(0, offset))
    return list(db.scalars(q))


def complete_stays(db: Session, now: datetime | None = None) -> dict:
    """CONFIRMED bookings whose check-out date has passed become COMPLETED."""
    now = now or datetime.now(timezone.utc)
    today = bs.hotel_today(now)
    ids = list(db.scalars(select(Booking.id).where(
        Booking.status == BookingStatus.CONFIRMED.value, Booking.check_out < today,
    )))
    completed, skipped = 0, 0
    for booking_id in ids:
        booking = _lock_booking(db, booking_id)
        try:
            bs.apply(booking, bs.BookingEvent.COMPLETE, now=now)
        except InvalidTransition as e:
            db.rollback()
            log_rejected_transition(db, "system", "booking", booking_id, e)
            skipped += 1
            continue
        log_audit(db, "system", "booking.complete", "booking", booking.id, {"checkOut": booking.check_out})
        db.commit()
        completed += 1
    if completed or skipped:
        logger.info("Completed %d stays (%d skipped)", completed, skipped)
    return {"completed": completed, "skipped": skipped}


def expire_pending_holds(db: Session, now: datetime | None = None) -> dict:
    """Cancel PENDING bookings left without an active payment past BOOKING_HOLD_MINUTES."""
    if settings.BOOKING_HOLD_MINUTES <= 0:
        return {"expired": 0, "disabled": True}
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=settings.BOOKING_HOLD_MINUTES)
    active = select(Payment.booking_id).where(Payment.status.in_((PaymentStatus.PENDING.value, PaymentStatus.PAID.value)))
    ids = list(db.scalars(select(Booking.id).where(
        Booking.status == BookingStatus.PENDING.value,
        Booking.created_at < cutoff,
        Booking.id.not_in(active),
    )))
    expired = 0
    for booking_id in ids:
        booking = _lock_booking(db, booking_id)
        if booking.status != BookingStatus.PENDING.value or payment_service.active_payment(db, booking.id):
            db.rollback()
            continue
        bs.apply(booking, bs.BookingEvent.EXPIRE, now=now, reason="hold_expired", actor_id="system")
        log_audit(db, "system", "booking.expire", "booking", booking.id, {"createdAt": booking.created_at})
        email_service.stage_booking_notice(db, booking, "cancelled",
                                           extra="The booking was not paid within the hold period and the room was released.")
        db.commit()
        email_service.deliver_outbox(db)
        expired += 1
    if expired:
        logger.info("Expired %d unpaid booking holds", expired)
    return {"expired": expired}
