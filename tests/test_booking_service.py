import json
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from staydesk.core.config import settings
from staydesk.core.errors import Forbidden, InvalidTransition, NotFound, RoomUnavailable, ValidationError
from staydesk.models.audit_log import AuditLog
from staydesk.models.booking import Booking
from staydesk.services import booking_service, booking_state


def _create(session, actor, room, stay, **kw):
    check_in, check_out = stay
    return booking_service.create_booking(session, actor, room_id=room.id, check_in=check_in, check_out=check_out, **kw)


def test_create_booking_freezes_price(session, guest, room, stay):
    b = _create(session, guest, room, stay, guests=2, special_requests="late arrival")
    assert b.booking_ref.startswith("HTL-") and len(b.booking_ref) == 10
    assert (b.status, b.payment_status) == ("PENDING", "PENDING")
    assert b.nights == 2
    assert b.unit_price == Decimal("50000.00")
    assert b.total_amount == Decimal("100000.00")
    assert b.currency == settings.CURRENCY
    assert b.user_id == guest.id

    room.price_per_night = Decimal("90000.00")
    session.commit()
    session.refresh(b)
    assert b.total_amount == Decimal("100000.00")


def test_overlapping_request_rejected_and_audited(session, guest, other_guest, room, stay):
    first = _create(session, guest, room, stay)
    check_in, check_out = stay
    with pytest.raises(RoomUnavailable) as exc:
        booking_service.create_booking(session, other_guest, room_id=room.id,
                                       check_in=check_in + timedelta(days=1), check_out=check_out + timedelta(days=1))
    assert exc.value.details["conflicts"] == [first.booking_ref]

    rejected = session.scalars(select(AuditLog).where(AuditLog.action == "room.transition_rejected")).all()
    assert len(rejected) == 1
    details = json.loads(rejected[0].details_json)
    assert details["error"] == "RoomUnavailable"
    assert details["guard"] == "no overlapping active booking"


def test_back_to_back_stays_allowed(session, guest, other_guest, room, stay):
    check_in, check_out = stay
    _create(session, guest, room, stay)
    b = booking_service.create_booking(session, other_guest, room_id=room.id,
                                       check_in=check_out, check_out=check_out + timedelta(days=1))
    assert b.status == "PENDING"


def test_guests_over_capacity_rejected(session, guest, room, stay):
    with pytest.raises(ValidationError):
        _create(session, guest, room, stay, guests=3)


def test_unknown_or_inactive_room(session, guest, make_room, stay):
    closed = make_room("R-999", active=False)
    with pytest.raises(NotFound):
        _create(session, guest, closed, stay)


def test_guest_cannot_book_for_someone_else(session, guest, other_guest, room, stay):
    with pytest.raises(Forbidden):
        _create(session, guest, room, stay, owner_id=other_guest.id)


def test_staff_books_on_behalf_of_guest(session, staff, guest, room, stay):
    b = _create(session, staff, room, stay, owner_id=guest.id)
    assert b.user_id == guest.id
    assert b.created_by_user_id == staff.id


def test_concurrent_overlapping_requests_yield_one_booking(database, make_user, room, stay):
    users = [make_user("GUEST") for _ in range(6)]
    results = []
    barrier = threading.Barrier(len(users))

    def attempt(user):
        db = database.session()
        try:
            barrier.wait()
            _create(db, user, room, stay)
            results.append("ok")
        except RoomUnavailable:
            results.append("unavailable")
        finally:
            db.close()

    threads = [threading.Thread(target=attempt, args=(u,)) for u in users]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["ok"] + ["unavailable"] * 5
    db = database.session()
    try:
        active = db.scalars(select(Booking).where(Booking.room_id == room.id, Booking.status == "PENDING")).all()
        assert len(active) == 1
    finally:
        db.close()


def test_guest_cancels_own_pending_booking(session, guest, room, stay):
    b = _create(session, guest, room, stay)
    b = booking_service.cancel_booking(session, guest, b.id, reason="plans changed")
    assert b.status == "CANCELLED"
    assert b.cancellation_reason == "plans changed"
    assert b.cancelled_by_user_id == guest.id
    # dates are free again
    assert _create(session, guest, room, stay).status == "PENDING"


def test_guest_cannot_cancel_someone_elses_booking(session, guest, other_guest, room, stay):
    b = _create(session, guest, room, stay)
    with pytest.raises(Forbidden):
        booking_service.cancel_booking(session, other_guest, b.id)


def test_notice_window_binds_guests_not_staff(session, monkeypatch, guest, staff, room, stay):
    monkeypatch.setattr(settings, "CANCELLATION_NOTICE_HOURS", 48)
    b = _create(session, guest, room, stay)
    late = booking_state.check_in_at(b.check_in) - timedelta(hours=24)
    with pytest.raises(InvalidTransition) as exc:
        booking_service.cancel_booking(session, guest, b.id, now=late)
    assert exc.value.details["guard"] == "canCancel"

    b = booking_service.cancel_booking(session, staff, b.id, reason="walk-in request", now=late)
    assert b.status == "CANCELLED"


def test_cancelling_twice_is_rejected(session, staff, guest, room, stay):
    b = _create(session, guest, room, stay)
    booking_service.cancel_booking(session, staff, b.id)
    with pytest.raises(InvalidTransition):
        booking_service.cancel_booking(session, staff, b.id)
    actions = session.scalars(select(AuditLog.action).where(AuditLog.entity_id == b.id)).all()
    assert "booking.transition_rejected" in actions


def test_list_bookings_is_role_scoped(session, guest, other_guest, staff, make_room, stay):
    _create(session, guest, make_room("R-1"), stay)
    _create(session, other_guest, make_room("R-2"), stay)
    assert {b.user_id for b in booking_service.list_bookings(session, guest)} == {guest.id}
    assert len(booking_service.list_bookings(session, staff)) == 2


def test_get_booking_scoped_to_owner(session, guest, other_guest, staff, room, stay):
    b = _create(session, guest, room, stay)
    assert booking_service.get_booking(session, guest, b.id).id == b.id
    assert booking_service.get_booking(session, staff, b.id).id == b.id
    with pytest.raises(Forbidden):
        booking_service.get_booking(session, other_guest, b.id)
    with pytest.raises(NotFound):
        booking_service.get_booking(session, staff, "missing")


def test_complete_stays_after_checkout(session, guest, room, stay):
    b = _create(session, guest, room, stay)
    booking_state.apply(b, booking_state.BookingEvent.PAYMENT_CONFIRMED)
    session.commit()

    during = booking_state.check_in_at(b.check_in) + timedelta(days=1)
    assert booking_service.complete_stays(session, now=during)["completed"] == 0

    after = datetime.combine(b.check_out + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc) + timedelta(hours=12)
    assert booking_service.complete_stays(session, now=after)["completed"] == 1
    session.refresh(b)
    assert b.status == "COMPLETED"


def test_expire_pending_holds(session, monkeypatch, guest, room, stay, outbox):
    b = _create(session, guest, room, stay)
    assert booking_service.expire_pending_holds(session)["expired"] == 0  # disabled by default

    monkeypatch.setattr(settings, "BOOKING_HOLD_MINUTES", 30)
    now = datetime.now(timezone.utc)
    assert booking_service.expire_pending_holds(session, now=now)["expired"] == 0
    assert booking_service.expire_pending_holds(session, now=now + timedelta(minutes=31))["expired"] == 1
    session.refresh(b)
    assert (b.status, b.cancellation_reason) == ("CANCELLED", "hold_expired")
    [(to, subject, body)] = outbox
    assert (to, subject) == (guest.email, f"StayDesk Hotel - Booking cancelled: {b.booking_ref}")
    assert "hold period" in body
