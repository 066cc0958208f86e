import pytest
from sqlalchemy.exc import OperationalError

from staydesk.core.errors import InvalidTransition
from staydesk.db.session import is_lock_conflict
from staydesk.services import booking_service, payment_service

from helpers import WEBHOOK_PATH, sign, succeeded


class _DriverError(Exception):
    def __init__(self, pgcode):
        super().__init__(f"driver error {pgcode}")
        self.pgcode = pgcode


def _db_error(pgcode):
    return OperationalError("SELECT ... FOR UPDATE", {}, _DriverError(pgcode))


@pytest.fixture
def booking(session, guest, room, stay):
    check_in, check_out = stay
    return booking_service.create_booking(session, guest, room_id=room.id, check_in=check_in, check_out=check_out)


@pytest.fixture
def lock_order(monkeypatch):
    """Rows locked by payment_service, in order."""
    order = []
    lock_booking, lock_payment = payment_service._lock_booking, payment_service._lock_payment

    def booking_first(db, booking_id):
        order.append("booking")
        return lock_booking(db, booking_id)

    def then_payment(db, payment_id):
        order.append("payment")
        return lock_payment(db, payment_id)

    monkeypatch.setattr(payment_service, "_lock_booking", booking_first)
    monkeypatch.setattr(payment_service, "_lock_payment", then_payment)
    return order


def test_mobile_confirmation_locks_booking_before_payment(session, guest, staff, booking, lock_order):
    payment, _ = payment_service.initiate_mobile_payment(session, guest, booking.id, "781234567", "WAVE")
    lock_order.clear()
    payment_service.confirm_mobile_payment(session, staff, payment.id, "WV-1")
    assert lock_order == ["booking", "payment"]


def test_gateway_event_locks_booking_before_payment(session, guest, booking, gateway, lock_order):
    payment, _ = payment_service.create_card_payment(session, guest, booking.id, "pm_card_visa", gateway)
    lock_order.clear()
    body = succeeded(payment.external_ref, booking.total_amount)
    assert payment_service.handle_gateway_event(session, sign(body), body, "POST", WEBHOOK_PATH) == "applied"
    assert lock_order == ["booking", "payment"]


def test_refund_locks_booking_before_payment(session, guest, staff, booking, lock_order):
    payment, _ = payment_service.initiate_mobile_payment(session, guest, booking.id, "781234567", "WAVE")
    payment_service.confirm_mobile_payment(session, staff, payment.id, "WV-1")
    booking_service.cancel_booking(session, staff, booking.id, reason="overbooking")
    lock_order.clear()
    payment_service.settle_manual_refund(session, staff, payment.id, reference="WV-REF-1")
    assert lock_order == ["booking", "payment"]


@pytest.mark.parametrize("pgcode", ["40P01", "40001", "55P03"])
def test_lock_conflict_on_confirmation_is_invalid_transition(session, guest, staff, booking, monkeypatch, pgcode):
    payment, _ = payment_service.initiate_mobile_payment(session, guest, booking.id, "781234567", "WAVE")

    def deadlocked(db, booking_id):
        raise _db_error(pgcode)

    monkeypatch.setattr(payment_service, "_lock_booking", deadlocked)
    with pytest.raises(InvalidTransition) as exc:
        payment_service.confirm_mobile_payment(session, staff, payment.id, "WV-1")
    assert exc.value.status_code == 409
    assert exc.value.details["guard"] == "no concurrent transition"

    session.refresh(payment)
    assert payment.status == "PENDING"


def test_lock_conflict_on_cancellation_is_invalid_transition(session, guest, booking, monkeypatch):
    def deadlocked(db, booking_id):
        raise _db_error("40P01")

    monkeypatch.setattr(booking_service, "_lock_booking", deadlocked)
    with pytest.raises(InvalidTransition):
        booking_service.cancel_booking(session, guest, booking.id)


def test_other_database_errors_propagate(session, guest, staff, booking, monkeypatch):
    payment, _ = payment_service.initiate_mobile_payment(session, guest, booking.id, "781234567", "WAVE")

    def disk_full(db, booking_id):
        raise _db_error("53100")

    monkeypatch.setattr(payment_service, "_lock_booking", disk_full)
    with pytest.raises(OperationalError):
        payment_service.confirm_mobile_payment(session, staff, payment.id, "WV-1")


def test_is_lock_conflict_reads_driver_sqlstate():
    class Psycopg3Error(Exception):
        sqlstate = "40001"

    assert is_lock_conflict(_db_error("40P01"))
    assert is_lock_conflict(OperationalError("UPDATE bookings", {}, Psycopg3Error()))
    assert not is_lock_conflict(_db_error("23505"))
    assert not is_lock_conflict(OperationalError("SELECT 1", {}, Exception("database is locked")))
