from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from staydesk.core.errors import InvalidTransition, ValidationError
from staydesk.models.booking import Booking
from staydesk.services import booking_state as bs


def _booking(status="PENDING", payment_status="PENDING", check_in=date(2030, 6, 10), check_out=date(2030, 6, 12)):
    return Booking(id="b1", status=status, payment_status=payment_status, check_in=check_in, check_out=check_out)


def test_compute_nights_and_total():
    assert bs.compute_nights(date(2030, 1, 1), date(2030, 1, 4)) == 3
    assert bs.compute_total(Decimal("49999.995"), 1) == Decimal("50000.00")
    assert bs.compute_total(Decimal("50000"), 3) == Decimal("150000.00")


@pytest.mark.parametrize("check_out", [date(2030, 1, 1), date(2029, 12, 31)])
def test_compute_nights_rejects_empty_or_reversed_stay(check_out):
    with pytest.raises(ValidationError):
        bs.compute_nights(date(2030, 1, 1), check_out)


def test_payment_confirmed_moves_status_and_payment_together():
    b = _booking()
    assert bs.apply(b, bs.BookingEvent.PAYMENT_CONFIRMED) == "CONFIRMED"
    assert (b.status, b.payment_status) == ("CONFIRMED", "PAID")


def test_payment_failed_keeps_booking_pending_for_retry():
    b = _booking()
    bs.apply(b, bs.BookingEvent.PAYMENT_FAILED)
    assert (b.status, b.payment_status) == ("PENDING", "FAILED")


def test_cancel_records_reason_and_actor():
    b = _booking(status="CONFIRMED", payment_status="PAID")
    now = datetime(2030, 6, 1, tzinfo=timezone.utc)
    bs.apply(b, bs.BookingEvent.CANCEL, now=now, reason="change of plans", actor_id="u1")
    assert b.status == "CANCELLED"
    assert b.payment_status == "PAID"  # until the refund settles
    assert b.cancellation_reason == "change of plans"
    assert b.cancelled_at == now
    assert b.cancelled_by_user_id == "u1"


@pytest.mark.parametrize("status", ["CANCELLED", "COMPLETED"])
@pytest.mark.parametrize("event", list(bs.BookingEvent))
def test_terminal_states_reject_every_event(status, event):
    b = _booking(status=status, payment_status="PAID")
    with pytest.raises(InvalidTransition) as exc:
        bs.apply(b, event)
    assert exc.value.details["guard"] == "terminal state"
    assert b.status == status


def test_pending_cannot_complete():
    with pytest.raises(InvalidTransition) as exc:
        bs.apply(_booking(), bs.BookingEvent.COMPLETE)
    assert "PENDING --complete-->" in exc.value.details["attempted"]


def test_complete_requires_checkout_passed():
    b = _booking(status="CONFIRMED", payment_status="PAID")
    on_checkout_day = datetime(2030, 6, 12, 12, tzinfo=timezone.utc)
    with pytest.raises(InvalidTransition):
        bs.apply(b, bs.BookingEvent.COMPLETE, now=on_checkout_day)
    bs.apply(b, bs.BookingEvent.COMPLETE, now=on_checkout_day + timedelta(days=1))
    assert b.status == "COMPLETED"


def test_can_cancel_respects_notice_window():
    b = _booking(status="CONFIRMED", payment_status="PAID")
    check_in_at = bs.check_in_at(b.check_in)
    assert bs.can_cancel(b, now=check_in_at - timedelta(hours=1), notice_hours=0)
    assert not bs.can_cancel(b, now=check_in_at, notice_hours=0)
    assert not bs.can_cancel(b, now=check_in_at - timedelta(hours=23), notice_hours=24)
    assert bs.can_cancel(b, now=check_in_at - timedelta(hours=25), notice_hours=24)


def test_can_cancel_false_once_terminal():
    b = _booking(status="CANCELLED")
    assert not bs.can_cancel(b, now=datetime(2020, 1, 1, tzinfo=timezone.utc))


def test_settle_refund_only_from_cancelled_paid():
    b = _booking(status="CANCELLED", payment_status="PAID")
    bs.settle_refund(b)
    assert b.payment_status == "REFUNDED"
    with pytest.raises(InvalidTransition):
        bs.settle_refund(_booking(status="CONFIRMED", payment_status="PAID"))
