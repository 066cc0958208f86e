"""Payment reconciliation.

Bridges the two payment channels into booking transitions:

* CARD: a gateway intent is created for the booking's frozen total; the
  gateway reports the outcome through signed webhook events, deduplicated by
  event id and by the intent id (``Payment.external_ref``).
* MOBILE_MONEY: the guest receives transfer instructions; a provisional
  payment waits until staff confirm or reject it against the operator's log.

Rows are re-read ``FOR UPDATE`` before every transition so a cancellation
racing a confirmation is decided on current state.
"""
import json
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from staydesk.core.access import Operation, authorize
from staydesk.core.config import settings
from staydesk.core.errors import (
    AmountMismatch, ErrorKind, InvalidTransition, NotFound, PaymentVerificationFailed, ValidationError, GatewayError,
)
from staydesk.db.session import concurrent_transition
from staydesk.models.booking import Booking
from staydesk.models.enums import BookingStatus, PaymentChannel, PaymentStatus
from staydesk.models.gateway_event import GatewayEvent
from staydesk.models.payment import Payment
from staydesk.services import booking_state as bs
from staydesk.services import email_service
from staydesk.services.audit_service import log_audit, log_rejected_transition
from staydesk.services.gateway_client import from_minor_units, to_minor_units, verify_signature

logger = logging.getLogger(__name__)

PENDING = PaymentStatus.PENDING.value
PAID = PaymentStatus.PAID.value
FAILED = PaymentStatus.FAILED.value
REFUNDED = PaymentStatus.REFUNDED.value

# Event outcomes the webhook acknowledges but reports as an error kind.
OUTCOME_ERRORS = {"amount_mismatch": ErrorKind.AMOUNT_MISMATCH}

INSTRUCTION_TEMPLATES = {
    "ORANGE": "Orange Money: dial *144*4*4*{recipient}*{amount}#",
    "WAVE": "Wave: send {amount} {currency} to {recipient}",
    "FREE": "Free Money: dial *144*5*{recipient}*{amount}#",
}


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    # SQLite hands timestamps back naive; they are stored in UTC.
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# Lock order everywhere: booking row, then its payment rows.
def _lock_booking(db: Session, booking_id: str) -> Booking:
    b = db.execute(
        select(Booking).where(Booking.id == booking_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not b:
        raise NotFound("booking not found", bookingId=booking_id)
    return b


def _lock_payment(db: Session, payment_id: str) -> Payment:
    p = db.execute(
        select(Payment).where(Payment.id == payment_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not p:
        raise NotFound("payment not found", paymentId=payment_id)
    return p


def _lock_pair(db: Session, *criteria) -> tuple[Payment | None, Booking | None]:
    """Find a payment by ``criteria`` and lock its booking, then the payment itself."""
    row = db.execute(select(Payment.id, Payment.booking_id).where(*criteria)).first()
    if row is None:
        return None, None
    booking = _lock_booking(db, row.booking_id)
    return _lock_payment(db, row.id), booking


def _lock_pair_by_id(db: Session, payment_id: str) -> tuple[Payment, Booking]:
    payment, booking = _lock_pair(db, Payment.id == payment_id)
    if payment is None:
        raise NotFound("payment not found", paymentId=payment_id)
    return payment, booking


def active_payment(db: Session, booking_id: str) -> Payment | None:
    return db.scalar(select(Payment).where(Payment.booking_id == booking_id, Payment.status != FAILED))


def payment_timeout(payment: Payment) -> timedelta | None:
    """How long a payment may stay PENDING; None when it never times out."""
    if payment.channel == PaymentChannel.MOBILE_MONEY.value:
        minutes = settings.MOBILE_MONEY_TIMEOUT_MINUTES
    else:
        minutes = settings.PAYMENT_TIMEOUT_MINUTES
    return timedelta(minutes=minutes) if minutes > 0 else None


def is_stale(payment: Payment, now: datetime) -> bool:
    limit = payment_timeout(payment)
    return payment.status == PENDING and limit is not None and _aware(payment.created_at) + limit <= now


def _time_out(db: Session, payment: Payment, booking: Booking, now: datetime) -> None:
    """PENDING --payment timeout--> PENDING (retry): the stale payment fails, the booking stays open. Caller commits."""
    payment.status = FAILED
    payment.notes = "\n".join(x for x in [payment.notes, f"[TIMED OUT] no outcome after {payment_timeout(payment)}"] if x)
    if booking.status == BookingStatus.PENDING.value and booking.payment_status != PAID:
        bs.apply(booking, bs.BookingEvent.PAYMENT_FAILED, now=now)
    log_audit(db, "system", "payment.timed_out", "payment", payment.id,
              {"bookingId": booking.id, "channel": payment.channel, "createdAt": payment.created_at})
    logger.info("Payment %s (%s) on booking %s timed out", payment.id, payment.channel, booking.booking_ref)


def _flag(payment: Payment, reason: str) -> None:
    payment.needs_review = True
    payment.review_reason = reason[:200]


def _format_amount(amount: Decimal) -> str:
    amount = Decimal(amount)
    return str(int(amount)) if amount == amount.to_integral_value() else f"{amount:.2f}"


def _payable_booking(db: Session, actor, booking_id: str, reuse_channel: str | None = None,
                     now: datetime | None = None) -> tuple[Booking, Payment | None]:
    """Booking the actor may pay for: PENDING and without an active payment.

    A PENDING payment on ``reuse_channel`` is handed back instead of rejected.
    One that outlived its timeout is failed first, so the guest can start over
    on either channel.
    """
    booking = _lock_booking(db, booking_id)
    authorize(actor, Operation.INITIATE_PAYMENT, owner_id=booking.user_id)
    now = _now(now)
    try:
        if booking.status != BookingStatus.PENDING.value:
            raise InvalidTransition(f"cannot pay for a {booking.status} booking",
                                    attempted=f"{booking.status} --payment_initiated-->", guard="status = PENDING")
        existing = active_payment(db, booking.id)
        if existing and is_stale(existing, now):
            _time_out(db, _lock_payment(db, existing.id), booking, now)
            db.flush()
            existing = None
        if existing and existing.status == PENDING and existing.channel == reuse_channel:
            return booking, existing
        if existing:
            raise InvalidTransition("a payment is already in progress for this booking",
                                    attempted="payment_initiated", guard="one active payment per booking",
                                    paymentId=existing.id, paymentStatus=existing.status)
    except InvalidTransition as e:
        db.rollback()
        log_rejected_transition(db, actor.id, "booking", booking_id, e)
        raise
    return booking, None


def _commit_new_payment(db: Session, actor, booking: Booking, payment: Payment) -> None:
    try:
        db.commit()
    except IntegrityError:
        # Lost the race against another attempt for the same booking.
        db.rollback()
        e = InvalidTransition("a payment is already in progress for this booking",
                              attempted="payment_initiated", guard="one active payment per booking")
        log_rejected_transition(db, actor.id, "booking", booking.id, e)
        raise e


# --------------------------------------------------------------------------
# CARD
# --------------------------------------------------------------------------
def create_card_payment(db: Session, actor, booking_id: str, payment_method: str, gateway,
                        now: datetime | None = None) -> tuple[Payment, str | None]:
    """Create a gateway intent for the booking's frozen total. Returns (payment, client_secret).

    An intent already pending for the booking is returned again, with its
    secret fetched from the gateway so the guest can finish it.
    """
    booking, existing = _payable_booking(db, actor, booking_id, reuse_channel=PaymentChannel.CARD.value, now=now)
    # Release the row lock while the gateway is called.
    db.commit()
    if existing is not None:
        resp = gateway.retrieve_payment_intent(intent_id=existing.external_ref)
        return existing, resp.get("client_secret") or resp.get("clientSecret")

    resp = gateway.create_payment_intent(
        client_ref=booking.booking_ref,
        amount_minor=to_minor_units(booking.total_amount),
        currency=booking.currency,
        payment_method=payment_method,
        metadata={"bookingId": booking.id, "bookingRef": booking.booking_ref},
    )
    intent_id = str(resp.get("id") or "")
    if not intent_id:
        raise GatewayError("payment gateway returned no intent id", response=resp)

    booking = _lock_booking(db, booking_id)
    if booking.status != BookingStatus.PENDING.value:
        # Cancelled while the intent was being created.
        e = InvalidTransition(f"cannot pay for a {booking.status} booking",
                              attempted=f"{booking.status} --payment_initiated-->", guard="status = PENDING", intentId=intent_id)
        db.rollback()
        log_rejected_transition(db, actor.id, "booking", booking_id, e)
        raise e
    payment = Payment(
        id=str(uuid.uuid4()),
        booking_id=booking.id,
        channel=PaymentChannel.CARD.value,
        external_ref=intent_id,
        amount=booking.total_amount,
        currency=booking.currency,
        status=PENDING,
    )
    db.add(payment)
    booking.payment_status = PENDING
    log_audit(db, actor.id, "payment.card_initiated", "payment", payment.id, {"bookingId": booking.id, "intentId": intent_id})
    _commit_new_payment(db, actor, booking, payment)
    logger.info("Card payment %s initiated for booking %s (intent %s)", payment.id, booking.booking_ref, intent_id)
    return payment, resp.get("client_secret") or resp.get("clientSecret")


@concurrent_transition("gateway event")
def handle_gateway_event(db: Session, headers: dict, body: bytes, method: str, path: str, now: datetime | None = None) -> str:
    """Verify and apply one gateway event. Returns the outcome recorded for it."""
    if not verify_signature(headers, body, method, path, settings.GATEWAY_WEBHOOK_SECRET_B64,
                            tolerance_seconds=settings.GATEWAY_WEBHOOK_TOLERANCE_SECONDS, now=now):
        logger.warning("Rejected gateway event with invalid signature on %s", path)
        raise PaymentVerificationFailed("invalid webhook signature")
    try:
        event = json.loads(body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("malformed gateway event")
    if not isinstance(event, dict):
        raise ValidationError("malformed gateway event")

    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    obj = (event.get("data") or {}).get("object") or {}
    if not event_id or not event_type or not isinstance(obj, dict):
        raise ValidationError("gateway event is missing id, type or data.object")

    if db.scalar(select(GatewayEvent).where(GatewayEvent.event_id == event_id)):
        logger.info("Gateway event %s already processed", event_id)
        return "duplicate"

    external_ref = str(obj.get("payment_intent") or obj.get("paymentIntent") or obj.get("id") or "")
    record = GatewayEvent(
        id=str(uuid.uuid4()),
        event_id=event_id,
        event_type=event_type,
        external_ref=external_ref,
        payload_json=body.decode("utf-8"),
    )
    db.add(record)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        return "duplicate"

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("Ignoring gateway event type %s", event_type)
        outcome = "ignored"
    else:
        outcome = handler(db, obj, _now(now))
    record.outcome = outcome
    db.commit()
    email_service.deliver_outbox(db)
    return outcome


def _lock_by_intent(db: Session, intent_id: str) -> tuple[Payment | None, Booking | None]:
    if not intent_id:
        return None, None
    return _lock_pair(db, Payment.external_ref == intent_id)


def _on_intent_succeeded(db: Session, obj: dict, now: datetime) -> str:
    payment, booking = _lock_by_intent(db, str(obj.get("id") or ""))
    if not payment:
        logger.warning("Succeeded event for unknown intent %s", obj.get("id"))
        return "unknown_reference"
    if payment.status == PAID:
        return "duplicate"
    if payment.status == REFUNDED:
        logger.warning("Succeeded event for refunded payment %s discarded", payment.id)
        return "discarded"

    try:
        amount = from_minor_units(obj.get("amount"))
    except (TypeError, ValueError, InvalidOperation):
        amount = None
    currency = str(obj.get("currency") or booking.currency).upper()
    if amount != booking.total_amount or currency != booking.currency.upper():
        # Acknowledged to the gateway, never applied; staff settle it from the review queue.
        err = AmountMismatch(f"event reports {amount} {currency}, booking total is {booking.total_amount} {booking.currency}",
                             paymentId=payment.id, eventAmount=amount, eventCurrency=currency,
                             bookingTotal=booking.total_amount, currency=booking.currency)
        _flag(payment, f"amount mismatch: {err}")
        log_audit(db, "gateway", "payment.amount_mismatch", "payment", payment.id,
                  {"error": err.kind.value, "message": str(err), **err.details})
        logger.error("Amount mismatch on payment %s (booking %s): %s", payment.id, booking.booking_ref, err)
        return "amount_mismatch"

    if payment.status == FAILED:
        other = active_payment(db, booking.id)
        if other is not None:
            _flag(payment, "late success on a failed attempt while another payment is active")
            log_audit(db, "gateway", "payment.late_success", "payment", payment.id, {"activePaymentId": other.id})
            return "needs_review"

    payment.status = PAID
    if booking.status == BookingStatus.PENDING.value:
        bs.apply(booking, bs.BookingEvent.PAYMENT_CONFIRMED, now=now)
        log_audit(db, "gateway", "booking.confirmed", "booking", booking.id, {"paymentId": payment.id, "channel": payment.channel})
        email_service.stage_booking_notice(db, booking, "confirmed")
        logger.info("Booking %s confirmed by card payment %s", booking.booking_ref, payment.id)
        return "applied"

    # The booking left PENDING (cancelled) while the card settled: money is held, booking stays put.
    if booking.status == BookingStatus.CANCELLED.value and booking.payment_status != REFUNDED:
        booking.payment_status = PAID
    _flag(payment, f"paid while booking was {booking.status}; refund required")
    log_audit(db, "gateway", "booking.transition_rejected", "booking", booking.id, {
        "attempted": f"{booking.status} --payment_confirmed-->", "guard": "status = PENDING", "paymentId": payment.id,
    })
    logger.warning("Card payment %s settled after booking %s became %s; flagged for review",
                   payment.id, booking.booking_ref, booking.status)
    return "rejected_transition"


def _on_intent_failed(db: Session, obj: dict, now: datetime) -> str:
    payment, booking = _lock_by_intent(db, str(obj.get("id") or ""))
    if not payment:
        logger.warning("Failed event for unknown intent %s", obj.get("id"))
        return "unknown_reference"
    if payment.status in (PAID, REFUNDED):
        # Out-of-order delivery: success already applied.
        logger.warning("Failed event for %s payment %s discarded", payment.status, payment.id)
        return "discarded"
    if payment.status == FAILED:
        return "duplicate"
    payment.status = FAILED
    if booking.status == BookingStatus.PENDING.value and booking.payment_status != PAID:
        bs.apply(booking, bs.BookingEvent.PAYMENT_FAILED, now=now)
    log_audit(db, "gateway", "payment.failed", "payment", payment.id, {
        "bookingId": booking.id, "reason": (obj.get("last_payment_error") or {}).get("message", ""),
    })
    return "applied"


def _on_refund_succeeded(db: Session, obj: dict, now: datetime) -> str:
    intent_id = str(obj.get("payment_intent") or obj.get("paymentIntent") or "")
    payment, booking = _lock_by_intent(db, intent_id)
    if not payment and obj.get("id"):
        payment, booking = _lock_pair(db, Payment.refund_ref == str(obj["id"]))
    if not payment:
        logger.warning("Refund event for unknown intent %s", intent_id)
        return "unknown_reference"
    if payment.status == REFUNDED:
        return "duplicate"
    if payment.status != PAID or payment.refund_requested_at is None:
        _flag(payment, "refund reported by gateway that was not requested here")
        log_audit(db, "gateway", "payment.unexpected_refund", "payment", payment.id, {"refundId": obj.get("id")})
        return "needs_review"
    _settle_refund(db, payment, booking, "gateway", now)
    return "applied"


EVENT_HANDLERS = {
    "payment_intent.succeeded": _on_intent_succeeded,
    "payment_intent.payment_failed": _on_intent_failed,
    "charge.refunded": _on_refund_succeeded,
}


# --------------------------------------------------------------------------
# MOBILE MONEY
# --------------------------------------------------------------------------
def normalize_phone(phone_number: str) -> str:
    return re.sub(r"[\s.-]", "", phone_number or "")


def initiate_mobile_payment(db: Session, actor, booking_id: str, phone_number: str, operator: str,
                            now: datetime | None = None) -> tuple[Payment, dict]:
    """Create a provisional mobile-money payment and return the transfer instructions."""
    operator = (operator or "").strip().upper()
    if operator not in settings.mobile_money_operators:
        raise ValidationError(f"unsupported operator {operator!r}", allowed=settings.mobile_money_operators)
    phone = normalize_phone(phone_number)
    if not re.fullmatch(settings.MOBILE_MONEY_PHONE_PATTERN, phone):
        raise ValidationError("invalid phone number", phoneNumber=phone_number)
    recipient = settings.mobile_money_recipients.get(operator)
    if not recipient:
        raise ValidationError(f"no recipient number configured for {operator}")

    now = _now(now)
    booking, _ = _payable_booking(db, actor, booking_id, now=now)
    txn = f"MP-{operator}-{uuid.uuid4().hex[:12].upper()}"
    payment = Payment(
        id=str(uuid.uuid4()),
        booking_id=booking.id,
        channel=PaymentChannel.MOBILE_MONEY.value,
        external_ref=txn,
        amount=booking.total_amount,
        currency=booking.currency,
        status=PENDING,
        operator=operator,
        phone_number=phone,
        instructions_sent_at=now,
        notes=f"Initiated by {actor.email} from {phone}",
    )
    db.add(payment)
    booking.payment_status = PENDING
    log_audit(db, actor.id, "payment.mobile_initiated", "payment", payment.id, {"bookingId": booking.id, "operator": operator})
    _commit_new_payment(db, actor, booking, payment)
    logger.info("Mobile money payment %s (%s) initiated for booking %s", payment.id, operator, booking.booking_ref)

    amount = _format_amount(booking.total_amount)
    instructions = {
        "reference": txn,
        "operator": operator,
        "recipient": recipient,
        "amount": amount,
        "currency": booking.currency,
        "text": INSTRUCTION_TEMPLATES.get(operator, "Send {amount} {currency} to {recipient}").format(
            recipient=recipient, amount=amount, currency=booking.currency),
    }
    return payment, instructions


def _staff_mobile_payment(db: Session, actor, payment_id: str) -> tuple[Payment, Booking]:
    authorize(actor, Operation.CONFIRM_MOBILE_PAYMENT)
    payment, booking = _lock_pair_by_id(db, payment_id)
    if payment.channel != PaymentChannel.MOBILE_MONEY.value:
        db.rollback()
        raise ValidationError("only mobile money payments are reconciled manually", paymentId=payment_id)
    return payment, booking


@concurrent_transition("payment --confirm-->")
def confirm_mobile_payment(db: Session, actor, payment_id: str, confirmation_code: str | None = None,
                           notes: str | None = None, now: datetime | None = None) -> Payment:
    """Staff checked the operator's log: payment PAID and booking CONFIRMED together."""
    payment, booking = _staff_mobile_payment(db, actor, payment_id)
    if payment.status == PAID and booking.status == BookingStatus.CONFIRMED.value:
        db.rollback()
        return payment
    try:
        if payment.status != PENDING:
            raise InvalidTransition(f"payment is {payment.status}, not PENDING",
                                    attempted=f"payment {payment.status} --confirm-->", guard="payment status = PENDING")
        bs.apply(booking, bs.BookingEvent.PAYMENT_CONFIRMED, now=_now(now))
    except InvalidTransition as e:
        db.rollback()
        log_rejected_transition(db, actor.id, "payment", payment_id, e)
        raise
    payment.status = PAID
    payment.confirmation_code = confirmation_code or None
    payment.confirmed_by_user_id = actor.id
    payment.notes = "\n".join(x for x in [payment.notes, f"[CONFIRMED] by {actor.email}", notes or ""] if x)
    log_audit(db, actor.id, "payment.mobile_confirmed", "payment", payment.id,
              {"bookingId": booking.id, "confirmationCode": confirmation_code})
    email_service.stage_booking_notice(db, booking, "confirmed")
    db.commit()
    logger.info("Mobile money payment %s confirmed by %s; booking %s CONFIRMED", payment.id, actor.email, booking.booking_ref)
    email_service.deliver_outbox(db)
    return payment


@concurrent_transition("payment --reject-->")
def reject_mobile_payment(db: Session, actor, payment_id: str, reason: str = "", now: datetime | None = None) -> Payment:
    """Transfer not found in the operator's log: payment FAILED, booking left PENDING for a retry."""
    payment, booking = _staff_mobile_payment(db, actor, payment_id)
    if payment.status != PENDING:
        e = InvalidTransition(f"payment is {payment.status}, not PENDING",
                              attempted=f"payment {payment.status} --reject-->", guard="payment status = PENDING")
        db.rollback()
        log_rejected_transition(db, actor.id, "payment", payment_id, e)
        raise e
    payment.status = FAILED
    payment.notes = "\n".join(x for x in [payment.notes, f"[REJECTED] by {actor.email}: {reason or 'not specified'}"] if x)
    if booking.status == BookingStatus.PENDING.value:
        bs.apply(booking, bs.BookingEvent.PAYMENT_FAILED, now=_now(now))
    log_audit(db, actor.id, "payment.mobile_rejected", "payment", payment.id, {"bookingId": booking.id, "reason": reason})
    db.commit()
    return payment


def list_pending_mobile_payments(db: Session, actor) -> list[Payment]:
    authorize(actor, Operation.CONFIRM_MOBILE_PAYMENT)
    q = (
        select(Payment)
        .where(Payment.channel == PaymentChannel.MOBILE_MONEY.value, Payment.status == PENDING)
        .order_by(Payment.created_at.asc())
    )
    return list(db.scalars(q))


def abandon_provisional_payments(db: Session, booking: Booking, note: str) -> None:
    """Fail mobile-money payments still waiting on a booking that was cancelled. Caller commits."""
    for p in db.scalars(select(Payment).where(
        Payment.booking_id == booking.id,
        Payment.channel == PaymentChannel.MOBILE_MONEY.value,
        Payment.status == PENDING,
    )):
        p.status = FAILED
        p.notes = "\n".join(x for x in [p.notes, note] if x)


def expire_stale_payments(db: Session, now: datetime | None = None) -> dict:
    """Fail PENDING payments that outlived their channel's timeout.

    The booking stays PENDING with payment status FAILED, so the guest can pay
    again and the hold sweep can release the room.
    """
    if settings.PAYMENT_TIMEOUT_MINUTES <= 0 and settings.MOBILE_MONEY_TIMEOUT_MINUTES <= 0:
        return {"failed": 0, "disabled": True}
    now = _now(now)
    candidates = db.execute(select(Payment.id, Payment.booking_id).where(Payment.status == PENDING)).all()
    db.rollback()
    failed = 0
    for payment_id, booking_id in candidates:
        booking = _lock_booking(db, booking_id)
        payment = _lock_payment(db, payment_id)
        if not is_stale(payment, now):
            db.rollback()
            continue
        _time_out(db, payment, booking, now)
        db.commit()
        failed += 1
    if failed:
        logger.info("Timed out %d pending payments", failed)
    return {"failed": failed}


# --------------------------------------------------------------------------
# REFUNDS
# --------------------------------------------------------------------------
def _initiate_refund(db: Session, payment: Payment, booking: Booking, actor_id: str, amount, gateway, now: datetime) -> Payment:
    """Record the refund request under the row locks, then call the gateway after they are released.

    ``refund_requested_at`` marks the request before the gateway is called, so
    a concurrent attempt returns early instead of refunding twice. A gateway
    failure clears it again and re-raises.
    """
    if payment.status == REFUNDED or payment.refund_requested_at is not None:
        return payment
    if payment.status != PAID:
        raise InvalidTransition(f"payment is {payment.status}, only PAID payments can be refunded",
                                attempted=f"payment {payment.status} --refund-->", guard="payment status = PAID")
    if booking.status != BookingStatus.CANCELLED.value:
        raise InvalidTransition("cancel the booking before refunding it",
                                attempted=f"{booking.status} --refund-->", guard="status = CANCELLED")
    try:
        refund_amount = payment.amount if amount is None else Decimal(str(amount)).quantize(Decimal("0.01"))
    except InvalidOperation:
        raise ValidationError("invalid refund amount", amount=str(amount))
    if refund_amount <= 0 or refund_amount > payment.amount:
        raise ValidationError("refund amount must be positive and not exceed the amount paid",
                              amount=str(refund_amount), paid=str(payment.amount))
    if refund_amount < payment.amount and not settings.ALLOW_PARTIAL_REFUNDS:
        raise ValidationError("partial refunds are disabled", amount=str(refund_amount), paid=str(payment.amount))

    card = payment.channel == PaymentChannel.CARD.value
    if card and gateway is None:
        raise GatewayError("card gateway is not available")

    payment.refund_amount = refund_amount
    payment.refund_requested_at = now
    log_audit(db, actor_id, "payment.refund_requested", "payment", payment.id,
              {"bookingId": booking.id, "amount": refund_amount, "channel": payment.channel})
    # Release the row locks while the gateway is called.
    db.commit()
    logger.info("Refund of %s requested on payment %s (%s)", refund_amount, payment.id, payment.channel)
    if not card:
        return payment

    payment_id, booking_id = payment.id, booking.id
    try:
        resp = gateway.refund(
            intent_id=payment.external_ref,
            client_ref=f"refund-{booking.booking_ref}",
            amount_minor=to_minor_units(refund_amount),
            currency=payment.currency,
        )
    except GatewayError:
        _lock_booking(db, booking_id)
        payment = _lock_payment(db, payment_id)
        payment.refund_amount = None
        payment.refund_requested_at = None
        db.commit()
        raise

    _lock_booking(db, booking_id)
    payment = _lock_payment(db, payment_id)
    payment.refund_ref = str(resp.get("id") or "") or payment.refund_ref
    log_audit(db, actor_id, "payment.refund_submitted", "payment", payment.id, {"refundRef": payment.refund_ref})
    db.commit()
    return payment


@concurrent_transition("payment --refund-->")
def request_refund(db: Session, actor, payment_id: str, amount=None, gateway=None, now: datetime | None = None) -> Payment:
    """Staff refund. CARD goes through the gateway; MOBILE_MONEY is recorded for manual settlement."""
    authorize(actor, Operation.ISSUE_REFUND)
    payment, booking = _lock_pair_by_id(db, payment_id)
    try:
        return _initiate_refund(db, payment, booking, actor.id, amount, gateway, _now(now))
    except InvalidTransition as e:
        db.rollback()
        log_rejected_transition(db, actor.id, "payment", payment_id, e)
        raise
    except (ValidationError, GatewayError):
        db.rollback()
        raise


def refund_after_cancellation(db: Session, booking_id: str, actor_id: str, gateway=None, now: datetime | None = None) -> Payment | None:
    """Start the full refund for a booking that was cancelled while PAID.

    A gateway failure leaves the booking CANCELLED + PAID and flags the payment
    so staff can retry the refund.
    """
    payment, booking = _lock_pair(db, Payment.booking_id == booking_id, Payment.status == PAID)
    if payment is None:
        logger.error("Booking %s cancelled as PAID but has no PAID payment", booking_id)
        return None
    payment_id = payment.id
    try:
        return _initiate_refund(db, payment, booking, actor_id, None, gateway, _now(now))
    except GatewayError as e:
        db.rollback()
        _lock_booking(db, booking_id)
        payment = _lock_payment(db, payment_id)
        _flag(payment, "refund initiation failed; retry")
        log_audit(db, actor_id, "payment.refund_failed", "payment", payment.id, {"error": str(e)})
        db.commit()
        logger.warning("Refund for cancelled booking %s failed at the gateway: %s", booking_id, e)
        return payment


def _settle_refund(db: Session, payment: Payment, booking: Booking, actor_id: str, now: datetime) -> None:
    payment.status = REFUNDED
    payment.refunded_at = now
    if booking.status == BookingStatus.CANCELLED.value and booking.payment_status == PAID:
        bs.settle_refund(booking)
    log_audit(db, actor_id, "payment.refunded", "payment", payment.id, {"bookingId": booking.id, "amount": payment.refund_amount})
    email_service.stage_booking_notice(db, booking, "refunded",
                                       extra=f"Amount refunded: {payment.refund_amount} {payment.currency}")
    logger.info("Refund settled on payment %s (booking %s)", payment.id, booking.booking_ref)


@concurrent_transition("payment --refund_settled-->")
def settle_manual_refund(db: Session, actor, payment_id: str, reference: str | None = None, now: datetime | None = None) -> Payment:
    """Staff record that a mobile-money refund was sent back to the guest."""
    authorize(actor, Operation.ISSUE_REFUND)
    payment, booking = _lock_pair_by_id(db, payment_id)
    if payment.channel != PaymentChannel.MOBILE_MONEY.value:
        db.rollback()
        raise ValidationError("card refunds settle through the gateway", paymentId=payment_id)
    if payment.status == REFUNDED:
        db.rollback()
        return payment
    if payment.status != PAID or payment.refund_requested_at is None:
        e = InvalidTransition("no refund has been requested for this payment",
                              attempted=f"payment {payment.status} --refund_settled-->", guard="refund requested")
        db.rollback()
        log_rejected_transition(db, actor.id, "payment", payment_id, e)
        raise e
    payment.refund_ref = reference or payment.refund_ref
    _settle_refund(db, payment, booking, actor.id, _now(now))
    db.commit()
    email_service.deliver_outbox(db)
    return payment


# --------------------------------------------------------------------------
# READS
# --------------------------------------------------------------------------
def list_payments_for_booking(db: Session, actor, booking_id: str) -> list[Payment]:
    booking = db.get(Booking, booking_id)
    if not booking:
        raise NotFound("booking not found", bookingId=booking_id)
    authorize(actor, Operation.VIEW_BOOKING, owner_id=booking.user_id)
    return list(db.scalars(select(Payment).where(Payment.booking_id == booking_id).order_by(Payment.created_at.desc())))


def get_payment(db: Session, actor, payment_id: str) -> Payment:
    payment = db.get(Payment, payment_id)
    if not payment:
        raise NotFound("payment not found", paymentId=payment_id)
    booking = db.get(Booking, payment.booking_id)
    authorize(actor, Operation.VIEW_BOOKING, owner_id=booking.user_id if booking else None)
    return payment


def list_review_queue(db: Session, actor) -> list[Payment]:
    authorize(actor, Operation.ISSUE_REFUND)
    return list(db.scalars(select(Payment).where(Payment.needs_review.is_(True)).order_by(Payment.updated_at.desc())))


def resolve_review(db: Session, actor, payment_id: str, note: str = "") -> Payment:
    authorize(actor, Operation.ISSUE_REFUND)
    payment, _ = _lock_pair_by_id(db, payment_id)
    payment.needs_review = False
    payment.notes = "\n".join(x for x in [payment.notes, f"[REVIEWED] by {actor.email}: {note}"] if x)
    log_audit(db, actor.id, "payment.review_resolved", "payment", payment.id, {"reason": payment.review_reason, "note": note})
    db.commit()
    return payment
