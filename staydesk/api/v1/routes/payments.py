from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from staydesk.db.session import get_db
from staydesk.api.deps import get_current_user, get_gateway, get_optional_gateway, require
from staydesk.core.access import Operation
from staydesk.core.config import settings
from staydesk.models.enums import PaymentChannel
from staydesk.models.user import User
from staydesk.schemas.payments import (
    CardPaymentOut, CardPaymentRequest, MobileConfirmRequest, MobileInstructions, MobilePaymentOut,
    MobilePaymentRequest, MobileRejectRequest, PaymentOut, RefundConfirmRequest, RefundRequest,
)
from staydesk.services import payment_service

router = APIRouter(tags=["payments"])


@router.get("/payments/methods")
def payment_methods():
    return {
        "currency": settings.CURRENCY,
        "channels": [
            {"channel": PaymentChannel.CARD.value, "sandbox": settings.GATEWAY_SANDBOX},
            {"channel": PaymentChannel.MOBILE_MONEY.value, "operators": settings.mobile_money_operators},
        ],
    }


@router.post("/payments/card", response_model=CardPaymentOut, status_code=201)
def create_card_payment(body: CardPaymentRequest, db: Session = Depends(get_db),
                        me: User = Depends(get_current_user), gateway=Depends(get_gateway)):
    payment, client_secret = payment_service.create_card_payment(db, me, body.bookingId, body.paymentMethod, gateway)
    return CardPaymentOut(payment=PaymentOut.from_model(payment), clientSecret=client_secret)


@router.post("/payments/webhook")
async def gateway_webhook(req: Request, db: Session = Depends(get_db)):
    """Signed gateway events. Acknowledged with the outcome once verified, so the gateway stops retrying."""
    body = await req.body()
    # Verify against the path the gateway signed (proxies may rewrite it).
    path = settings.GATEWAY_WEBHOOK_PATH or req.url.path
    outcome = payment_service.handle_gateway_event(db, dict(req.headers), body, req.method, path)
    out = {"ok": True, "outcome": outcome}
    kind = payment_service.OUTCOME_ERRORS.get(outcome)
    if kind is not None:
        out["error"] = kind.value
    return out


@router.post("/payments/mobile", response_model=MobilePaymentOut, status_code=201)
def initiate_mobile_payment(body: MobilePaymentRequest, db: Session = Depends(get_db),
                            me: User = Depends(get_current_user)):
    payment, instructions = payment_service.initiate_mobile_payment(db, me, body.bookingId, body.phoneNumber, body.operator)
    return MobilePaymentOut(payment=PaymentOut.from_model(payment), instructions=MobileInstructions(**instructions))


@router.get("/payments/mobile/pending")
def pending_mobile_payments(db: Session = Depends(get_db),
                            me: User = Depends(require(Operation.CONFIRM_MOBILE_PAYMENT))):
    return {"items": [PaymentOut.from_model(p) for p in payment_service.list_pending_mobile_payments(db, me)]}


@router.put("/payments/mobile/{payment_id}/confirm", response_model=PaymentOut)
def confirm_mobile_payment(payment_id: str, body: MobileConfirmRequest | None = None, db: Session = Depends(get_db),
                           me: User = Depends(require(Operation.CONFIRM_MOBILE_PAYMENT))):
    body = body or MobileConfirmRequest()
    payment = payment_service.confirm_mobile_payment(db, me, payment_id, body.confirmationCode, body.notes)
    return PaymentOut.from_model(payment)


@router.put("/payments/mobile/{payment_id}/reject", response_model=PaymentOut)
def reject_mobile_payment(payment_id: str, body: MobileRejectRequest | None = None, db: Session = Depends(get_db),
                          me: User = Depends(require(Operation.CONFIRM_MOBILE_PAYMENT))):
    payment = payment_service.reject_mobile_payment(db, me, payment_id, (body.reason if body else ""))
    return PaymentOut.from_model(payment)


@router.post("/payments/{payment_id}/refund", response_model=PaymentOut)
def request_refund(payment_id: str, body: RefundRequest | None = None, db: Session = Depends(get_db),
                   me: User = Depends(require(Operation.ISSUE_REFUND)), gateway=Depends(get_optional_gateway)):
    payment = payment_service.request_refund(db, me, payment_id, amount=(body.amount if body else None), gateway=gateway)
    return PaymentOut.from_model(payment)


@router.put("/payments/{payment_id}/refund/confirm", response_model=PaymentOut)
def confirm_manual_refund(payment_id: str, body: RefundConfirmRequest | None = None, db: Session = Depends(get_db),
                          me: User = Depends(require(Operation.ISSUE_REFUND))):
    payment = payment_service.settle_manual_refund(db, me, payment_id, reference=(body.reference if body else None))
    return PaymentOut.from_model(payment)


@router.get("/payments/booking/{booking_id}")
def payments_for_booking(booking_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return {"items": [PaymentOut.from_model(p) for p in payment_service.list_payments_for_booking(db, me, booking_id)]}


@router.get("/payments/{payment_id}", response_model=PaymentOut)
def get_payment(payment_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return PaymentOut.from_model(payment_service.get_payment(db, me, payment_id))
