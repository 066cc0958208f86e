from decimal import Decimal
from pydantic import BaseModel, Field


class CardPaymentRequest(BaseModel):
    bookingId: str
    paymentMethod: str = "card"  # gateway payment method id / token


class MobilePaymentRequest(BaseModel):
    bookingId: str
    phoneNumber: str
    operator: str


class MobileConfirmRequest(BaseModel):
    confirmationCode: str | None = None
    notes: str | None = None


class MobileRejectRequest(BaseModel):
    reason: str = ""


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)  # default: full amount paid


class RefundConfirmRequest(BaseModel):
    reference: str | None = None  # operator transaction id of the transfer back


class ReviewResolveRequest(BaseModel):
    note: str = ""


class PaymentOut(BaseModel):
    id: str
    bookingId: str
    channel: str
    externalRef: str
    amount: str
    currency: str
    status: str
    operator: str | None = None
    phoneNumber: str | None = None
    confirmationCode: str | None = None
    refundAmount: str | None = None
    refundRef: str | None = None
    refundRequestedAt: str | None = None
    refundedAt: str | None = None
    needsReview: bool = False
    reviewReason: str = ""
    createdAt: str | None = None

    @classmethod
    def from_model(cls, p) -> "PaymentOut":
        return cls(
            id=p.id,
            bookingId=p.booking_id,
            channel=p.channel,
            externalRef=p.external_ref,
            amount=str(p.amount),
            currency=p.currency,
            status=p.status,
            operator=p.operator,
            phoneNumber=p.phone_number,
            confirmationCode=p.confirmation_code,
            refundAmount=str(p.refund_amount) if p.refund_amount is not None else None,
            refundRef=p.refund_ref,
            refundRequestedAt=p.refund_requested_at.isoformat() if p.refund_requested_at else None,
            refundedAt=p.refunded_at.isoformat() if p.refunded_at else None,
            needsReview=bool(p.needs_review),
            reviewReason=p.review_reason or "",
            createdAt=p.created_at.isoformat() if p.created_at else None,
        )


class CardPaymentOut(BaseModel):
    payment: PaymentOut
    clientSecret: str | None = None


class MobileInstructions(BaseModel):
    reference: str
    operator: str
    recipient: str
    amount: str
    currency: str
    text: str


class MobilePaymentOut(BaseModel):
    payment: PaymentOut
    instructions: MobileInstructions
