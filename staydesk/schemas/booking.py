from datetime import date
from pydantic import BaseModel, Field

from staydesk.services import booking_state


class BookingCreate(BaseModel):
    roomId: str
    checkIn: date
    checkOut: date
    guests: int = Field(default=1, ge=1)
    specialRequests: str = ""
    userId: str | None = None  # staff booking on behalf of a guest


class BookingCancel(BaseModel):
    reason: str = ""


class BookingOut(BaseModel):
    id: str
    bookingRef: str
    roomId: str
    userId: str
    checkIn: str
    checkOut: str
    nights: int
    guests: int
    unitPrice: str
    totalAmount: str
    currency: str
    status: str
    paymentStatus: str
    canCancel: bool
    cancellationReason: str | None = None
    cancelledAt: str | None = None
    specialRequests: str = ""
    createdAt: str | None = None

    @classmethod
    def from_model(cls, b) -> "BookingOut":
        return cls(
            id=b.id,
            bookingRef=b.booking_ref,
            roomId=b.room_id,
            userId=b.user_id,
            checkIn=b.check_in.isoformat(),
            checkOut=b.check_out.isoformat(),
            nights=b.nights,
            guests=b.guests,
            unitPrice=str(b.unit_price),
            totalAmount=str(b.total_amount),
            currency=b.currency,
            status=b.status,
            paymentStatus=b.payment_status,
            canCancel=booking_state.can_cancel(b),
            cancellationReason=b.cancellation_reason,
            cancelledAt=b.cancelled_at.isoformat() if b.cancelled_at else None,
            specialRequests=b.special_requests or "",
            createdAt=b.created_at.isoformat() if b.created_at else None,
        )
