from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from staydesk.db.session import get_db
from staydesk.api.deps import get_current_user, get_optional_gateway
from staydesk.models.user import User
from staydesk.schemas.booking import BookingCancel, BookingCreate, BookingOut
from staydesk.services import booking_service

router = APIRouter(tags=["bookings"])

@router.post("/bookings", response_model=BookingOut, status_code=201)
def create_booking(body: BookingCreate, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    booking = booking_service.create_booking(
        db, me,
        room_id=body.roomId,
        check_in=body.checkIn,
        check_out=body.checkOut,
        guests=body.guests,
        special_requests=body.specialRequests,
        owner_id=body.userId,
    )
    return BookingOut.from_model(booking)

@router.get("/bookings")
def list_bookings(status: str | None = None, roomId: str | None = None, limit: int = 50, offset: int = 0,
                  db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    items = booking_service.list_bookings(db, me, status=status, room_id=roomId, limit=limit, offset=offset)
    return {"items": [BookingOut.from_model(b) for b in items]}

@router.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return BookingOut.from_model(booking_service.get_booking(db, me, booking_id))

@router.put("/bookings/{booking_id}/cancel", response_model=BookingOut)
def cancel_booking(booking_id: str, body: BookingCancel | None = None,
                   db: Session = Depends(get_db), me: User = Depends(get_current_user),
                   gateway=Depends(get_optional_gateway)):
    booking = booking_service.cancel_booking(db, me, booking_id, reason=(body.reason if body else ""), gateway=gateway)
    return BookingOut.from_model(booking)
