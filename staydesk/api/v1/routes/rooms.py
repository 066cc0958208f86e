from datetime import date
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from staydesk.db.session import get_db
from staydesk.api.deps import require
from staydesk.core.access import Operation
from staydesk.models.user import User
from staydesk.schemas.room import AvailabilityOut, RoomCreate, RoomOut, RoomUpdate
from staydesk.services import availability_service, booking_state, room_service

router = APIRouter(tags=["rooms"])

@router.get("/rooms")
def list_rooms(type: str | None = None, db: Session = Depends(get_db)):
    return {"items": [RoomOut.from_model(r) for r in room_service.list_rooms(db, room_type=type)]}

@router.get("/rooms/available")
def available_rooms(checkIn: date, checkOut: date, guests: int = 1, db: Session = Depends(get_db)):
    rooms = availability_service.available_rooms(db, checkIn, checkOut, guests=guests)
    nights = booking_state.compute_nights(checkIn, checkOut)
    return {
        "checkIn": checkIn.isoformat(),
        "checkOut": checkOut.isoformat(),
        "nights": nights,
        "items": [
            {**RoomOut.from_model(r).model_dump(), "estimatedTotal": str(booking_state.compute_total(r.price_per_night, nights))}
            for r in rooms
        ],
    }

@router.get("/rooms/{room_id}", response_model=RoomOut)
def get_room(room_id: str, db: Session = Depends(get_db)):
    return RoomOut.from_model(room_service.get_room(db, room_id))

@router.get("/rooms/{room_id}/availability", response_model=AvailabilityOut)
def room_availability(room_id: str, checkIn: date, checkOut: date, db: Session = Depends(get_db)):
    room = room_service.get_room(db, room_id)
    availability_service.validate_stay(checkIn, checkOut)
    conflicts = availability_service.find_conflicts(db, room.id, checkIn, checkOut)
    nights = booking_state.compute_nights(checkIn, checkOut)
    return AvailabilityOut(
        roomId=room.id,
        checkIn=checkIn.isoformat(),
        checkOut=checkOut.isoformat(),
        available=not conflicts and room.is_active,
        nights=nights,
        estimatedTotal=str(booking_state.compute_total(room.price_per_night, nights)),
        # dates only; who booked stays private
        conflicts=[{"checkIn": b.check_in.isoformat(), "checkOut": b.check_out.isoformat()} for b in conflicts],
    )

@router.post("/rooms", response_model=RoomOut, status_code=201)
def create_room(body: RoomCreate, db: Session = Depends(get_db), me: User = Depends(require(Operation.MANAGE_ROOMS))):
    room = room_service.create_room(
        db, me,
        code=body.code,
        name=body.name,
        room_type=body.type,
        price_per_night=body.pricePerNight,
        capacity=body.capacity,
        description=body.description,
    )
    return RoomOut.from_model(room)

@router.patch("/rooms/{room_id}", response_model=RoomOut)
def update_room(room_id: str, body: RoomUpdate, db: Session = Depends(get_db),
                me: User = Depends(require(Operation.MANAGE_ROOMS))):
    room = room_service.update_room(
        db, me, room_id,
        name=body.name,
        room_type=body.type,
        price_per_night=body.pricePerNight,
        capacity=body.capacity,
        description=body.description,
        is_active=body.isActive,
    )
    return RoomOut.from_model(room)
