import logging
import uuid
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.orm import Session

from staydesk.core.access import Operation, authorize
from staydesk.core.errors import NotFound, ValidationError
from staydesk.models.enums import RoomType
from staydesk.models.room import Room
from staydesk.services.audit_service import log_audit

logger = logging.getLogger(__name__)


def _price(value) -> Decimal:
    try:
        price = Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        raise ValidationError("pricePerNight must be a number", pricePerNight=str(value))
    if price <= 0:
        raise ValidationError("pricePerNight must be positive")
    return price


def _room_type(value: str) -> str:
    try:
        return RoomType((value or "").upper()).value
    except ValueError:
        raise ValidationError(f"unknown room type {value!r}", allowed=[t.value for t in RoomType])


def list_rooms(db: Session, room_type: str | None = None, include_inactive: bool = False) -> list[Room]:
    q = select(Room)
    if not include_inactive:
        q = q.where(Room.is_active.is_(True))
    if room_type:
        q = q.where(Room.type == _room_type(room_type))
    return list(db.scalars(q.order_by(Room.code)))


def get_room(db: Session, room_id: str) -> Room:
    room = db.get(Room, room_id)
    if not room:
        raise NotFound("room not found", roomId=room_id)
    return room


def create_room(db: Session, actor, *, code: str, name: str, room_type: str, price_per_night, capacity: int = 2,
                description: str = "") -> Room:
    authorize(actor, Operation.MANAGE_ROOMS)
    code = (code or "").strip().upper()
    if not code:
        raise ValidationError("code required")
    if capacity < 1:
        raise ValidationError("capacity must be >= 1")
    if db.scalar(select(Room.id).where(Room.code == code)):
        raise ValidationError("room code already exists", code=code)
    room = Room(
        id=str(uuid.uuid4()),
        code=code,
        name=name or code,
        type=_room_type(room_type),
        description=description or "",
        price_per_night=_price(price_per_night),
        capacity=capacity,
        is_active=True,
    )
    db.add(room)
    log_audit(db, actor.id, "room.create", "room", room.id, {"code": code, "pricePerNight": room.price_per_night})
    db.commit()
    logger.info("Room %s created by %s", code, actor.email)
    return room


def update_room(db: Session, actor, room_id: str, **changes) -> Room:
    """Partial update. Price changes apply to new bookings only."""
    authorize(actor, Operation.MANAGE_ROOMS)
    room = get_room(db, room_id)
    before = {"pricePerNight": room.price_per_night, "isActive": room.is_active}
    if changes.get("name") is not None:
        room.name = changes["name"]
    if changes.get("description") is not None:
        room.description = changes["description"]
    if changes.get("room_type") is not None:
        room.type = _room_type(changes["room_type"])
    if changes.get("price_per_night") is not None:
        room.price_per_night = _price(changes["price_per_night"])
    if changes.get("capacity") is not None:
        if changes["capacity"] < 1:
            raise ValidationError("capacity must be >= 1")
        room.capacity = changes["capacity"]
    if changes.get("is_active") is not None:
        room.is_active = bool(changes["is_active"])
    log_audit(db, actor.id, "room.update", "room", room.id, {
        "before": before, "after": {"pricePerNight": room.price_per_night, "isActive": room.is_active},
    })
    db.commit()
    return room
