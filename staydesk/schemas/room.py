from decimal import Decimal
from pydantic import BaseModel, Field


class RoomCreate(BaseModel):
    code: str
    name: str = ""
    type: str
    pricePerNight: Decimal = Field(gt=0)
    capacity: int = Field(default=2, ge=1)
    description: str = ""


class RoomUpdate(BaseModel):
    name: str | None = None
    type: str | None = None
    pricePerNight: Decimal | None = Field(default=None, gt=0)
    capacity: int | None = Field(default=None, ge=1)
    description: str | None = None
    isActive: bool | None = None


class RoomOut(BaseModel):
    id: str
    code: str
    name: str
    type: str
    description: str = ""
    pricePerNight: str
    capacity: int
    isActive: bool

    @classmethod
    def from_model(cls, r) -> "RoomOut":
        return cls(id=r.id, code=r.code, name=r.name, type=r.type, description=r.description or "",
                   pricePerNight=str(r.price_per_night), capacity=r.capacity, isActive=r.is_active)


class AvailabilityOut(BaseModel):
    roomId: str
    checkIn: str
    checkOut: str
    available: bool
    nights: int
    estimatedTotal: str
    conflicts: list[dict] = []
