from sqlalchemy import String, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from staydesk.db.session import Base

class GatewayEvent(Base):
    __tablename__ = "gateway_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(120), unique=True, index=True)  # gateway's own event id
    event_type: Mapped[str] = mapped_column(String(80), index=True)  # payment_intent.succeeded, charge.refunded, ...
    external_ref: Mapped[str] = mapped_column(String(120), index=True, default="")
    outcome: Mapped[str] = mapped_column(String(40), default="received")  # applied, duplicate, discarded, amount_mismatch, unknown_reference, ...
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
