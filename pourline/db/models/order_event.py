"""OrderEvent model: append-only order timeline."""

from sqlalchemy import JSON, BigInteger, Column, ForeignKey, Integer, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from pourline.db.base import Base
from pourline.db.types import UTCDateTime, utc_now


class OrderEvent(Base):
    __tablename__ = "order_events"

    # Monotonic id doubles as the timeline ordering key
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)

    event_type = Column(String(50), nullable=False, index=True)  # EventType values
    event_metadata = Column("metadata", JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now, index=True)
    # NO updated_at -- events are immutable (append-only)
