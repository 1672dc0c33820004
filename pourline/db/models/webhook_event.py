"""WebhookIdempotencyRecord model for de-duplicating processor webhooks."""

from sqlalchemy import Column, String

from pourline.db.base import Base
from pourline.db.types import UTCDateTime, utc_now


class WebhookIdempotencyRecord(Base):
    """One row per processed external event id.

    Inserted in the same transaction as the event's side effects, so a
    primary-key conflict means the event was already applied.
    """

    __tablename__ = "webhook_idempotency"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(UTCDateTime, nullable=False, default=utc_now)
