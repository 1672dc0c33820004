"""Re-export all models so Base.metadata sees them."""

from pourline.db.models.buyer import Buyer
from pourline.db.models.order import Order
from pourline.db.models.order_event import OrderEvent
from pourline.db.models.tap import Tap, TapPricing, TapStatus
from pourline.db.models.venue import Venue
from pourline.db.models.webhook_event import WebhookIdempotencyRecord

__all__ = [
    "Buyer",
    "Order",
    "OrderEvent",
    "Tap",
    "TapPricing",
    "TapStatus",
    "Venue",
    "WebhookIdempotencyRecord",
]
