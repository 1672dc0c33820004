"""CloudWatch metrics for the order lifecycle.

Two series are published under ``Pourline/Orders``:

* ``OrderEvents``: one count per lifecycle milestone (created, paid,
  redeemed, expired), dimensioned by milestone and venue.
* ``PourVarianceOz``: metered volume minus ordered volume for each
  completed pour, dimensioned by tap, so over-pouring taps stand out.

Publishing never raises into the order path. boto3 is synchronous, so the
put happens on a small thread pool and failures are only logged. Nothing is
sent unless ``metrics_enabled`` is set.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal

import boto3
import structlog

from pourline.core.config import get_settings

logger = structlog.get_logger(__name__)

NAMESPACE = "Pourline/Orders"

_client = None
_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="order-metrics")


def _cloudwatch():
    global _client
    if _client is None:
        _client = boto3.client("cloudwatch", region_name=get_settings().metrics_region)
    return _client


def _put(datum: dict) -> None:
    datum.setdefault("Timestamp", datetime.now(timezone.utc))
    try:
        _cloudwatch().put_metric_data(Namespace=NAMESPACE, MetricData=[datum])
    except Exception as e:
        logger.warning("order_metric_put_failed", metric=datum["MetricName"], error=str(e))


def _submit(datum: dict) -> None:
    if not get_settings().metrics_enabled:
        return
    asyncio.get_running_loop().run_in_executor(_pool, _put, datum)


async def emit_business_event(event_name: str, venue_id: str | None = None) -> None:
    """Count a lifecycle milestone such as ``order_paid``."""
    dimensions = [{"Name": "Milestone", "Value": event_name}]
    if venue_id:
        dimensions.append({"Name": "VenueId", "Value": venue_id})
    _submit({"MetricName": "OrderEvents", "Dimensions": dimensions, "Value": 1.0, "Unit": "Count"})


async def emit_pour_variance(tap_id: str, variance_oz: Decimal) -> None:
    """Record how far a completed pour landed from the ordered volume."""
    _submit({
        "MetricName": "PourVarianceOz",
        "Dimensions": [{"Name": "TapId", "Value": tap_id}],
        "Value": float(variance_oz),
        "Unit": "None",
    })
