# Overview: Service-layer operations for maintenance; the periodic expiry sweep.

from __future__ import annotations

import logging
from datetime import datetime

from settlement.time_utils import to_utc_z, utcnow
from . import inventory_service, order_service


logger = logging.getLogger(__name__)


def run_sweep(*, now: datetime | None = None) -> dict:
    """
    One sweeper pass.

    Expires lapsed holds first, then cancels pending orders left with no hold
    past the abandon grace period. The sweeper is the only writer that
    releases a hold purely because of time.
    """
    now = now or utcnow()
    reservations = inventory_service.release_expired_reservations(now=now)
    orders = order_service.cancel_abandoned_orders(now=now)
    logger.debug("Sweep at %s: %s reservations expired, %s orders canceled",
                 now, reservations["reservations_expired"], orders["orders_canceled"])
    return {
        "reservations_expired": reservations["reservations_expired"],
        "units_returned": reservations["units_returned"],
        "reservations_skipped": reservations["skipped"],
        "orders_canceled": orders["orders_canceled"],
        "orders_skipped": orders["skipped"],
        "ran_at": to_utc_z(now),
    }
