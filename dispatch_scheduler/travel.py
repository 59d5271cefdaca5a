# dispatch-scheduler/dispatch_scheduler/travel.py
"""
Travel estimation from a driver's origin to an order's pickup.

The estimator is a strategy behind a fixed contract:

    estimate(origin, destination) -> TravelEstimate | None

``None`` means "no estimate" (a coordinate is missing), which callers must
keep apart from a genuine zero distance. Two strategies ship:
- HaversineEstimator: great-circle distance at a fixed average speed
- OsrmEstimator: road distance/duration from an OSRM server, falling back to
  Haversine with a road multiplier when the server fails
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Optional, Tuple

from . import utils
from .config import DispatchConfig
from .models import Coordinates, Order, TravelEstimate

logger = logging.getLogger(__name__)


class TravelEstimator:
    """Base strategy. Subclasses implement ``_measure``."""

    def __init__(self, config: DispatchConfig) -> None:
        self.config = config

    def estimate(
        self,
        origin: Optional[Coordinates],
        destination: Optional[Coordinates],
        from_depot: bool = True,
    ) -> Optional[TravelEstimate]:
        """
        Estimate distance and travel minutes between two points.

        Args:
            origin: Start point, or None if unknown
            destination: End point (the pickup), or None if unknown
            from_depot: Recorded on the estimate for the caller's benefit

        Returns:
            TravelEstimate, or None when either end has no coordinates
        """
        if origin is None or destination is None:
            return None
        distance_km, minutes = self._measure(origin, destination)
        return TravelEstimate(
            distance_km=distance_km,
            travel_minutes=minutes,
            origin=origin,
            from_depot=from_depot,
        )

    def _measure(self, origin: Coordinates, destination: Coordinates) -> Tuple[float, int]:
        raise NotImplementedError


class HaversineEstimator(TravelEstimator):
    """Straight-line distance on a spherical Earth at the configured average speed."""

    def _measure(self, origin: Coordinates, destination: Coordinates) -> Tuple[float, int]:
        distance = utils.haversine_distance(
            origin[0], origin[1], destination[0], destination[1],
            radius_km=self.config.earth_radius_km,
        )
        return distance, utils.calculate_travel_time_minutes(distance, self.config.avg_speed_kmh)


class OsrmEstimator(TravelEstimator):
    """
    Road distance and duration from OSRM.

    When the request fails, falls back to Haversine distance times
    ``haversine_fallback_multiplier`` at the configured average speed.
    """

    def _measure(self, origin: Coordinates, destination: Coordinates) -> Tuple[float, int]:
        result = utils.osrm_route(
            origin[0], origin[1], destination[0], destination[1],
            server_url=self.config.osrm_server_url,
            timeout=self.config.osrm_timeout_seconds,
            cache_size=self.config.osrm_cache_size,
        )
        if result is not None:
            distance_km, duration_min = result
            return distance_km, int(math.ceil(duration_min))

        logger.debug("Falling back to Haversine distance with multiplier")
        distance = utils.haversine_distance(
            origin[0], origin[1], destination[0], destination[1],
            radius_km=self.config.earth_radius_km,
        ) * self.config.haversine_fallback_multiplier
        return distance, utils.calculate_travel_time_minutes(distance, self.config.avg_speed_kmh)


def build_estimator(config: DispatchConfig) -> TravelEstimator:
    """Pick the travel strategy named by the configuration."""
    if config.use_road_distance:
        return OsrmEstimator(config)
    return HaversineEstimator(config)


def preceding_order(order: Order, driver_orders: Iterable[Order]) -> Optional[Order]:
    """
    The driver's latest non-cancelled order that ends before ``order`` is picked up.

    ``driver_orders`` is expected to be limited to the same day already.
    """
    earlier = [
        o for o in driver_orders
        if o.order_id != order.order_id
        and not o.is_cancelled
        and o.estimated_end <= order.pickup_at
    ]
    if not earlier:
        return None
    return max(earlier, key=lambda o: o.estimated_end)


def select_origin(
    order: Order,
    driver_orders: Iterable[Order],
    depot: Coordinates,
) -> Tuple[Optional[Coordinates], bool]:
    """
    Choose where the driver starts from when heading to this pickup.

    If the driver finishes another order earlier the same day, the origin is
    that order's last drop-off (None if it was never geocoded). Otherwise the
    origin is the depot.

    Returns:
        Tuple of (origin_or_None, from_depot)
    """
    previous = preceding_order(order, driver_orders)
    if previous is None:
        return depot, True
    return previous.last_dropoff_loc, False
