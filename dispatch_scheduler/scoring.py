# dispatch-scheduler/dispatch_scheduler/scoring.py
"""
Driver ranking for order assignment.

Ranking is coarse:
1. Drivers with no candidate slot are dropped
2. Distance is compared in buckets (5 km by default), so two drivers 3.1 km
   and 4.8 km away count as equally close
3. Inside a bucket the less-loaded driver wins

Raw distance never breaks a tie. Drivers without a distance estimate sort
after every driver that has one.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from .models import DriverCandidate, Order


def distance_bucket(distance_km: Optional[float], bucket_km: float) -> float:
    """
    Bucket index for a distance. Unknown distance maps to infinity.

    Example:
        >>> distance_bucket(4.8, 5.0), distance_bucket(5.2, 5.0), distance_bucket(None, 5.0)
        (0, 1, inf)
    """
    if distance_km is None:
        return math.inf
    return math.floor(distance_km / bucket_km)


def compute_workload(orders: Iterable[Order], before: datetime) -> int:
    """
    Minutes of work a driver already carries before ``before``.

    Sums ``estimated_total_duration`` over non-cancelled orders ending at or
    before the cutoff. Callers pass orders already limited to the relevant day.
    """
    return sum(
        o.estimated_total_duration
        for o in orders
        if not o.is_cancelled and o.estimated_end <= before
    )


def ranking_key(candidate: DriverCandidate, bucket_km: float) -> Tuple[float, int]:
    """Sort key: (distance bucket, workload minutes)."""
    return (distance_bucket(candidate.distance_km, bucket_km), candidate.workload_minutes)


def rank_drivers(candidates: Iterable[DriverCandidate], bucket_km: float) -> List[DriverCandidate]:
    """
    Order drivers best first.

    Args:
        candidates: Evaluated drivers for one order
        bucket_km: Width of a distance bucket

    Returns:
        Drivers with at least one candidate slot, best first. The first entry
        is the suggested default. Equal keys keep their input order.
    """
    eligible = [c for c in candidates if c.candidate_slots]
    return sorted(eligible, key=lambda c: ranking_key(c, bucket_km))
