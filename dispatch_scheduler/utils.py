# dispatch-scheduler/dispatch_scheduler/utils.py
"""
Utility functions for the Driver Dispatch Scheduling Engine.

Provides geographic calculations, OSRM road routing and the time arithmetic
shared by slot generation and the coordinator.
"""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, time, timedelta, tzinfo
from typing import Optional, Tuple

import requests

# Configure logging
logger = logging.getLogger(__name__)

# Module-level cache for OSRM results
_osrm_cache: dict[Tuple[float, float, float, float], Tuple[float, float]] = {}
_osrm_cache_lock = threading.Lock()


def haversine_distance(
    lat1: float, lon1: float, lat2: float, lon2: float, radius_km: float = 6371.0
) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1: Latitude of point 1 in decimal degrees
        lon1: Longitude of point 1 in decimal degrees
        lat2: Latitude of point 2 in decimal degrees
        lon2: Longitude of point 2 in decimal degrees
        radius_km: Sphere radius

    Returns:
        Distance in kilometers between the two points

    Example:
        >>> haversine_distance(14.5547, 121.0244, 14.5995, 120.9842)
        6.6  # ~6.6 km, Makati depot to Manila
    """
    lon1, lat1, lon2, lat2 = map(math.radians, [lon1, lat1, lon2, lat2])

    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = math.sin(dlat / 2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2)**2
    c = 2 * math.asin(math.sqrt(a))
    return c * radius_km


def calculate_travel_time_minutes(distance_km: float, avg_speed_kmh: float) -> int:
    """
    Travel time for a distance at a fixed average speed, rounded up to a whole minute.

    Example:
        >>> calculate_travel_time_minutes(10.0, 40.0)  # 15 min exactly
        15
        >>> calculate_travel_time_minutes(10.1, 40.0)
        16
    """
    if avg_speed_kmh <= 0:
        raise ValueError("average speed must be positive")
    # round() first so float noise (e.g. 15.000000000000002) doesn't add a minute
    return int(math.ceil(round(distance_km / avg_speed_kmh * 60, 6)))


def _get_cache_key(lat1: float, lon1: float, lat2: float, lon2: float) -> Tuple[float, float, float, float]:
    """Create a cache key with rounded coordinates (5 decimal places ~ 1m precision)."""
    return (round(lat1, 5), round(lon1, 5), round(lat2, 5), round(lon2, 5))


def osrm_route(
    lat1: float, lon1: float,
    lat2: float, lon2: float,
    server_url: str,
    timeout: float,
    cache_size: int = 10000,
) -> Optional[Tuple[float, float]]:
    """
    Get road distance and duration from an OSRM routing service.

    Results are cached to minimize API calls. The cache is shared by the
    proposal's worker threads; the lock is not held during the request.

    Returns:
        Tuple of (distance_km, duration_minutes) if successful, None if failed

    Note:
        OSRM expects coordinates in lon,lat order (not lat,lon).
    """
    cache_key = _get_cache_key(lat1, lon1, lat2, lon2)
    with _osrm_cache_lock:
        cached = _osrm_cache.get(cache_key)
    if cached is not None:
        return cached

    try:
        url = (
            f"{server_url}/route/v1/driving/"
            f"{lon1},{lat1};{lon2},{lat2}"
            f"?overview=false"
        )

        response = requests.get(url, timeout=timeout)
        response.raise_for_status()

        data = response.json()

        if data.get("code") != "Ok" or not data.get("routes"):
            logger.warning(f"OSRM returned no route: {data.get('code')}")
            return None

        route = data["routes"][0]
        result = (route["distance"] / 1000, route["duration"] / 60)

        # Enforce cache size limit by evicting the oldest 10%
        with _osrm_cache_lock:
            if len(_osrm_cache) >= cache_size:
                for key in list(_osrm_cache.keys())[:max(cache_size // 10, 1)]:
                    _osrm_cache.pop(key, None)
            _osrm_cache[cache_key] = result
        return result

    except requests.exceptions.Timeout:
        logger.warning("OSRM request timed out")
        return None
    except requests.exceptions.RequestException as e:
        logger.warning(f"OSRM request failed: {e}")
        return None
    except (KeyError, ValueError, TypeError) as e:
        logger.warning(f"OSRM response parsing failed: {e}")
        return None


def clear_osrm_cache() -> int:
    """
    Clear the OSRM route cache.

    Returns:
        Number of cached entries that were cleared
    """
    with _osrm_cache_lock:
        count = len(_osrm_cache)
        _osrm_cache.clear()
    return count


# =============================================================================
# TIME ARITHMETIC
# =============================================================================

def round_up_minutes(minutes: int, granularity: int) -> int:
    """
    Round a duration up to the next multiple of ``granularity``.

    A non-positive duration counts as one granularity unit.

    Example:
        >>> round_up_minutes(91, 10)
        100
    """
    if minutes <= 0:
        return granularity
    return int(math.ceil(minutes / granularity)) * granularity


def day_bounds(moment: datetime, tz: tzinfo) -> Tuple[datetime, datetime]:
    """
    Local midnight-to-midnight interval containing ``moment``.

    Returns:
        (day_start, day_end) as aware datetimes in ``tz``
    """
    local_day = moment.astimezone(tz).date()
    start = datetime.combine(local_day, time.min, tzinfo=tz)
    end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def ceil_to_grid(moment: datetime, origin: datetime, grid_minutes: int) -> datetime:
    """
    First grid boundary at or after ``moment``, with the grid anchored at ``origin``.

    Example:
        09:10 on a 30 minute grid anchored at midnight -> 09:30
    """
    step = timedelta(minutes=grid_minutes)
    offset = moment - origin
    steps = math.ceil(offset / step)
    return origin + steps * step


def format_clock(moment: datetime, tz: tzinfo) -> str:
    """Format a timestamp as HH:MM in the given timezone."""
    return moment.astimezone(tz).strftime("%H:%M")


def parse_timestamp(value: str, tz: tzinfo) -> datetime:
    """
    Parse an ISO-8601 timestamp. Naive values are taken to be in ``tz``.

    Handles both 'YYYY-MM-DD HH:MM[:SS]' and 'YYYY-MM-DDTHH:MM[:SS][+offset]'.
    """
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def format_time_duration(minutes: float) -> str:
    """
    Format a duration in minutes as a human-readable string.

    Returns:
        Formatted string like "1h 23m" or "45m"
    """
    if minutes < 60:
        return f"{minutes:.0f}m"
    hours = int(minutes // 60)
    mins = int(minutes % 60)
    return f"{hours}h {mins}m"
