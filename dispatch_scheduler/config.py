# dispatch-scheduler/dispatch_scheduler/config.py
"""
Configuration parameters for the Driver Dispatch Scheduling Engine.

This module centralizes all tunable parameters, making it easy to:
- Adjust slot generation (buffer, grid, duration rounding)
- Swap the travel estimator between straight-line and road distance
- Tune driver ranking and store timeouts

The module-level values are defaults. The engine itself never reads them
directly: they seed a ``DispatchConfig`` that is passed to the coordinator
and the lifecycle at construction.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Final, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

# =============================================================================
# OPERATING LOCALE
# =============================================================================

TIMEZONE: Final[str] = "Asia/Manila"
"""Operating timezone. Defines "the day" of an order and the notification clock."""

DEPOT_LAT: Final[float] = 14.5547
"""Warehouse latitude. Default travel origin when a driver has no earlier drop-off."""

DEPOT_LNG: Final[float] = 121.0244
"""Warehouse longitude."""

# =============================================================================
# SLOT GENERATION
# =============================================================================

SLOT_BUFFER_MINS: int = 10
"""Idle time enforced before and after every booked slot."""

SLOT_GRID_MINS: int = 30
"""Candidate slots start on this grid, measured from local midnight."""

DURATION_GRANULARITY_MINS: int = 10
"""Required durations are rounded up to this granularity before slots are built."""

ALIGN_SLOT_END: bool = True
"""
Round the reserved window length up to the grid as well, so that both
boundaries of an offered slot sit on the grid (90 + 20 min -> 120 min window).
"""

# =============================================================================
# TRAVEL ESTIMATION
# =============================================================================

AVG_SPEED_KMH: float = 40.0
"""Average truck speed in km/h used to turn a distance into travel minutes."""

EARTH_RADIUS_KM: float = 6371.0
"""Sphere radius for the Haversine formula."""

USE_ROAD_DISTANCE: bool = False
"""
Enable real road distance calculation via OSRM.
When False, uses Haversine (great-circle) distance.
"""

OSRM_SERVER_URL: str = "https://router.project-osrm.org"
"""
OSRM server URL. Options:
- "https://router.project-osrm.org" (public demo, rate-limited)
- "http://localhost:5000" (local Docker instance)
"""

OSRM_TIMEOUT_SECONDS: float = 5.0
"""Timeout for OSRM API requests. Fail fast to avoid blocking a proposal."""

OSRM_CACHE_SIZE: int = 10000
"""Maximum number of route results to cache. Prevents repeated API calls."""

HAVERSINE_FALLBACK_MULTIPLIER: float = 1.4
"""
Multiplier applied to Haversine distance when OSRM fails.
Typical city roads are 1.3-1.5x longer than straight-line distance.
"""

# =============================================================================
# RANKING
# =============================================================================

DISTANCE_BUCKET_KM: float = 5.0
"""
Distances inside the same bucket are treated as equal. Ranking then falls
through to workload.
"""

PROPOSAL_MAX_WORKERS: int = 8
"""Thread pool size used to evaluate drivers in parallel during a proposal."""

# =============================================================================
# STORE AND LIFECYCLE
# =============================================================================

STORE_TIMEOUT_SECONDS: float = 5.0
"""Upper bound on any single store read/write. Timeouts fail the operation."""

ALLOW_DELIVERED_CORRECTION: bool = False
"""Permit delivered -> arrived_at_pickup as a manual correction."""

NOTIFY_WEBHOOK_URL: Optional[str] = None
"""When set, notifications are POSTed as JSON to this URL."""

NOTIFY_TIMEOUT_SECONDS: float = 5.0
"""Timeout for webhook notification requests."""


@dataclass(frozen=True)
class DispatchConfig:
    """
    Explicit engine configuration.

    Built once by the caller and handed to ``AssignmentCoordinator`` and
    ``OrderLifecycle``. Defaults mirror the module-level constants above.
    """
    timezone: str = TIMEZONE
    depot_lat: float = DEPOT_LAT
    depot_lng: float = DEPOT_LNG

    slot_buffer_minutes: int = SLOT_BUFFER_MINS
    slot_grid_minutes: int = SLOT_GRID_MINS
    duration_granularity_minutes: int = DURATION_GRANULARITY_MINS
    align_slot_end: bool = ALIGN_SLOT_END

    avg_speed_kmh: float = AVG_SPEED_KMH
    earth_radius_km: float = EARTH_RADIUS_KM
    use_road_distance: bool = USE_ROAD_DISTANCE
    osrm_server_url: str = OSRM_SERVER_URL
    osrm_timeout_seconds: float = OSRM_TIMEOUT_SECONDS
    osrm_cache_size: int = OSRM_CACHE_SIZE
    haversine_fallback_multiplier: float = HAVERSINE_FALLBACK_MULTIPLIER

    distance_bucket_km: float = DISTANCE_BUCKET_KM
    proposal_max_workers: int = PROPOSAL_MAX_WORKERS

    store_timeout_seconds: float = STORE_TIMEOUT_SECONDS
    allow_delivered_correction: bool = ALLOW_DELIVERED_CORRECTION
    notify_webhook_url: Optional[str] = NOTIFY_WEBHOOK_URL
    notify_timeout_seconds: float = NOTIFY_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.slot_grid_minutes <= 0 or self.duration_granularity_minutes <= 0:
            raise ValueError("slot grid and duration granularity must be positive")
        if self.slot_buffer_minutes < 0:
            raise ValueError("slot buffer cannot be negative")
        if self.avg_speed_kmh <= 0:
            raise ValueError("average speed must be positive")
        if self.distance_bucket_km <= 0:
            raise ValueError("distance bucket must be positive")
        # Fail early on an unknown zone name
        ZoneInfo(self.timezone)

    @property
    def tz(self) -> ZoneInfo:
        """The operating timezone as a tzinfo."""
        return ZoneInfo(self.timezone)

    @property
    def depot(self) -> Tuple[float, float]:
        """Returns the depot location as a (lat, lng) tuple."""
        return (self.depot_lat, self.depot_lng)

    def with_overrides(self, **overrides: Any) -> "DispatchConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **overrides)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "DispatchConfig":
        """
        Build a config from a plain mapping (e.g. a parsed JSON file).

        Raises:
            ValueError: If the mapping names a field that does not exist
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**dict(values))
