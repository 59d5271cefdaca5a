# dispatch-scheduler/dispatch_scheduler/models.py
"""
Core domain models for the Driver Dispatch Scheduling Engine.

This module defines the records exchanged with the persistence layer:
- AvailabilityBlock: A driver-declared interval of workable time
- TimeSlot: A concrete, possibly order-bound, booking inside a driver's day
- Order: A pickup-and-delivery request with its drop-off stops
- StatusLogEntry: One append-only row of an order's status history

and the derived values the engine hands back to callers:
- CandidateSlot, TravelEstimate, DriverCandidate, AssignmentResult
- DriverAssignedNotification, OrderNotice
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

Coordinates = Tuple[float, float]


class OrderStatus(Enum):
    """Lifecycle states for an order."""
    ORDER_PLACED = "order_placed"                    # Created, no driver
    DRIVER_ASSIGNED = "driver_assigned"              # Driver and slot reserved
    TRUCK_LEFT_WAREHOUSE = "truck_left_warehouse"
    ARRIVED_AT_PICKUP = "arrived_at_pickup"
    ITEMS_BEING_DELIVERED = "items_being_delivered"  # Optional, set by pickup confirmation
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def label(self) -> str:
        """Human-readable status name, e.g. 'Truck Left Warehouse'."""
        return self.value.replace("_", " ").title()


class SlotStatus(Enum):
    """States of a driver time slot. Changed only by order transitions."""
    AVAILABLE = "available"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"


@dataclass
class AvailabilityBlock:
    """
    A continuous interval a driver declares as workable.

    Attributes:
        block_id: Unique identifier
        driver_id: Owning driver
        start/end: Interval bounds (timezone-aware)
    """
    block_id: str
    driver_id: str
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """True if the block shares any time with [start, end)."""
        return self.start < end and start < self.end

    def contains(self, start: datetime, end: datetime) -> bool:
        """True if [start, end) lies entirely inside the block."""
        return self.start <= start and end <= self.end


@dataclass
class TimeSlot:
    """
    A booking on a driver's calendar.

    A scheduled or completed slot is owned by exactly one order. An
    available slot owns none.
    """
    slot_id: str
    driver_id: str
    start: datetime
    end: datetime
    status: SlotStatus = SlotStatus.AVAILABLE
    order_id: Optional[str] = None

    @property
    def is_booked(self) -> bool:
        """Scheduled and completed slots block their interval (plus buffer)."""
        return self.status in (SlotStatus.SCHEDULED, SlotStatus.COMPLETED)

    def __repr__(self) -> str:
        return (f"TimeSlot({self.slot_id}, {self.driver_id}, "
                f"{self.start:%H:%M}-{self.end:%H:%M}, {self.status.value})")


@dataclass
class DropoffStop:
    """A single drop-off of an order. Coordinates may be missing until geocoded."""
    sequence: int
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: str = ""

    @property
    def location(self) -> Optional[Coordinates]:
        """Returns (lat, lng), or None if the stop is not geocoded."""
        if self.lat is None or self.lng is None:
            return None
        return (self.lat, self.lng)


@dataclass
class Order:
    """
    A pickup-and-delivery order.

    Attributes:
        order_id: Unique identifier
        pickup_at: Requested (or, once assigned, scheduled) pickup timestamp
        pickup_lat/lng: Pickup location, None until geocoded
        dropoffs: Drop-off stops, visited in ``sequence`` order
        estimated_total_duration: Expected job duration in minutes
        status: Current lifecycle state
        driver_id: Assigned driver, if any
        estimated_end_at: Scheduled end of the job, set at assignment
    """
    order_id: str
    pickup_at: datetime
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    dropoffs: List[DropoffStop] = field(default_factory=list)
    estimated_total_duration: int = 0
    status: OrderStatus = OrderStatus.ORDER_PLACED
    driver_id: Optional[str] = None
    estimated_end_at: Optional[datetime] = None

    @property
    def pickup_loc(self) -> Optional[Coordinates]:
        """Returns the pickup location as a (lat, lng) tuple, or None."""
        if self.pickup_lat is None or self.pickup_lng is None:
            return None
        return (self.pickup_lat, self.pickup_lng)

    @property
    def last_dropoff_loc(self) -> Optional[Coordinates]:
        """Location of the final drop-off, or None if there is none or it is not geocoded."""
        if not self.dropoffs:
            return None
        return max(self.dropoffs, key=lambda d: d.sequence).location

    @property
    def estimated_end(self) -> datetime:
        """Scheduled end if known, otherwise pickup plus the estimated duration."""
        if self.estimated_end_at is not None:
            return self.estimated_end_at
        return self.pickup_at + timedelta(minutes=self.estimated_total_duration)

    @property
    def is_cancelled(self) -> bool:
        return self.status == OrderStatus.CANCELLED

    def __repr__(self) -> str:
        return f"Order({self.order_id}, {self.status.value}, driver={self.driver_id})"


@dataclass(frozen=True)
class StatusLogEntry:
    """One append-only row of an order's status history."""
    order_id: str
    status: OrderStatus
    description: str
    timestamp: datetime


@dataclass
class Driver:
    """A roster entry supplied by the external layer."""
    driver_id: str
    name: str = ""
    email: str = ""
    phone: str = ""

    def __repr__(self) -> str:
        return f"Driver({self.driver_id})"


@dataclass(frozen=True)
class CandidateSlot:
    """A feasible window offered for an order."""
    driver_id: str
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def __repr__(self) -> str:
        return f"CandidateSlot({self.driver_id}, {self.start:%H:%M}-{self.end:%H:%M})"


@dataclass(frozen=True)
class TravelEstimate:
    """
    Distance and travel overhead from a driver's origin to an order's pickup.

    Attributes:
        distance_km: Estimated distance in kilometers
        travel_minutes: Travel time, rounded up to a whole minute
        origin: Where the estimate starts from
        from_depot: True if the origin is the depot rather than a prior drop-off
    """
    distance_km: float
    travel_minutes: int
    origin: Coordinates
    from_depot: bool = True


@dataclass
class DriverCandidate:
    """
    A driver evaluated for one order.

    ``travel`` is None when no estimate could be made; such drivers rank last.
    """
    driver: Driver
    travel: Optional[TravelEstimate]
    workload_minutes: int
    required_minutes: int
    candidate_slots: List[CandidateSlot] = field(default_factory=list)

    @property
    def driver_id(self) -> str:
        return self.driver.driver_id

    @property
    def distance_km(self) -> Optional[float]:
        return self.travel.distance_km if self.travel is not None else None

    def __repr__(self) -> str:
        dist = f"{self.distance_km:.2f}km" if self.distance_km is not None else "n/a"
        return (f"DriverCandidate({self.driver_id}, dist={dist}, "
                f"workload={self.workload_minutes}m, slots={len(self.candidate_slots)})")


@dataclass(frozen=True)
class DriverAssignedNotification:
    """Payload emitted once per successful assignment."""
    driver_id: str
    order_id: str
    pickup_time_formatted: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "driverId": self.driver_id,
            "orderId": self.order_id,
            "pickupTimeFormatted": self.pickup_time_formatted,
        }


@dataclass(frozen=True)
class OrderNotice:
    """Payload emitted when an order is cancelled or reactivated."""
    order_id: str
    status: OrderStatus
    message: str
    reason_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "status": self.status.value,
            "reason": self.reason_key,
            "message": self.message,
        }


@dataclass
class AssignmentResult:
    """Outcome of a successful commit."""
    order: Order
    slot: TimeSlot
    notification: DriverAssignedNotification
