# dispatch-scheduler/dispatch_scheduler/store.py
"""
Persistence boundary for the dispatch engine.

``DispatchStore`` is the contract the engine talks to: drivers,
availability blocks, time slots, orders and the status log. Slot
reservation is a compare-and-set: it only writes if the interval is still
free at write time, and raises SlotConflict otherwise.

``InMemoryStore`` is the reference implementation. It serializes all access
through one re-entrant lock acquired with a timeout, hands out copies so
callers cannot mutate stored records, and supports ``atomic()`` blocks that
restore every table if the block raises.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from .errors import InvalidTransition, PersistenceFailure, RecordNotFound, SlotConflict, StoreTimeout
from .models import (
    AvailabilityBlock,
    Driver,
    Order,
    OrderStatus,
    SlotStatus,
    StatusLogEntry,
    TimeSlot,
)
from .slots import is_slot_free

logger = logging.getLogger(__name__)


class DispatchStore:
    """
    Abstract store. Every method may raise PersistenceFailure.

    Stores that can run several writes as one unit set
    ``supports_transactions`` and implement ``atomic()``.
    """

    supports_transactions: bool = False

    # Roster and availability
    def list_drivers(self) -> List[Driver]:
        raise NotImplementedError

    def drivers_available_between(self, start: datetime, end: datetime) -> List[Driver]:
        """Drivers with at least one availability block overlapping [start, end)."""
        raise NotImplementedError

    def availability_for_driver(self, driver_id: str, start: datetime, end: datetime) -> List[AvailabilityBlock]:
        raise NotImplementedError

    # Time slots
    def slots_for_driver(self, driver_id: str, start: datetime, end: datetime) -> List[TimeSlot]:
        raise NotImplementedError

    def slot_for_order(self, order_id: str) -> Optional[TimeSlot]:
        """The scheduled or completed slot owned by an order, if any."""
        raise NotImplementedError

    def reserve_slot(
        self,
        driver_id: str,
        start: datetime,
        end: datetime,
        order_id: str,
        buffer_minutes: int,
    ) -> TimeSlot:
        """
        Compare-and-set reservation of [start, end) for ``order_id``.

        Reuses an ``available`` slot with the exact interval or creates one.
        A slot the order already holds for that interval is returned as is.
        Raises SlotConflict if the interval is no longer free.
        """
        raise NotImplementedError

    def set_slot_state(self, slot_id: str, status: SlotStatus, order_id: Optional[str]) -> TimeSlot:
        raise NotImplementedError

    # Orders
    def get_order(self, order_id: str) -> Order:
        raise NotImplementedError

    def list_orders(self) -> List[Order]:
        raise NotImplementedError

    def orders_for_driver(self, driver_id: str, start: datetime, end: datetime) -> List[Order]:
        """Orders assigned to the driver with pickup inside [start, end)."""
        raise NotImplementedError

    def save_order(self, order: Order, expected_status: Optional[OrderStatus] = None) -> None:
        """
        Replace the stored order.

        With ``expected_status`` the write is a compare-and-set: it raises
        InvalidTransition unless the stored order still has that status.
        """
        raise NotImplementedError

    # Status log
    def append_log(self, entry: StatusLogEntry) -> None:
        raise NotImplementedError

    def status_log(self, order_id: str) -> List[StatusLogEntry]:
        raise NotImplementedError

    @contextmanager
    def atomic(self) -> Iterator["DispatchStore"]:
        raise PersistenceFailure(f"{type(self).__name__} does not support transactions")
        yield self  # pragma: no cover


class InMemoryStore(DispatchStore):
    """
    Thread-safe in-memory store.

    Args:
        timeout: Seconds to wait for the store lock before raising StoreTimeout
        transactional: Whether ``atomic()`` is offered. With False the engine
            falls back to explicit compensation, like a store without
            multi-table transactions.
    """

    def __init__(self, timeout: float = 5.0, transactional: bool = True) -> None:
        self.timeout = timeout
        self.supports_transactions = transactional
        self._lock = threading.RLock()

        self._drivers: Dict[str, Driver] = {}
        self._blocks: Dict[str, AvailabilityBlock] = {}
        self._slots: Dict[str, TimeSlot] = {}
        self._orders: Dict[str, Order] = {}
        self._logs: List[StatusLogEntry] = []

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            raise StoreTimeout(f"Store lock not acquired within {self.timeout:.1f}s")
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def atomic(self) -> Iterator["InMemoryStore"]:
        """
        Run a block of reads/writes as one unit.

        Holds the store lock for the whole block. Stored records are replaced,
        never mutated in place, so a shallow snapshot of each table is enough
        to restore state if the block raises.
        """
        if not self.supports_transactions:
            raise PersistenceFailure("Transactions are disabled on this store")
        with self._locked():
            slots, orders, logs = dict(self._slots), dict(self._orders), list(self._logs)
            try:
                yield self
            except BaseException:
                self._slots, self._orders, self._logs = slots, orders, logs
                logger.debug("Transaction rolled back")
                raise

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def add_driver(self, driver: Driver) -> None:
        with self._locked():
            self._drivers[driver.driver_id] = replace(driver)

    def add_availability(self, block: AvailabilityBlock) -> None:
        _require_aware(block.start, block.end)
        if block.end <= block.start:
            raise ValueError(f"Availability block {block.block_id} ends before it starts")
        with self._locked():
            self._blocks[block.block_id] = replace(block)

    def add_slot(self, slot: TimeSlot) -> None:
        _require_aware(slot.start, slot.end)
        with self._locked():
            self._slots[slot.slot_id] = replace(slot)

    def add_order(self, order: Order) -> None:
        _require_aware(order.pickup_at)
        with self._locked():
            self._orders[order.order_id] = copy.deepcopy(order)

    def all_slots(self) -> List[TimeSlot]:
        with self._locked():
            return sorted((replace(s) for s in self._slots.values()), key=lambda s: (s.driver_id, s.start))

    def all_blocks(self) -> List[AvailabilityBlock]:
        with self._locked():
            return sorted((replace(b) for b in self._blocks.values()), key=lambda b: (b.driver_id, b.start))

    def all_logs(self) -> List[StatusLogEntry]:
        with self._locked():
            return list(self._logs)

    # -------------------------------------------------------------------------
    # Roster and availability
    # -------------------------------------------------------------------------

    def list_drivers(self) -> List[Driver]:
        with self._locked():
            return [replace(d) for d in sorted(self._drivers.values(), key=lambda d: d.driver_id)]

    def drivers_available_between(self, start: datetime, end: datetime) -> List[Driver]:
        with self._locked():
            driver_ids = sorted({b.driver_id for b in self._blocks.values() if b.overlaps(start, end)})
            return [replace(self._drivers.get(d_id) or Driver(driver_id=d_id)) for d_id in driver_ids]

    def availability_for_driver(self, driver_id: str, start: datetime, end: datetime) -> List[AvailabilityBlock]:
        with self._locked():
            return sorted(
                (replace(b) for b in self._blocks.values()
                 if b.driver_id == driver_id and b.overlaps(start, end)),
                key=lambda b: b.start,
            )

    # -------------------------------------------------------------------------
    # Time slots
    # -------------------------------------------------------------------------

    def slots_for_driver(self, driver_id: str, start: datetime, end: datetime) -> List[TimeSlot]:
        with self._locked():
            return sorted(
                (replace(s) for s in self._slots.values()
                 if s.driver_id == driver_id and s.start < end and start < s.end),
                key=lambda s: s.start,
            )

    def slot_for_order(self, order_id: str) -> Optional[TimeSlot]:
        with self._locked():
            for slot in self._slots.values():
                if slot.order_id == order_id and slot.is_booked:
                    return replace(slot)
            return None

    def reserve_slot(
        self,
        driver_id: str,
        start: datetime,
        end: datetime,
        order_id: str,
        buffer_minutes: int,
    ) -> TimeSlot:
        with self._locked():
            driver_slots = [s for s in self._slots.values() if s.driver_id == driver_id]
            exact = next((s for s in driver_slots if s.start == start and s.end == end), None)

            if exact is not None and exact.order_id == order_id and exact.status == SlotStatus.SCHEDULED:
                return replace(exact)
            if exact is not None and exact.status != SlotStatus.AVAILABLE:
                raise SlotConflict(
                    f"Slot {exact.slot_id} for driver {driver_id} is already {exact.status.value}"
                )

            # The order's own booking is about to be released on reassignment
            others = [s for s in driver_slots if s is not exact and s.order_id != order_id]
            if not is_slot_free(start, end, others, buffer_minutes):
                raise SlotConflict(
                    f"Driver {driver_id} has a booking within {buffer_minutes} min of "
                    f"{start:%H:%M}-{end:%H:%M}"
                )

            if exact is not None:
                reserved = replace(exact, status=SlotStatus.SCHEDULED, order_id=order_id)
            else:
                reserved = TimeSlot(
                    slot_id=f"slot-{uuid.uuid4().hex[:12]}",
                    driver_id=driver_id,
                    start=start,
                    end=end,
                    status=SlotStatus.SCHEDULED,
                    order_id=order_id,
                )
            self._slots[reserved.slot_id] = reserved
            return replace(reserved)

    def set_slot_state(self, slot_id: str, status: SlotStatus, order_id: Optional[str]) -> TimeSlot:
        with self._locked():
            if slot_id not in self._slots:
                raise RecordNotFound("slot", slot_id)
            updated = replace(self._slots[slot_id], status=status, order_id=order_id)
            self._slots[slot_id] = updated
            return replace(updated)

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    def get_order(self, order_id: str) -> Order:
        with self._locked():
            if order_id not in self._orders:
                raise RecordNotFound("order", order_id)
            return copy.deepcopy(self._orders[order_id])

    def list_orders(self) -> List[Order]:
        with self._locked():
            return [copy.deepcopy(o) for o in sorted(self._orders.values(), key=lambda o: o.pickup_at)]

    def orders_for_driver(self, driver_id: str, start: datetime, end: datetime) -> List[Order]:
        with self._locked():
            return [
                copy.deepcopy(o) for o in self._orders.values()
                if o.driver_id == driver_id and start <= o.pickup_at < end
            ]

    def save_order(self, order: Order, expected_status: Optional[OrderStatus] = None) -> None:
        with self._locked():
            if order.order_id not in self._orders:
                raise RecordNotFound("order", order.order_id)
            stored = self._orders[order.order_id].status
            if expected_status is not None and stored != expected_status:
                raise InvalidTransition(stored.value, order.status.value)
            self._orders[order.order_id] = copy.deepcopy(order)

    # -------------------------------------------------------------------------
    # Status log
    # -------------------------------------------------------------------------

    def append_log(self, entry: StatusLogEntry) -> None:
        with self._locked():
            self._logs.append(entry)

    def status_log(self, order_id: str) -> List[StatusLogEntry]:
        with self._locked():
            return [e for e in self._logs if e.order_id == order_id]


def _require_aware(*moments: datetime) -> None:
    for moment in moments:
        if moment.tzinfo is None:
            raise ValueError(f"Timestamp {moment.isoformat()} has no timezone")
