# dispatch-scheduler/dispatch_scheduler/dispatch.py
"""
Assignment coordinator for the Driver Dispatch Scheduling Engine.

The coordinator is the single place where drivers are matched to orders:

1. **propose_assignment**: read-only. For every driver available on the
   order's day it builds candidate slots, estimates travel from the driver's
   origin and measures workload, then ranks the drivers.

2. **commit_assignment**: the only mutating entry point. Reserves the slot
   (compare-and-set), updates the order (compare-and-set on its status),
   appends the status log row and notifies the driver. Either everything is
   written or nothing is.

3. **release_assignment**: hands an order's slot back to the driver's
   calendar. Idempotent.

All-or-nothing writes go through ``unit_of_work``: one store transaction when
the store offers them, otherwise each write registers a compensation that is
replayed in reverse if a later step fails.
"""

from __future__ import annotations

import copy
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from . import scoring, slots, travel, utils
from .config import DispatchConfig
from .errors import (
    DriversUnavailable,
    InvalidTransition,
    NoCandidateDrivers,
    NotificationError,
    PersistenceFailure,
    SlotConflict,
    StoreTimeout,
)
from .models import (
    AssignmentResult,
    CandidateSlot,
    Driver,
    DriverAssignedNotification,
    DriverCandidate,
    Order,
    OrderStatus,
    SlotStatus,
    StatusLogEntry,
)
from .notifications import Notifier, build_notifier
from .store import DispatchStore

logger = logging.getLogger(__name__)

Compensations = List[Callable[[], Any]]

# Orders that may receive a (new) driver
ASSIGNABLE_STATUSES = frozenset({OrderStatus.ORDER_PLACED, OrderStatus.DRIVER_ASSIGNED})


def _compensate(undo: Compensations) -> None:
    """Replay compensations newest first. A failing step is logged and skipped."""
    for step in reversed(undo):
        try:
            step()
        except Exception:
            logger.exception("Compensation step failed; store may need manual repair")


@contextmanager
def unit_of_work(store: DispatchStore) -> Iterator[Compensations]:
    """
    Run a group of writes as one unit.

    Yields a list on which each write registers its inverse. With a
    transactional store the block runs inside ``store.atomic()`` and the list
    is never used. Otherwise, if the block raises, the registered
    compensations run in reverse before the error propagates.
    """
    undo: Compensations = []
    if store.supports_transactions:
        with store.atomic():
            yield undo
        return

    try:
        yield undo
    except Exception:
        if undo:
            logger.warning(f"Rolling back {len(undo)} write(s)")
        _compensate(undo)
        raise


class AssignmentCoordinator:
    """
    Matches drivers to orders and commits assignments.

    Args:
        store: Persistence boundary
        config: Engine settings (buffer, grid, speed, depot, ...)
        estimator: Travel strategy; defaults to the one named by ``config``
        notifier: Receives driver-assigned notifications
        clock: Returns "now" for status log timestamps
    """

    def __init__(
        self,
        store: DispatchStore,
        config: Optional[DispatchConfig] = None,
        estimator: Optional[travel.TravelEstimator] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.config = config or DispatchConfig()
        self.estimator = estimator or travel.build_estimator(self.config)
        self.notifier = notifier or build_notifier(
            self.config.notify_webhook_url, self.config.notify_timeout_seconds
        )
        self.clock = clock or (lambda: datetime.now(self.config.tz))
        self._order_locks: Dict[str, threading.RLock] = {}
        self._order_locks_guard = threading.Lock()

    @contextmanager
    def order_guard(self, order_id: str) -> Iterator[None]:
        """
        Serialize writers of one order within this process.

        Re-entrant, so a transition may commit an assignment while holding it.
        The store's status compare-and-set still protects against writers
        outside this process.
        """
        with self._order_locks_guard:
            lock = self._order_locks.setdefault(order_id, threading.RLock())
        timeout = self.config.store_timeout_seconds
        if not lock.acquire(timeout=timeout):
            raise StoreTimeout(f"Order {order_id} is locked by another update (waited {timeout:.1f}s)")
        try:
            yield
        finally:
            lock.release()

    # =========================================================================
    # PROPOSAL
    # =========================================================================

    def propose_assignment(self, order: Order) -> List[DriverCandidate]:
        """
        Rank the drivers who can take ``order``.

        Returns:
            Drivers with at least one candidate slot, best first. An empty list
            means nobody qualifies; the caller should offer a reschedule.

        Raises:
            DriversUnavailable: If any driver data could not be read. Partial
                rankings are never returned.
        """
        day_start, day_end = utils.day_bounds(order.pickup_at, self.config.tz)

        try:
            drivers = self.store.drivers_available_between(day_start, day_end)
        except PersistenceFailure as e:
            raise DriversUnavailable(f"Could not load drivers for order {order.order_id}: {e}") from e

        if not drivers:
            logger.info(f"No driver has availability on {day_start:%Y-%m-%d} for order {order.order_id}")
            return []

        workers = max(1, min(self.config.proposal_max_workers, len(drivers)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(self._evaluate_driver, order, driver, day_start, day_end)
                for driver in drivers
            ]
            try:
                evaluated = [f.result() for f in futures]
            except PersistenceFailure as e:
                for f in futures:
                    f.cancel()
                raise DriversUnavailable(
                    f"Could not load driver schedules for order {order.order_id}: {e}"
                ) from e

        ranked = scoring.rank_drivers(evaluated, self.config.distance_bucket_km)
        logger.info(
            f"Order {order.order_id}: {len(ranked)} of {len(drivers)} drivers have candidate slots"
        )
        return ranked

    def _evaluate_driver(
        self,
        order: Order,
        driver: Driver,
        day_start: datetime,
        day_end: datetime,
    ) -> DriverCandidate:
        """Candidate slots, travel estimate and workload for one driver."""
        blocks = self.store.availability_for_driver(driver.driver_id, day_start, day_end)
        existing = [
            s for s in self.store.slots_for_driver(driver.driver_id, day_start, day_end)
            if s.order_id != order.order_id
        ]
        driver_orders = [
            o for o in self.store.orders_for_driver(driver.driver_id, day_start, day_end)
            if o.order_id != order.order_id
        ]

        origin, from_depot = travel.select_origin(order, driver_orders, self.config.depot)
        estimate = self.estimator.estimate(origin, order.pickup_loc, from_depot=from_depot)

        # Unknown travel adds no overhead; the driver still ranks last on distance
        travel_minutes = estimate.travel_minutes if estimate is not None else 0
        required = order.estimated_total_duration + travel_minutes

        candidate_slots = slots.generate_candidate_slots(
            blocks, existing, required, day_start, day_end, self.config
        )
        return DriverCandidate(
            driver=driver,
            travel=estimate,
            workload_minutes=scoring.compute_workload(driver_orders, order.pickup_at),
            required_minutes=required,
            candidate_slots=candidate_slots,
        )

    @staticmethod
    def pick_default(
        order: Order,
        ranked: List[DriverCandidate],
    ) -> Optional[Tuple[DriverCandidate, CandidateSlot]]:
        """
        The suggested choice: top-ranked driver, first slot starting at or
        after the requested pickup (their earliest slot if none does).
        """
        if not ranked:
            return None
        best = ranked[0]
        later = [s for s in best.candidate_slots if s.start >= order.pickup_at]
        return best, (later[0] if later else best.candidate_slots[0])

    # =========================================================================
    # COMMIT
    # =========================================================================

    def commit_assignment(
        self,
        order: Order,
        driver_id: str,
        chosen_slot: CandidateSlot,
    ) -> AssignmentResult:
        """
        Assign ``driver_id`` to ``order`` for ``chosen_slot``.

        Steps, each checked before the next:
        1. Re-validate the slot (inside the driver's availability, still free)
        2. Reserve it: flip an existing available slot or create one
        3. Update the order: driver, pickup = slot start, end = slot end,
           status driver_assigned, provided its status has not changed since
           step 1; release the previous slot on reassignment
        4. Append the status log row
        5. Notify the driver

        Raises:
            InvalidTransition: Order is past the point where a driver can be set,
                or was moved by another update during the commit
            SlotConflict: Slot was taken concurrently; retry with a fresh proposal
            PersistenceFailure: A write failed; every earlier write was undone
        """
        if chosen_slot.driver_id != driver_id:
            raise ValueError(f"Slot belongs to driver {chosen_slot.driver_id}, not {driver_id}")
        if chosen_slot.end <= chosen_slot.start:
            raise ValueError("Slot must end after it starts")

        with self.order_guard(order.order_id):
            return self._commit(order.order_id, driver_id, chosen_slot)

    def _commit(self, order_id: str, driver_id: str, chosen_slot: CandidateSlot) -> AssignmentResult:
        current = self.store.get_order(order_id)
        if current.status not in ASSIGNABLE_STATUSES:
            raise InvalidTransition(current.status.value, OrderStatus.DRIVER_ASSIGNED.value)

        self._validate_slot(current, driver_id, chosen_slot)

        assigned = copy.deepcopy(current)
        assigned.driver_id = driver_id
        assigned.pickup_at = chosen_slot.start
        assigned.estimated_end_at = chosen_slot.end
        assigned.status = OrderStatus.DRIVER_ASSIGNED

        verb = "reassigned" if current.driver_id else "assigned"
        entry = StatusLogEntry(
            order_id=current.order_id,
            status=OrderStatus.DRIVER_ASSIGNED,
            description=(
                f"Driver {driver_id} {verb}, pickup "
                f"{utils.format_clock(chosen_slot.start, self.config.tz)}-"
                f"{utils.format_clock(chosen_slot.end, self.config.tz)}"
            ),
            timestamp=self.clock(),
        )

        with unit_of_work(self.store) as undo:
            previous_slot = self.store.slot_for_order(current.order_id)

            slot = self.store.reserve_slot(
                driver_id, chosen_slot.start, chosen_slot.end,
                current.order_id, self.config.slot_buffer_minutes,
            )
            if previous_slot is None or previous_slot.slot_id != slot.slot_id:
                undo.append(lambda: self.store.set_slot_state(slot.slot_id, SlotStatus.AVAILABLE, None))

            self.store.save_order(assigned, expected_status=current.status)
            undo.append(lambda: self.store.save_order(current))

            if previous_slot is not None and previous_slot.slot_id != slot.slot_id:
                self.store.set_slot_state(previous_slot.slot_id, SlotStatus.AVAILABLE, None)
                undo.append(lambda: self.store.set_slot_state(
                    previous_slot.slot_id, previous_slot.status, previous_slot.order_id
                ))

            self.store.append_log(entry)

        logger.info(f"Order {current.order_id} {verb} to driver {driver_id} in slot {slot.slot_id}")

        notification = DriverAssignedNotification(
            driver_id=driver_id,
            order_id=current.order_id,
            pickup_time_formatted=utils.format_clock(slot.start, self.config.tz),
        )
        self.notify(self.notifier.driver_assigned, notification)
        return AssignmentResult(order=assigned, slot=slot, notification=notification)

    def _validate_slot(self, order: Order, driver_id: str, chosen: CandidateSlot) -> None:
        """Step 1 of a commit. The reservation itself re-checks under the store lock."""
        blocks = self.store.availability_for_driver(driver_id, chosen.start, chosen.end)
        if not any(b.contains(chosen.start, chosen.end) for b in blocks):
            raise SlotConflict(
                f"Driver {driver_id} is no longer available "
                f"{chosen.start:%Y-%m-%d %H:%M}-{chosen.end:%H:%M}"
            )

        existing = [
            s for s in self.store.slots_for_driver(driver_id, chosen.start, chosen.end)
            if s.order_id != order.order_id
        ]
        if not slots.is_slot_free(chosen.start, chosen.end, existing, self.config.slot_buffer_minutes):
            raise SlotConflict(f"Driver {driver_id} was booked near {chosen.start:%H:%M} in the meantime")

    def auto_assign(self, order: Order, attempts: int = 2) -> AssignmentResult:
        """
        Propose and commit the default choice.

        A lost race (SlotConflict) is retried with a fresh proposal, up to
        ``attempts`` times in total.

        Raises:
            NoCandidateDrivers: If no driver qualifies
        """
        for attempt in range(1, attempts + 1):
            choice = self.pick_default(order, self.propose_assignment(order))
            if choice is None:
                raise NoCandidateDrivers(order.order_id)
            candidate, slot = choice
            try:
                return self.commit_assignment(order, candidate.driver_id, slot)
            except SlotConflict:
                if attempt == attempts:
                    raise
                logger.info(f"Slot lost for order {order.order_id}, retrying ({attempt}/{attempts})")
        raise NoCandidateDrivers(order.order_id)

    # =========================================================================
    # RELEASE
    # =========================================================================

    def release_assignment(self, order: Order, undo: Optional[Compensations] = None) -> None:
        """
        Return the order's slot to the driver's calendar as ``available``.

        Does nothing if no slot is attached, so repeated calls are harmless.
        When ``undo`` is given (inside a unit of work) the inverse is registered.
        """
        slot = self.store.slot_for_order(order.order_id)
        if slot is None:
            logger.debug(f"Order {order.order_id} has no slot to release")
            return

        self.store.set_slot_state(slot.slot_id, SlotStatus.AVAILABLE, None)
        if undo is not None:
            undo.append(lambda: self.store.set_slot_state(slot.slot_id, slot.status, slot.order_id))
        logger.info(f"Released slot {slot.slot_id} of driver {slot.driver_id} from order {order.order_id}")

    def notify(self, hook: Callable[[Any], None], payload: Any) -> None:
        """Hand a payload to the notifier. Delivery failures don't undo a commit."""
        try:
            hook(payload)
        except NotificationError as e:
            logger.error(f"Notification not delivered: {e}")
