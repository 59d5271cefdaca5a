# dispatch-scheduler/dispatch_scheduler/lifecycle.py
"""
Order lifecycle state machine.

    order_placed -> driver_assigned -> truck_left_warehouse -> arrived_at_pickup
        -> [items_being_delivered] -> delivered

Any non-terminal state may go to cancelled; cancelled may be reactivated to
order_placed. delivered is terminal unless the correction path back to
arrived_at_pickup is enabled in the configuration.

Each transition is validated before anything is written, then its side
effects (slot release/completion, driver assignment, notification) and
exactly one status log row are written as one unit. The status write is a
compare-and-set against the status that was validated, so an order changed
by another update in between fails with InvalidTransition and nothing is
written.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Union

from .config import DispatchConfig
from .dispatch import AssignmentCoordinator, unit_of_work
from .errors import InvalidTransition, MissingReason, NoCandidateDrivers
from .models import (
    CandidateSlot,
    Order,
    OrderNotice,
    OrderStatus,
    SlotStatus,
    StatusLogEntry,
)
from .notifications import Notifier, resolve_reason

logger = logging.getLogger(__name__)

S = OrderStatus

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.ORDER_PLACED: frozenset({S.DRIVER_ASSIGNED, S.CANCELLED}),
    S.DRIVER_ASSIGNED: frozenset({S.TRUCK_LEFT_WAREHOUSE, S.CANCELLED}),
    S.TRUCK_LEFT_WAREHOUSE: frozenset({S.ARRIVED_AT_PICKUP, S.CANCELLED}),
    S.ARRIVED_AT_PICKUP: frozenset({S.ITEMS_BEING_DELIVERED, S.DELIVERED, S.CANCELLED}),
    S.ITEMS_BEING_DELIVERED: frozenset({S.DELIVERED, S.CANCELLED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset({S.ORDER_PLACED}),
}

# Statuses that can only be entered with a reason (order_placed is reachable
# only by reactivating a cancelled order)
REASON_REQUIRED = frozenset({S.CANCELLED, S.ORDER_PLACED})

DESCRIPTIONS: Dict[OrderStatus, str] = {
    S.DRIVER_ASSIGNED: "Driver assigned",
    S.TRUCK_LEFT_WAREHOUSE: "Truck left the warehouse",
    S.ARRIVED_AT_PICKUP: "Driver arrived at pickup",
    S.ITEMS_BEING_DELIVERED: "Pickup confirmed, items being delivered",
    S.DELIVERED: "Order delivered",
}


def allowed_transitions(status: OrderStatus, config: Optional[DispatchConfig] = None) -> FrozenSet[OrderStatus]:
    """Statuses reachable from ``status`` under ``config``."""
    allowed = TRANSITIONS[status]
    if status == S.DELIVERED and config is not None and config.allow_delivered_correction:
        allowed = allowed | {S.ARRIVED_AT_PICKUP}
    return allowed


class OrderLifecycle:
    """
    Validates and executes order status changes.

    Args:
        coordinator: Used for driver assignment and slot release
        config: Defaults to the coordinator's configuration
        notifier: Defaults to the coordinator's notifier
        clock: Defaults to the coordinator's clock
    """

    def __init__(
        self,
        coordinator: AssignmentCoordinator,
        config: Optional[DispatchConfig] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.coordinator = coordinator
        self.store = coordinator.store
        self.config = config or coordinator.config
        self.notifier = notifier or coordinator.notifier
        self.clock = clock or coordinator.clock

    def allowed(self, status: OrderStatus) -> FrozenSet[OrderStatus]:
        return allowed_transitions(status, self.config)

    def history(self, order_id: str) -> List[StatusLogEntry]:
        """The order's status log, oldest first."""
        return self.store.status_log(order_id)

    def transition(
        self,
        order: Union[Order, str],
        new_status: Union[OrderStatus, str],
        reason: Optional[str] = None,
        driver_id: Optional[str] = None,
        slot: Optional[CandidateSlot] = None,
    ) -> Order:
        """
        Move an order to ``new_status``.

        Args:
            order: The order or its id; the stored copy is authoritative
            new_status: Target status
            reason: Mandatory for cancellation and reactivation; optional note otherwise
            driver_id/slot: Pre-chosen assignment when entering driver_assigned

        Returns:
            The order as stored after the transition

        Raises:
            MissingReason: Cancellation/reactivation without a reason
            InvalidTransition: Target not reachable from the current status, or
                the order was changed by another update in the meantime
            NoCandidateDrivers: Auto-assignment found nobody
            SlotConflict / PersistenceFailure: Assignment or write failed; nothing changed
        """
        order_id = order if isinstance(order, str) else order.order_id
        new_status = OrderStatus(new_status)

        if new_status in REASON_REQUIRED and not (reason and reason.strip()):
            raise MissingReason(new_status.value)

        with self.coordinator.order_guard(order_id):
            current = self.store.get_order(order_id)
            if new_status not in self.allowed(current.status):
                raise InvalidTransition(current.status.value, new_status.value)

            if new_status == S.DRIVER_ASSIGNED and current.driver_id is None:
                return self._assign(current, driver_id, slot)
            if new_status == S.CANCELLED:
                return self._cancel(current, reason)
            if new_status == S.ORDER_PLACED:
                return self._reactivate(current, reason)
            return self._advance(current, new_status, reason)

    def _assign(self, order: Order, driver_id: Optional[str], slot: Optional[CandidateSlot]) -> Order:
        if slot is not None:
            driver_id = driver_id or slot.driver_id
            return self.coordinator.commit_assignment(order, driver_id, slot).order

        if driver_id is None:
            return self.coordinator.auto_assign(order).order

        ranked = [c for c in self.coordinator.propose_assignment(order) if c.driver_id == driver_id]
        choice = self.coordinator.pick_default(order, ranked)
        if choice is None:
            raise NoCandidateDrivers(order.order_id)
        _, chosen = choice
        return self.coordinator.commit_assignment(order, driver_id, chosen).order

    def _cancel(self, current: Order, reason: str) -> Order:
        reason_key, log_text, client_message = resolve_reason(reason)

        updated = copy.deepcopy(current)
        updated.status = S.CANCELLED
        updated.driver_id = None

        with unit_of_work(self.store) as undo:
            self.coordinator.release_assignment(current, undo)
            self._save(current, updated, f"Order cancelled. Reason: {log_text}", undo)

        logger.info(f"Order {current.order_id} cancelled from {current.status.value}")
        notice = OrderNotice(current.order_id, S.CANCELLED, client_message, reason_key)
        self.coordinator.notify(self.notifier.order_cancelled, notice)
        return updated

    def _reactivate(self, current: Order, reason: str) -> Order:
        reason_key, log_text, _ = resolve_reason(reason)

        updated = copy.deepcopy(current)
        updated.status = S.ORDER_PLACED
        updated.driver_id = None
        updated.estimated_end_at = None

        with unit_of_work(self.store) as undo:
            self.coordinator.release_assignment(current, undo)
            self._save(current, updated, f"Order reactivated. Reason: {log_text}", undo)

        logger.info(f"Order {current.order_id} reactivated")
        notice = OrderNotice(current.order_id, S.ORDER_PLACED, f"Your order has been reactivated: {log_text}", reason_key)
        self.coordinator.notify(self.notifier.order_reactivated, notice)
        return updated

    def _advance(self, current: Order, new_status: OrderStatus, reason: Optional[str]) -> Order:
        updated = copy.deepcopy(current)
        updated.status = new_status

        description = DESCRIPTIONS[new_status]
        if current.status == S.DELIVERED:
            description = f"Delivery corrected back to {new_status.label.lower()}"
        if reason and reason.strip():
            description = f"{description}. Note: {reason.strip()}"

        with unit_of_work(self.store) as undo:
            slot = self.store.slot_for_order(current.order_id)
            if slot is not None and new_status == S.DELIVERED:
                self._set_slot(slot.slot_id, SlotStatus.COMPLETED, slot.status, slot.order_id, undo)
            elif slot is not None and current.status == S.DELIVERED:
                self._set_slot(slot.slot_id, SlotStatus.SCHEDULED, slot.status, slot.order_id, undo)
            self._save(current, updated, description, undo)

        logger.info(f"Order {current.order_id}: {current.status.value} -> {new_status.value}")
        return updated

    def _set_slot(self, slot_id: str, status: SlotStatus, old_status: SlotStatus, order_id: Optional[str], undo) -> None:
        self.store.set_slot_state(slot_id, status, order_id)
        undo.append(lambda: self.store.set_slot_state(slot_id, old_status, order_id))

    def _save(self, current: Order, updated: Order, description: str, undo) -> None:
        """Write the order, if its status is still the one validated, and its one log row."""
        self.store.save_order(updated, expected_status=current.status)
        undo.append(lambda: self.store.save_order(current))
        self.store.append_log(StatusLogEntry(
            order_id=updated.order_id,
            status=updated.status,
            description=description,
            timestamp=self.clock(),
        ))
