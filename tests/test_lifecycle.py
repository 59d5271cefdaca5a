# dispatch-scheduler/tests/test_lifecycle.py

from __future__ import annotations

import threading

import pytest

from conftest import at, make_order
from dispatch_scheduler.errors import (
    InvalidTransition,
    MissingReason,
    NoCandidateDrivers,
    PersistenceFailure,
    RecordNotFound,
)
from dispatch_scheduler.lifecycle import OrderLifecycle, TRANSITIONS, allowed_transitions
from dispatch_scheduler.models import CandidateSlot, OrderStatus, SlotStatus

S = OrderStatus


def test_transition_table(config):
    assert allowed_transitions(S.ORDER_PLACED) == {S.DRIVER_ASSIGNED, S.CANCELLED}
    assert allowed_transitions(S.ARRIVED_AT_PICKUP) == {S.ITEMS_BEING_DELIVERED, S.DELIVERED, S.CANCELLED}
    assert allowed_transitions(S.DELIVERED, config) == frozenset()
    assert allowed_transitions(S.CANCELLED) == {S.ORDER_PLACED}

    corrected = config.with_overrides(allow_delivered_correction=True)
    assert allowed_transitions(S.DELIVERED, corrected) == {S.ARRIVED_AT_PICKUP}

    # Every non-terminal state can be cancelled
    for status, targets in TRANSITIONS.items():
        if status not in (S.DELIVERED, S.CANCELLED):
            assert S.CANCELLED in targets


def test_delivered_order_cannot_be_reassigned(lifecycle, store):
    store.add_order(make_order("O3", status=S.DELIVERED, driver_id="D1"))

    with pytest.raises(InvalidTransition) as excinfo:
        lifecycle.transition("O3", S.DRIVER_ASSIGNED)
    assert (excinfo.value.current, excinfo.value.requested) == ("delivered", "driver_assigned")

    assert store.get_order("O3").status == S.DELIVERED
    assert store.status_log("O3") == []
    assert store.all_slots() == []


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_cancel_requires_reason(lifecycle, store, notifier, reason):
    lifecycle.transition("O1", S.DRIVER_ASSIGNED)
    before_logs = store.all_logs()

    with pytest.raises(MissingReason):
        lifecycle.transition("O1", S.CANCELLED, reason=reason)

    assert store.get_order("O1").status == S.DRIVER_ASSIGNED
    assert store.slot_for_order("O1") is not None
    assert store.all_logs() == before_logs
    assert notifier.cancelled == []


def test_full_delivery_path(lifecycle, store):
    assigned = lifecycle.transition("O1", S.DRIVER_ASSIGNED)
    assert assigned.driver_id == "D1"
    assert store.slot_for_order("O1").status == SlotStatus.SCHEDULED

    for status in (S.TRUCK_LEFT_WAREHOUSE, S.ARRIVED_AT_PICKUP, S.ITEMS_BEING_DELIVERED, S.DELIVERED):
        lifecycle.transition("O1", status)

    history = lifecycle.history("O1")
    assert [e.status for e in history] == [
        S.DRIVER_ASSIGNED, S.TRUCK_LEFT_WAREHOUSE, S.ARRIVED_AT_PICKUP,
        S.ITEMS_BEING_DELIVERED, S.DELIVERED,
    ]
    assert history[1].description == "Truck left the warehouse"
    assert store.get_order("O1").driver_id == "D1"
    assert store.slot_for_order("O1").status == SlotStatus.COMPLETED


def test_items_being_delivered_is_optional(lifecycle, store):
    for status in (S.DRIVER_ASSIGNED, S.TRUCK_LEFT_WAREHOUSE, S.ARRIVED_AT_PICKUP, S.DELIVERED):
        lifecycle.transition("O1", status)
    assert store.get_order("O1").status == S.DELIVERED


def test_skipping_a_step_is_invalid(lifecycle, store):
    lifecycle.transition("O1", S.DRIVER_ASSIGNED)
    with pytest.raises(InvalidTransition):
        lifecycle.transition("O1", S.DELIVERED)
    assert len(lifecycle.history("O1")) == 1


def test_note_is_appended_to_description(lifecycle, store):
    lifecycle.transition("O1", S.DRIVER_ASSIGNED)
    lifecycle.transition("O1", S.TRUCK_LEFT_WAREHOUSE, reason="Left late, traffic on EDSA")
    assert lifecycle.history("O1")[-1].description == "Truck left the warehouse. Note: Left late, traffic on EDSA"


def test_cancel_releases_slot_and_notifies(lifecycle, store, notifier):
    lifecycle.transition("O1", S.DRIVER_ASSIGNED)
    slot_id = store.slot_for_order("O1").slot_id

    cancelled = lifecycle.transition("O1", S.CANCELLED, reason="client_requested")

    assert cancelled.status == S.CANCELLED and cancelled.driver_id is None
    assert store.get_order("O1").driver_id is None
    released = next(s for s in store.all_slots() if s.slot_id == slot_id)
    assert (released.status, released.order_id) == (SlotStatus.AVAILABLE, None)

    assert lifecycle.history("O1")[-1].description == "Order cancelled. Reason: Client Requested Cancellation"
    notice = notifier.cancelled[0]
    assert notice.reason_key == "client_requested"
    assert notice.message == "As per your request, we have cancelled your order."


def test_cancel_unassigned_order_with_free_text(lifecycle, store, notifier):
    lifecycle.transition("O2", S.CANCELLED, reason="Duplicate booking")

    assert store.get_order("O2").status == S.CANCELLED
    assert store.all_slots() == []
    assert lifecycle.history("O2")[-1].description == "Order cancelled. Reason: Duplicate booking"
    assert notifier.cancelled[0].to_dict() == {
        "orderId": "O2", "status": "cancelled", "reason": None, "message": "Duplicate booking",
    }


def test_cancelled_slot_can_be_booked_again(lifecycle, store):
    lifecycle.transition("O1", S.DRIVER_ASSIGNED)
    lifecycle.transition("O1", S.CANCELLED, reason="route_conflict")

    again = lifecycle.transition("O2", S.DRIVER_ASSIGNED)
    assert (again.driver_id, again.pickup_at) == ("D1", at(9))


def test_reactivation_needs_reason_and_clears_driver(lifecycle, store, notifier):
    lifecycle.transition("O1", S.DRIVER_ASSIGNED)
    lifecycle.transition("O1", S.CANCELLED, reason="no_drivers_available")

    with pytest.raises(MissingReason):
        lifecycle.transition("O1", S.ORDER_PLACED)

    reopened = lifecycle.transition("O1", S.ORDER_PLACED, reason="Client confirmed new date")
    assert reopened.status == S.ORDER_PLACED
    assert reopened.driver_id is None
    assert reopened.estimated_end_at is None
    assert lifecycle.history("O1")[-1].description == "Order reactivated. Reason: Client confirmed new date"
    assert notifier.reactivated[0].status == S.ORDER_PLACED

    # Back in the pool
    assert lifecycle.transition("O1", S.DRIVER_ASSIGNED).driver_id is not None


def test_assign_to_chosen_driver(lifecycle, store, notifier):
    order = lifecycle.transition("O1", S.DRIVER_ASSIGNED, driver_id="D2")
    assert order.driver_id == "D2"
    assert notifier.assigned[0].driver_id == "D2"


def test_assign_to_chosen_slot(lifecycle, store):
    chosen = CandidateSlot("D2", at(14), at(15, 30))
    order = lifecycle.transition("O1", "driver_assigned", slot=chosen)
    assert (order.driver_id, order.pickup_at, order.estimated_end_at) == ("D2", at(14), at(15, 30))


def test_assign_with_no_drivers(lifecycle, store):
    store.add_order(make_order("O3", pickup=at(9).replace(day=23)))
    with pytest.raises(NoCandidateDrivers):
        lifecycle.transition("O3", S.DRIVER_ASSIGNED)
    assert store.get_order("O3").status == S.ORDER_PLACED
    assert lifecycle.history("O3") == []


def test_delivered_correction_is_off_by_default(lifecycle, store):
    for status in (S.DRIVER_ASSIGNED, S.TRUCK_LEFT_WAREHOUSE, S.ARRIVED_AT_PICKUP, S.DELIVERED):
        lifecycle.transition("O1", status)
    with pytest.raises(InvalidTransition):
        lifecycle.transition("O1", S.ARRIVED_AT_PICKUP)


def test_delivered_correction_reopens_slot(coordinator, config, store):
    lifecycle = OrderLifecycle(coordinator, config=config.with_overrides(allow_delivered_correction=True))
    for status in (S.DRIVER_ASSIGNED, S.TRUCK_LEFT_WAREHOUSE, S.ARRIVED_AT_PICKUP, S.DELIVERED):
        lifecycle.transition("O1", status)

    lifecycle.transition("O1", S.ARRIVED_AT_PICKUP)

    assert store.get_order("O1").status == S.ARRIVED_AT_PICKUP
    assert store.slot_for_order("O1").status == SlotStatus.SCHEDULED
    assert lifecycle.history("O1")[-1].description == "Delivery corrected back to arrived at pickup"


def test_failed_log_write_leaves_order_untouched(lifecycle, store, notifier):
    lifecycle.transition("O1", S.DRIVER_ASSIGNED)
    slot_before = store.slot_for_order("O1")
    logs_before = store.all_logs()

    store.failing.add("append_log")
    with pytest.raises(PersistenceFailure):
        lifecycle.transition("O1", S.CANCELLED, reason="client_requested")

    order = store.get_order("O1")
    assert (order.status, order.driver_id) == (S.DRIVER_ASSIGNED, "D1")
    assert store.slot_for_order("O1") == slot_before
    assert store.all_logs() == logs_before
    assert notifier.cancelled == []


def test_failed_order_write_does_not_complete_slot(lifecycle, store):
    for status in (S.DRIVER_ASSIGNED, S.TRUCK_LEFT_WAREHOUSE, S.ARRIVED_AT_PICKUP):
        lifecycle.transition("O1", status)

    store.failing.add("save_order")
    with pytest.raises(PersistenceFailure):
        lifecycle.transition("O1", S.DELIVERED)

    assert store.get_order("O1").status == S.ARRIVED_AT_PICKUP
    assert store.slot_for_order("O1").status == SlotStatus.SCHEDULED


def test_unknown_order(lifecycle):
    with pytest.raises(RecordNotFound):
        lifecycle.transition("NOPE", S.DRIVER_ASSIGNED)


def test_second_cancellation_changes_nothing(lifecycle, store, notifier):
    lifecycle.transition("O1", S.DRIVER_ASSIGNED)
    store.after_next_read = lambda: lifecycle.transition("O1", S.CANCELLED, reason="client_requested")

    with pytest.raises(InvalidTransition) as excinfo:
        lifecycle.transition("O1", S.CANCELLED, reason="route_conflict")
    assert (excinfo.value.current, excinfo.value.requested) == ("cancelled", "cancelled")

    assert [e.status for e in lifecycle.history("O1")] == [S.DRIVER_ASSIGNED, S.CANCELLED]
    assert lifecycle.history("O1")[-1].description == "Order cancelled. Reason: Client Requested Cancellation"
    assert [n.reason_key for n in notifier.cancelled] == ["client_requested"]
    assert store.slot_for_order("O1") is None


def test_concurrent_cancellations_write_one_row(lifecycle, store, notifier):
    lifecycle.transition("O1", S.DRIVER_ASSIGNED)
    barrier = threading.Barrier(2)
    outcomes = []

    def cancel(reason):
        barrier.wait()
        try:
            lifecycle.transition("O1", S.CANCELLED, reason=reason)
            outcomes.append("ok")
        except InvalidTransition:
            outcomes.append("invalid")

    threads = [threading.Thread(target=cancel, args=(r,)) for r in ("client_requested", "route_conflict")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert sorted(outcomes) == ["invalid", "ok"]
    assert [e.status for e in lifecycle.history("O1")] == [S.DRIVER_ASSIGNED, S.CANCELLED]
    assert len(notifier.cancelled) == 1


def test_cancellation_racing_an_assignment_keeps_a_valid_history(lifecycle, coordinator, store, notifier):
    barrier = threading.Barrier(2)

    def assign():
        barrier.wait()
        try:
            coordinator.commit_assignment(store.get_order("O1"), "D1", CandidateSlot("D1", at(9), at(10, 30)))
        except InvalidTransition:
            pass

    def cancel():
        barrier.wait()
        lifecycle.transition("O1", S.CANCELLED, reason="client_requested")

    threads = [threading.Thread(target=assign), threading.Thread(target=cancel)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    order = store.get_order("O1")
    assert (order.status, order.driver_id) == (S.CANCELLED, None)
    assert store.slot_for_order("O1") is None

    statuses = [S.ORDER_PLACED] + [e.status for e in lifecycle.history("O1")]
    for before, after in zip(statuses, statuses[1:]):
        assert after in TRANSITIONS[before]
    assert len(notifier.assigned) == len(statuses) - 2
