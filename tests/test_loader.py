# dispatch-scheduler/tests/test_loader.py

from __future__ import annotations

import shutil

import pytest

from conftest import SAMPLE_DIR, TZ, at
from dispatch_scheduler.dispatch import AssignmentCoordinator
from dispatch_scheduler.lifecycle import OrderLifecycle
from dispatch_scheduler.loader import load_store, save_store
from dispatch_scheduler.models import OrderStatus, SlotStatus


def test_sample_data_loads(config):
    store = load_store(str(SAMPLE_DIR), config)

    assert [d.driver_id for d in store.list_drivers()] == ["D1", "D2", "D3"]
    assert len(store.all_blocks()) == 4
    assert len(store.list_orders()) == 5

    assigned = store.get_order("O1002")
    assert assigned.status == OrderStatus.DRIVER_ASSIGNED
    assert assigned.driver_id == "D2"
    assert assigned.pickup_at == at(14)
    assert assigned.pickup_at.tzinfo is not None
    assert [d.sequence for d in assigned.dropoffs] == [1, 2]
    assert store.slot_for_order("O1002").slot_id == "S1"

    ungeocoded = store.get_order("O1005")
    assert ungeocoded.pickup_loc is None
    assert ungeocoded.last_dropoff_loc is None

    assert [e.status for e in store.status_log("O1003")][-1] == OrderStatus.DELIVERED


def test_sample_orders_can_be_dispatched(config):
    store = load_store(str(SAMPLE_DIR), config)
    coordinator = AssignmentCoordinator(store, config)

    ranked = coordinator.propose_assignment(store.get_order("O1001"))
    assert {c.driver_id for c in ranked} == {"D1", "D2", "D3"}

    # D1 delivered O1003 10:00-11:00, so nothing of D1's may touch 09:50-11:10
    d1 = next(c for c in ranked if c.driver_id == "D1")
    assert not any(s.start < at(11, 10) and at(9, 50) < s.end for s in d1.candidate_slots)

    no_location = coordinator.propose_assignment(store.get_order("O1005"))
    assert no_location and all(c.travel is None for c in no_location)


def test_missing_required_file(tmp_path, config):
    shutil.copy(SAMPLE_DIR / "drivers.csv", tmp_path / "drivers.csv")
    with pytest.raises(FileNotFoundError):
        load_store(str(tmp_path), config)


def test_malformed_row_is_reported(tmp_path, config):
    shutil.copytree(SAMPLE_DIR, tmp_path / "data")
    with open(tmp_path / "data" / "availability.csv", "a") as f:
        f.write("B9,D3,not-a-date,2026-10-20 12:00\n")

    with pytest.raises(ValueError, match="availability"):
        load_store(str(tmp_path / "data"), config)


def test_changes_survive_save_and_reload(tmp_path, config):
    directory = tmp_path / "data"
    shutil.copytree(SAMPLE_DIR, directory)

    store = load_store(str(directory), config)
    lifecycle = OrderLifecycle(AssignmentCoordinator(store, config))
    lifecycle.transition("O1002", OrderStatus.CANCELLED, reason="client_requested")
    save_store(store, str(directory))

    reloaded = load_store(str(directory), config)
    order = reloaded.get_order("O1002")
    assert (order.status, order.driver_id) == (OrderStatus.CANCELLED, None)
    slot = next(s for s in reloaded.all_slots() if s.slot_id == "S1")
    assert (slot.status, slot.order_id) == (SlotStatus.AVAILABLE, None)
    assert reloaded.status_log("O1002")[-1].description == (
        "Order cancelled. Reason: Client Requested Cancellation"
    )
    assert reloaded.status_log("O1002")[-1].timestamp.tzinfo is not None
    assert order.pickup_at.astimezone(TZ) == at(14)
