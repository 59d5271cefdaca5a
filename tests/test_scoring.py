# dispatch-scheduler/tests/test_scoring.py

from __future__ import annotations

import math

from conftest import DEPOT, at, make_order
from dispatch_scheduler.models import (
    CandidateSlot,
    Driver,
    DriverCandidate,
    OrderStatus,
    TravelEstimate,
)
from dispatch_scheduler.scoring import compute_workload, distance_bucket, rank_drivers


def candidate(driver_id, distance_km, workload, with_slots=True):
    travel = None if distance_km is None else TravelEstimate(distance_km, 0, DEPOT)
    slots = [CandidateSlot(driver_id, at(9), at(10))] if with_slots else []
    return DriverCandidate(Driver(driver_id), travel, workload, 60, slots)


def test_distance_bucket():
    assert distance_bucket(0.0, 5.0) == 0
    assert distance_bucket(4.99, 5.0) == 0
    assert distance_bucket(5.0, 5.0) == 1
    assert distance_bucket(None, 5.0) == math.inf


def test_bucket_before_workload():
    ranked = rank_drivers([
        candidate("far-idle", 7.0, 0),
        candidate("near-busy", 1.0, 240),
        candidate("near-idle", 4.5, 30),
    ], 5.0)
    assert [c.driver_id for c in ranked] == ["near-idle", "near-busy", "far-idle"]


def test_raw_distance_never_breaks_a_tie():
    ranked = rank_drivers([candidate("A", 4.9, 60), candidate("B", 0.1, 60)], 5.0)
    assert [c.driver_id for c in ranked] == ["A", "B"]


def test_drivers_without_slots_are_dropped_and_unknown_distance_is_last():
    ranked = rank_drivers([
        candidate("unknown", None, 0),
        candidate("no-slots", 0.5, 0, with_slots=False),
        candidate("far", 40.0, 500),
    ], 5.0)
    assert [c.driver_id for c in ranked] == ["far", "unknown"]


def test_rank_empty():
    assert rank_drivers([], 5.0) == []


def test_workload_counts_finished_non_cancelled_orders():
    orders = [
        make_order("A", pickup=at(8), duration=60),                      # ends 09:00
        make_order("B", pickup=at(9), duration=45),                      # ends 09:45
        make_order("C", pickup=at(7), duration=30, status=OrderStatus.CANCELLED),
        make_order("D", pickup=at(12), duration=90),                     # after cutoff
    ]
    assert compute_workload(orders, at(10)) == 105
    assert compute_workload(orders, at(9)) == 60
    assert compute_workload([], at(10)) == 0
