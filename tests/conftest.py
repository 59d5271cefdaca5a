# dispatch-scheduler/tests/conftest.py
"""Shared fixtures: a fixed day in Manila, stores, and a recording notifier."""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from typing import Callable, List, Optional, Set
from zoneinfo import ZoneInfo

import pytest

from dispatch_scheduler.config import DispatchConfig
from dispatch_scheduler.dispatch import AssignmentCoordinator
from dispatch_scheduler.errors import PersistenceFailure
from dispatch_scheduler.lifecycle import OrderLifecycle
from dispatch_scheduler.models import (
    AvailabilityBlock,
    Driver,
    DriverAssignedNotification,
    Order,
    OrderNotice,
)
from dispatch_scheduler.notifications import Notifier
from dispatch_scheduler.store import InMemoryStore
from dispatch_scheduler import utils

TZ = ZoneInfo("Asia/Manila")
DAY = date(2026, 10, 20)
DEPOT = (14.5547, 121.0244)
SAMPLE_DIR = Path(__file__).resolve().parent.parent / "data" / "sample"


def at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    """Aware timestamp on the test day."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=TZ)


def fixed_clock() -> datetime:
    return at(8, 0)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.assigned: List[DriverAssignedNotification] = []
        self.cancelled: List[OrderNotice] = []
        self.reactivated: List[OrderNotice] = []

    def driver_assigned(self, notification: DriverAssignedNotification) -> None:
        self.assigned.append(notification)

    def order_cancelled(self, notice: OrderNotice) -> None:
        self.cancelled.append(notice)

    def order_reactivated(self, notice: OrderNotice) -> None:
        self.reactivated.append(notice)


class FlakyStore(InMemoryStore):
    """
    In-memory store whose named methods can be made to fail.

    ``after_next_read`` runs once, right after the next ``get_order``, to
    simulate another update landing between a read and the write that
    follows it.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.failing: Set[str] = set()
        self.after_next_read: Optional[Callable[[], None]] = None

    def _maybe_fail(self, name: str) -> None:
        if name in self.failing:
            raise PersistenceFailure(f"{name} failed")

    def append_log(self, entry):
        self._maybe_fail("append_log")
        super().append_log(entry)

    def save_order(self, order, expected_status=None):
        self._maybe_fail("save_order")
        super().save_order(order, expected_status)

    def get_order(self, order_id):
        order = super().get_order(order_id)
        hook, self.after_next_read = self.after_next_read, None
        if hook is not None:
            hook()
        return order

    def availability_for_driver(self, driver_id, start, end):
        self._maybe_fail("availability_for_driver")
        return super().availability_for_driver(driver_id, start, end)


def make_order(order_id: str, pickup: Optional[datetime] = None, duration: int = 90, **kwargs) -> Order:
    """Order picked up at the depot, so travel from the depot is zero."""
    kwargs.setdefault("pickup_lat", DEPOT[0])
    kwargs.setdefault("pickup_lng", DEPOT[1])
    return Order(order_id=order_id, pickup_at=pickup or at(9, 0),
                 estimated_total_duration=duration, **kwargs)


def populate(store: InMemoryStore) -> InMemoryStore:
    """Two drivers available 09:00-17:00 and two open orders at 09:00."""
    store.add_driver(Driver("D1", name="Ana Santos"))
    store.add_driver(Driver("D2", name="Ben Cruz"))
    store.add_availability(AvailabilityBlock("B1", "D1", at(9), at(17)))
    store.add_availability(AvailabilityBlock("B2", "D2", at(9), at(17)))
    store.add_order(make_order("O1"))
    store.add_order(make_order("O2"))
    return store


@pytest.fixture(autouse=True)
def _clear_route_cache():
    utils.clear_osrm_cache()
    yield
    utils.clear_osrm_cache()


@pytest.fixture
def config() -> DispatchConfig:
    return DispatchConfig()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(params=[True, False], ids=["transactional", "saga"])
def store(request) -> FlakyStore:
    """Populated store, once with transactions and once relying on compensation."""
    return populate(FlakyStore(timeout=2.0, transactional=request.param))


@pytest.fixture
def coordinator(store, config, notifier) -> AssignmentCoordinator:
    return AssignmentCoordinator(store, config, notifier=notifier, clock=fixed_clock)


@pytest.fixture
def lifecycle(coordinator) -> OrderLifecycle:
    return OrderLifecycle(coordinator)
