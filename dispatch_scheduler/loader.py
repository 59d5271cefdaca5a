# dispatch-scheduler/dispatch_scheduler/loader.py
"""
CSV persistence for the in-memory store.

A data directory holds one CSV per table, timestamps in ISO-8601 (naive
values are read in the configured timezone):

    drivers.csv        driver_id, name, email, phone
    availability.csv   block_id, driver_id, start, end
    orders.csv         order_id, pickup_at, pickup_lat, pickup_lng,
                       estimated_total_duration, status, driver_id, estimated_end_at
    dropoffs.csv       order_id, sequence, lat, lng, address
    time_slots.csv     slot_id, driver_id, start, end, status, order_id   (optional)
    status_logs.csv    order_id, status, description, timestamp           (optional)

Only the tables the engine writes (orders, time slots, status logs) are
saved back.
"""

from __future__ import annotations

import csv
import logging
import os
from collections import defaultdict
from datetime import datetime, tzinfo
from typing import Dict, Iterator, List, Optional

from . import utils
from .config import DispatchConfig
from .models import (
    AvailabilityBlock,
    Driver,
    DropoffStop,
    Order,
    OrderStatus,
    SlotStatus,
    StatusLogEntry,
    TimeSlot,
)
from .store import InMemoryStore

logger = logging.getLogger(__name__)

DRIVERS_FILE = "drivers.csv"
AVAILABILITY_FILE = "availability.csv"
ORDERS_FILE = "orders.csv"
DROPOFFS_FILE = "dropoffs.csv"
SLOTS_FILE = "time_slots.csv"
LOGS_FILE = "status_logs.csv"

ORDER_FIELDS = [
    "order_id", "pickup_at", "pickup_lat", "pickup_lng",
    "estimated_total_duration", "status", "driver_id", "estimated_end_at",
]
SLOT_FIELDS = ["slot_id", "driver_id", "start", "end", "status", "order_id"]
LOG_FIELDS = ["order_id", "status", "description", "timestamp"]


def _rows(path: str) -> Iterator[Dict[str, str]]:
    with open(path, "r", newline="") as f:
        yield from csv.DictReader(f)


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    return float(value)


def _optional_str(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value.strip()


def _optional_time(value: Optional[str], tz: tzinfo) -> Optional[datetime]:
    if value is None or not value.strip():
        return None
    return utils.parse_timestamp(value, tz)


def load_store(directory: str, config: Optional[DispatchConfig] = None) -> InMemoryStore:
    """
    Build an InMemoryStore from a data directory.

    Args:
        directory: Folder containing the CSV tables
        config: Supplies the timezone for naive timestamps and the store timeout

    Returns:
        Populated store

    Raises:
        FileNotFoundError: If a required table is missing
        ValueError: If a row is malformed
    """
    config = config or DispatchConfig()
    tz = config.tz

    for name in (DRIVERS_FILE, AVAILABILITY_FILE, ORDERS_FILE):
        path = os.path.join(directory, name)
        if not os.path.exists(path):
            raise FileNotFoundError(f"Required data file not found: {path}")

    store = InMemoryStore(timeout=config.store_timeout_seconds)

    path = os.path.join(directory, DRIVERS_FILE)
    for row in _rows(path):
        try:
            store.add_driver(Driver(
                driver_id=row["driver_id"].strip(),
                name=(row.get("name") or "").strip(),
                email=(row.get("email") or "").strip(),
                phone=(row.get("phone") or "").strip(),
            ))
        except KeyError as e:
            raise ValueError(f"Invalid driver data in {path}: {e}")

    path = os.path.join(directory, AVAILABILITY_FILE)
    for row in _rows(path):
        try:
            store.add_availability(AvailabilityBlock(
                block_id=row["block_id"],
                driver_id=row["driver_id"],
                start=utils.parse_timestamp(row["start"], tz),
                end=utils.parse_timestamp(row["end"], tz),
            ))
        except (KeyError, ValueError) as e:
            raise ValueError(f"Invalid availability data in {path}: {e}")

    # Drop-offs are optional; orders without any simply have none
    dropoffs: Dict[str, List[DropoffStop]] = defaultdict(list)
    path = os.path.join(directory, DROPOFFS_FILE)
    if os.path.exists(path):
        for row in _rows(path):
            try:
                dropoffs[row["order_id"]].append(DropoffStop(
                    sequence=int(row["sequence"]),
                    lat=_optional_float(row.get("lat")),
                    lng=_optional_float(row.get("lng")),
                    address=(row.get("address") or "").strip(),
                ))
            except (KeyError, ValueError) as e:
                raise ValueError(f"Invalid drop-off data in {path}: {e}")

    path = os.path.join(directory, ORDERS_FILE)
    for row in _rows(path):
        try:
            order_id = row["order_id"]
            store.add_order(Order(
                order_id=order_id,
                pickup_at=utils.parse_timestamp(row["pickup_at"], tz),
                pickup_lat=_optional_float(row.get("pickup_lat")),
                pickup_lng=_optional_float(row.get("pickup_lng")),
                dropoffs=sorted(dropoffs.get(order_id, []), key=lambda d: d.sequence),
                estimated_total_duration=int(row.get("estimated_total_duration") or 0),
                status=OrderStatus(_optional_str(row.get("status")) or OrderStatus.ORDER_PLACED.value),
                driver_id=_optional_str(row.get("driver_id")),
                estimated_end_at=_optional_time(row.get("estimated_end_at"), tz),
            ))
        except (KeyError, ValueError) as e:
            raise ValueError(f"Invalid order data in {path}: {e}")

    path = os.path.join(directory, SLOTS_FILE)
    if os.path.exists(path):
        for row in _rows(path):
            try:
                store.add_slot(TimeSlot(
                    slot_id=row["slot_id"],
                    driver_id=row["driver_id"],
                    start=utils.parse_timestamp(row["start"], tz),
                    end=utils.parse_timestamp(row["end"], tz),
                    status=SlotStatus(_optional_str(row.get("status")) or SlotStatus.AVAILABLE.value),
                    order_id=_optional_str(row.get("order_id")),
                ))
            except (KeyError, ValueError) as e:
                raise ValueError(f"Invalid time slot data in {path}: {e}")

    path = os.path.join(directory, LOGS_FILE)
    if os.path.exists(path):
        for row in _rows(path):
            try:
                store.append_log(StatusLogEntry(
                    order_id=row["order_id"],
                    status=OrderStatus(row["status"]),
                    description=row["description"],
                    timestamp=utils.parse_timestamp(row["timestamp"], tz),
                ))
            except (KeyError, ValueError) as e:
                raise ValueError(f"Invalid status log data in {path}: {e}")

    logger.info(
        f"Loaded {len(store.list_drivers())} drivers, {len(store.all_blocks())} availability "
        f"blocks and {len(store.list_orders())} orders from {directory}"
    )
    return store


def _iso(moment: Optional[datetime]) -> str:
    return moment.isoformat() if moment is not None else ""


def _blank(value: object) -> str:
    return "" if value is None else str(value)


def save_store(store: InMemoryStore, directory: str) -> None:
    """Write orders, time slots and status logs back to ``directory``."""
    os.makedirs(directory, exist_ok=True)

    with open(os.path.join(directory, ORDERS_FILE), "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=ORDER_FIELDS)
        writer.writeheader()
        for order in store.list_orders():
            writer.writerow({
                "order_id": order.order_id,
                "pickup_at": _iso(order.pickup_at),
                "pickup_lat": _blank(order.pickup_lat),
                "pickup_lng": _blank(order.pickup_lng),
                "estimated_total_duration": order.estimated_total_duration,
                "status": order.status.value,
                "driver_id": _blank(order.driver_id),
                "estimated_end_at": _iso(order.estimated_end_at),
            })

    with open(os.path.join(directory, SLOTS_FILE), "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=SLOT_FIELDS)
        writer.writeheader()
        for slot in store.all_slots():
            writer.writerow({
                "slot_id": slot.slot_id,
                "driver_id": slot.driver_id,
                "start": _iso(slot.start),
                "end": _iso(slot.end),
                "status": slot.status.value,
                "order_id": _blank(slot.order_id),
            })

    with open(os.path.join(directory, LOGS_FILE), "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=LOG_FIELDS)
        writer.writeheader()
        for entry in store.all_logs():
            writer.writerow({
                "order_id": entry.order_id,
                "status": entry.status.value,
                "description": entry.description,
                "timestamp": _iso(entry.timestamp),
            })

    logger.info(f"Saved orders, time slots and status logs to {directory}")
