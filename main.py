#!/usr/bin/env python3
# dispatch-scheduler/main.py
"""
Command-Line Interface for the Driver Dispatch Scheduling Engine.

Works against a directory of CSV tables (see dispatch_scheduler/loader.py).
Changes are only written back when --write is given.

Usage:
    python main.py list-orders
    python main.py propose O1001                      # Ranked drivers and slots
    python main.py assign O1001                       # Default driver and slot
    python main.py assign O1001 --driver D3 --start 12:00
    python main.py transition O1004 order_placed --reason "Client asked again"
    python main.py history O1003

Exit Codes:
    0: Success
    1: Data loading error (missing file, bad row, unknown id)
    2: Dispatch error (no drivers, slot conflict, invalid transition, ...)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

# Ensure the package is importable when run from a checkout
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from dispatch_scheduler import utils
from dispatch_scheduler.config import DispatchConfig
from dispatch_scheduler.dispatch import AssignmentCoordinator
from dispatch_scheduler.errors import DispatchError, NoCandidateDrivers, RecordNotFound, SlotConflict
from dispatch_scheduler.lifecycle import OrderLifecycle
from dispatch_scheduler.loader import load_store, save_store
from dispatch_scheduler.models import CandidateSlot, DriverCandidate, OrderStatus
from dispatch_scheduler.store import InMemoryStore

DEFAULT_DATA_DIR = os.path.join("data", "sample")


def print_header() -> None:
    """Print the CLI header."""
    print("\n" + "=" * 60)
    print("  DRIVER DISPATCH SCHEDULER")
    print("  Availability, Assignment & Order Lifecycle")
    print("=" * 60 + "\n")


def print_candidates(ranked: List[DriverCandidate], config: DispatchConfig, max_slots: int = 4) -> None:
    """
    Print ranked drivers with their first few candidate slots.

    Args:
        ranked: Output of propose_assignment, best first
        config: Used for the bucket width and display timezone
        max_slots: Slots shown per driver
    """
    header = f"| {'#':>2} | {'Driver':<16} | {'Distance':>9} | {'Travel':>6} | {'Workload':>8} | Slots"
    print(header)
    print("|" + "-" * (len(header) - 1))

    for rank, candidate in enumerate(ranked, start=1):
        name = candidate.driver.name or candidate.driver_id
        if candidate.travel is not None:
            dist = f"{candidate.travel.distance_km:.1f} km"
            travel = f"{candidate.travel.travel_minutes}m"
        else:
            dist, travel = "n/a", "n/a"
        shown = ", ".join(
            f"{utils.format_clock(s.start, config.tz)}-{utils.format_clock(s.end, config.tz)}"
            for s in candidate.candidate_slots[:max_slots]
        )
        more = len(candidate.candidate_slots) - max_slots
        if more > 0:
            shown += f" (+{more} more)"
        marker = "*" if rank == 1 else " "
        print(f"|{marker}{rank:>2} | {name:<16} | {dist:>9} | {travel:>6} | "
              f"{utils.format_time_duration(candidate.workload_minutes):>8} | {shown}")

    print("\n  * suggested default")


def load_config(path: Optional[str]) -> DispatchConfig:
    """Default configuration, with overrides from a JSON file if given."""
    if not path:
        return DispatchConfig()
    with open(path, "r") as f:
        return DispatchConfig.from_mapping(json.load(f))


def choose_slot(
    ranked: List[DriverCandidate],
    driver_id: Optional[str],
    start: Optional[str],
    config: DispatchConfig,
) -> Optional[CandidateSlot]:
    """
    Find the slot matching --driver/--start among the proposal.

    Returns:
        The slot, or None if the filters match nothing
    """
    if driver_id is not None:
        ranked = [c for c in ranked if c.driver_id == driver_id]
    for candidate in ranked:
        for slot in candidate.candidate_slots:
            if start is None or utils.format_clock(slot.start, config.tz) == start:
                return slot
    return None


def cmd_list_orders(store: InMemoryStore, config: DispatchConfig) -> int:
    orders = store.list_orders()
    print(f"{'Order':<8} {'Pickup':<17} {'Duration':>8}  {'Status':<22} Driver")
    print("-" * 66)
    for order in orders:
        pickup = order.pickup_at.astimezone(config.tz).strftime("%Y-%m-%d %H:%M")
        print(f"{order.order_id:<8} {pickup:<17} {order.estimated_total_duration:>7}m  "
              f"{order.status.label:<22} {order.driver_id or '-'}")
    print(f"\n{len(orders)} orders")
    return 0


def cmd_propose(coordinator: AssignmentCoordinator, order_id: str) -> int:
    order = coordinator.store.get_order(order_id)
    ranked = coordinator.propose_assignment(order)
    if not ranked:
        print(f"No driver can take order {order_id} on "
              f"{order.pickup_at.astimezone(coordinator.config.tz):%Y-%m-%d}.")
        print("Offer the client another pickup date.")
        return 0
    print(f"Candidates for order {order_id} (requested pickup "
          f"{utils.format_clock(order.pickup_at, coordinator.config.tz)}):\n")
    print_candidates(ranked, coordinator.config)
    return 0


def cmd_assign(coordinator: AssignmentCoordinator, args: argparse.Namespace) -> int:
    order = coordinator.store.get_order(args.order)

    if args.driver is None and args.start is None:
        result = coordinator.auto_assign(order)
    else:
        ranked = coordinator.propose_assignment(order)
        if args.driver is not None and args.start is None:
            choice = coordinator.pick_default(order, [c for c in ranked if c.driver_id == args.driver])
            slot = choice[1] if choice else None
        else:
            slot = choose_slot(ranked, args.driver, args.start, coordinator.config)
        if slot is None:
            if not ranked:
                raise NoCandidateDrivers(order.order_id)
            raise SlotConflict(
                f"No candidate slot for order {order.order_id} matches "
                f"driver={args.driver or 'any'} start={args.start or 'any'}"
            )
        result = coordinator.commit_assignment(order, slot.driver_id, slot)

    tz = coordinator.config.tz
    print(f"Order {result.order.order_id} assigned to driver {result.slot.driver_id}: "
          f"{utils.format_clock(result.slot.start, tz)}-{utils.format_clock(result.slot.end, tz)} "
          f"(slot {result.slot.slot_id})")
    return 0


def cmd_transition(lifecycle: OrderLifecycle, args: argparse.Namespace) -> int:
    order = lifecycle.transition(args.order, OrderStatus(args.status), reason=args.reason)
    print(f"Order {order.order_id} is now '{order.status.label}'"
          + (f" (driver {order.driver_id})" if order.driver_id else ""))
    return 0


def cmd_history(lifecycle: OrderLifecycle, order_id: str) -> int:
    lifecycle.store.get_order(order_id)
    entries = lifecycle.history(order_id)
    if not entries:
        print(f"No status history for order {order_id}")
        return 0
    tz = lifecycle.config.tz
    for entry in entries:
        print(f"{entry.timestamp.astimezone(tz):%Y-%m-%d %H:%M}  "
              f"{entry.status.label:<22} {entry.description}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Driver Dispatch Scheduler CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py propose O1001                         # Rank drivers for an order
  python main.py assign O1001 --write                  # Assign the default choice and save
  python main.py transition O1001 cancelled --reason client_requested
  python main.py --data-dir my_data list-orders
        """
    )

    parser.add_argument(
        "--data-dir",
        type=str,
        default=DEFAULT_DATA_DIR,
        help=f"Directory with the CSV tables (default: {DEFAULT_DATA_DIR})"
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="JSON file with configuration overrides (e.g. {\"slot_buffer_minutes\": 15})"
    )

    parser.add_argument(
        "--write",
        action="store_true",
        help="Save orders, slots and status logs back to the data directory"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show debug logging"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list-orders", help="List all orders")

    p = sub.add_parser("propose", help="Rank drivers and slots for an order")
    p.add_argument("order", help="Order id")

    p = sub.add_parser("assign", help="Assign a driver and slot to an order")
    p.add_argument("order", help="Order id")
    p.add_argument("--driver", default=None, help="Driver id (default: top-ranked)")
    p.add_argument("--start", default=None, help="Slot start as HH:MM (default: first at/after pickup)")

    p = sub.add_parser("transition", help="Change an order's status")
    p.add_argument("order", help="Order id")
    p.add_argument("status", choices=[s.value for s in OrderStatus], help="Target status")
    p.add_argument("--reason", default=None, help="Reason key or free text (required to cancel/reactivate)")

    p = sub.add_parser("history", help="Show an order's status log")
    p.add_argument("order", help="Order id")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print_header()

    try:
        config = load_config(args.config)
        store = load_store(args.data_dir, config)
    except (OSError, ValueError) as e:
        print(f"ERROR: Failed to load data: {e}")
        return 1

    coordinator = AssignmentCoordinator(store, config)
    lifecycle = OrderLifecycle(coordinator)

    try:
        if args.command == "list-orders":
            code = cmd_list_orders(store, config)
        elif args.command == "propose":
            code = cmd_propose(coordinator, args.order)
        elif args.command == "assign":
            code = cmd_assign(coordinator, args)
        elif args.command == "transition":
            code = cmd_transition(lifecycle, args)
        else:
            code = cmd_history(lifecycle, args.order)
    except RecordNotFound as e:
        print(f"ERROR: {e.user_message}")
        return 1
    except DispatchError as e:
        print(f"ERROR: {e.user_message}")
        if args.verbose:
            print(f"  detail: {e}")
        return 2

    if args.write and args.command in ("assign", "transition"):
        save_store(store, args.data_dir)
        print(f"\nSaved changes to {args.data_dir}")

    return code


if __name__ == "__main__":
    sys.exit(main())
