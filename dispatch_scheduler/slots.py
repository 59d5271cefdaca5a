# dispatch-scheduler/dispatch_scheduler/slots.py
"""
Time slot generation.

Turns a driver's availability blocks and existing bookings into the ordered
list of windows that can be offered for one order. Pure functions: nothing
here touches the store.

Procedure (per availability block):
1. Clip the block to the order's day
2. Move the start up to the next grid boundary (grid anchored at local midnight)
3. Walk forward one grid step at a time
4. Keep [start, start + length) if it ends inside the block and does not
   overlap any booked slot once that slot is widened by the buffer
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Set

from . import utils
from .config import DispatchConfig
from .models import AvailabilityBlock, CandidateSlot, TimeSlot


def buffered_overlap(
    start: datetime,
    end: datetime,
    booked_start: datetime,
    booked_end: datetime,
    buffer_minutes: int,
) -> bool:
    """
    True if [start, end) intersects the booked interval widened by the buffer.

    Test: candidate.start < booked.end + buffer and booked.start - buffer < candidate.end
    """
    buffer = timedelta(minutes=buffer_minutes)
    return start < booked_end + buffer and booked_start - buffer < end


def is_slot_free(
    start: datetime,
    end: datetime,
    existing: Iterable[TimeSlot],
    buffer_minutes: int,
) -> bool:
    """True if no scheduled/completed slot in ``existing`` conflicts with [start, end)."""
    return not any(
        buffered_overlap(start, end, slot.start, slot.end, buffer_minutes)
        for slot in existing
        if slot.is_booked
    )


def window_length_minutes(required_minutes: int, config: DispatchConfig) -> int:
    """
    Length of the window reserved for a job needing ``required_minutes``.

    The requirement is rounded up to the duration granularity so the same
    numeric duration is never split into differently-sized offers. With
    ``align_slot_end`` the result is also rounded up to the grid.
    """
    length = utils.round_up_minutes(required_minutes, config.duration_granularity_minutes)
    if config.align_slot_end:
        length = utils.round_up_minutes(length, config.slot_grid_minutes)
    return length


def generate_candidate_slots(
    blocks: Iterable[AvailabilityBlock],
    existing: Iterable[TimeSlot],
    required_minutes: int,
    day_start: datetime,
    day_end: datetime,
    config: DispatchConfig,
) -> List[CandidateSlot]:
    """
    Build the candidate windows for one driver on one day.

    Args:
        blocks: The driver's availability blocks (any that miss the day are ignored)
        existing: The driver's slots for the day; only booked ones constrain
        required_minutes: Order duration plus travel overhead
        day_start/day_end: Local midnight bounds of the order's day
        config: Buffer, grid and rounding settings

    Returns:
        Candidate slots sorted by start time. Empty when nothing fits, which is
        a normal outcome rather than an error.
    """
    booked = [slot for slot in existing if slot.is_booked]
    length = timedelta(minutes=window_length_minutes(required_minutes, config))
    step = timedelta(minutes=config.slot_grid_minutes)

    candidates: List[CandidateSlot] = []
    seen_starts: Set[datetime] = set()

    for block in blocks:
        if not block.overlaps(day_start, day_end):
            continue

        block_start = max(block.start, day_start)
        block_end = min(block.end, day_end)

        start = utils.ceil_to_grid(block_start, day_start, config.slot_grid_minutes)
        while start + length <= block_end:
            end = start + length
            if start not in seen_starts and is_slot_free(start, end, booked, config.slot_buffer_minutes):
                seen_starts.add(start)
                candidates.append(CandidateSlot(driver_id=block.driver_id, start=start, end=end))
            start += step

    candidates.sort(key=lambda c: c.start)
    return candidates
