"""Fixed-cadence slot generation.

A working window is walked from its start in steps of ``duration + buffer``.
A candidate that collides with a busy interval is dropped but the cursor still
advances by a full step, so a gap left behind a conflict is never back-filled
and capacity next to existing bookings goes unused.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class CandidateSlot:
    start: datetime
    end: datetime


def intervals_conflict(
    first_start: datetime,
    first_end: datetime,
    first_buffer: timedelta,
    second_start: datetime,
    second_end: datetime,
    second_buffer: timedelta,
) -> bool:
    """Two intervals conflict when they intersect after the earlier one's end
    is pushed out by its trailing buffer."""
    if first_start <= second_start:
        return second_start < first_end + first_buffer
    return first_start < second_end + second_buffer


def generate_slots(
    window_start: datetime,
    window_end: datetime,
    duration_minutes: int,
    buffer_minutes: int,
    busy_intervals: Iterable[BusyInterval] = (),
) -> list[CandidateSlot]:
    if duration_minutes <= 0:
        raise ValueError('Slot duration must be positive.')
    if buffer_minutes < 0:
        raise ValueError('Buffer cannot be negative.')

    duration = timedelta(minutes=duration_minutes)
    buffer = timedelta(minutes=buffer_minutes)
    blocked = [(busy.start, busy.end + buffer) for busy in busy_intervals]

    slots: list[CandidateSlot] = []
    cursor = window_start

    while True:
        candidate_end = cursor + duration
        if candidate_end > window_end:
            break

        if not any(cursor < busy_end and busy_start < candidate_end for busy_start, busy_end in blocked):
            slots.append(CandidateSlot(start=cursor, end=candidate_end))

        cursor = candidate_end + buffer

    return slots
