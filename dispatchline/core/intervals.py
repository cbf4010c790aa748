"""
Per-technician busy-time index.

A technician is busy from each booking's start until its end plus the travel
buffer. Ranges are half-open, so a job that ends (buffer included) at 10:30
leaves the technician free for a job starting at 10:30.
"""

from bisect import bisect_left
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from ..database.models import BookingStatus

DEFAULT_DURATION_MINUTES = 90


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end


def occupies_technician(booking) -> bool:
    return (
        booking.slot_start is not None
        and booking.status in BookingStatus.ACTIVE
        and getattr(booking, "deleted_at", None) is None
    )


def booking_interval(
    slot_start: datetime,
    slot_end: Optional[datetime],
    default_duration_minutes: int = DEFAULT_DURATION_MINUTES,
    travel_buffer_minutes: int = 30,
) -> BusyInterval:
    end = slot_end or slot_start + timedelta(minutes=default_duration_minutes)
    return BusyInterval(slot_start, end + timedelta(minutes=travel_buffer_minutes))


def merge_intervals(intervals: Iterable[BusyInterval]) -> List[BusyInterval]:
    merged: List[BusyInterval] = []
    for interval in sorted(intervals, key=lambda iv: (iv.start, iv.end)):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = BusyInterval(last.start, interval.end)
        else:
            merged.append(interval)
    return merged


class IntervalIndex:
    """Sorted, merged, non-overlapping busy ranges for one technician."""

    def __init__(self, intervals: Iterable[BusyInterval] = ()):
        self._intervals = merge_intervals(intervals)
        self._starts = [iv.start for iv in self._intervals]

    @classmethod
    def from_bookings(
        cls,
        bookings: Iterable,
        default_duration_minutes: int = DEFAULT_DURATION_MINUTES,
        travel_buffer_minutes: int = 30,
    ) -> "IntervalIndex":
        return cls(
            booking_interval(b.slot_start, b.slot_end, default_duration_minutes, travel_buffer_minutes)
            for b in bookings
            if occupies_technician(b)
        )

    @property
    def intervals(self) -> List[BusyInterval]:
        return list(self._intervals)

    def __len__(self) -> int:
        return len(self._intervals)

    def is_free(self, start: datetime, end: datetime) -> bool:
        # First interval that starts at or after `end` cannot overlap;
        # only its predecessor can.
        idx = bisect_left(self._starts, end)
        if idx < len(self._intervals) and self._intervals[idx].overlaps(start, end):
            return False
        if idx > 0 and self._intervals[idx - 1].overlaps(start, end):
            return False
        return True

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return not self.is_free(start, end)


def build_indexes(
    technician_ids: Iterable[int],
    bookings: Iterable,
    default_duration_minutes: int = DEFAULT_DURATION_MINUTES,
    travel_buffer_minutes: int = 30,
) -> Dict[int, IntervalIndex]:
    """One index per technician id; technicians with no bookings get an empty index."""
    grouped: Dict[int, list] = {tech_id: [] for tech_id in technician_ids}
    for booking in bookings:
        if booking.technician_id in grouped:
            grouped[booking.technician_id].append(booking)
    return {
        tech_id: IntervalIndex.from_bookings(items, default_duration_minutes, travel_buffer_minutes)
        for tech_id, items in grouped.items()
    }


def candidate_window(
    start: datetime, duration_minutes: int, travel_buffer_minutes: int
) -> Tuple[datetime, datetime]:
    """The range a new job would occupy, its own travel buffer included."""
    return start, start + timedelta(minutes=duration_minutes + travel_buffer_minutes)
