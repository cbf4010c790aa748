"""
Proximity scoring.

Where will a technician be when a job starts? At the address of their last job
that finished early enough to clean up and leave, or at home if this is their
first job of the morning. Otherwise we don't know, and the technician stays
schedulable but is ranked after everyone with a known drive time.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from ..config import BusinessPolicy
from ..logging_context import get_call_logger
from .geo import CachingGeocoder, Coordinates, Geocoder, RoutingProvider, haversine_miles, straight_line_minutes
from .intervals import occupies_technician
from .timeutil import to_local

logger = get_call_logger(__name__)

# (max miles, bonus) buckets for the assignment score
DISTANCE_BONUS_BUCKETS = [(5, 20), (10, 15), (20, 10), (35, 5)]


@dataclass
class RankedTechnician:
    technician_id: int
    priority: int
    drive_minutes: Optional[float] = None
    location: Optional[str] = None


def expected_location(
    technician,
    bookings: Iterable,
    slot_start: datetime,
    policy: BusinessPolicy,
) -> Optional[str]:
    """Address the technician is expected to leave from for a job at `slot_start`."""
    latest_end = slot_start - timedelta(minutes=policy.cleanup_buffer_minutes)
    local_day = to_local(slot_start, policy.timezone).date()

    previous = None
    previous_end = None
    for booking in bookings:
        if booking.technician_id != technician.id or not occupies_technician(booking):
            continue
        end = booking.slot_end or booking.slot_start + timedelta(minutes=policy.default_duration_minutes)
        if end > latest_end or to_local(booking.slot_start, policy.timezone).date() != local_day:
            continue
        if previous_end is None or end > previous_end:
            previous, previous_end = booking, end

    if previous is not None:
        return previous.address

    if to_local(slot_start, policy.timezone).hour < policy.first_job_cutoff_hour:
        return technician.home_address
    return None


def rank_technicians(entries: Sequence[RankedTechnician]) -> List[RankedTechnician]:
    """Known drive time ascending, unknown last; then priority desc, then id."""
    return sorted(
        entries,
        key=lambda e: (
            e.drive_minutes is None,
            e.drive_minutes if e.drive_minutes is not None else 0,
            -(e.priority or 0),
            e.technician_id,
        ),
    )


def rank_by_priority(technicians: Iterable) -> List[int]:
    return [t.id for t in sorted(technicians, key=lambda t: (-(t.priority or 0), t.id))]


def distance_bonus(miles: Optional[float]) -> int:
    if miles is None:
        return 0
    for max_miles, bonus in DISTANCE_BONUS_BUCKETS:
        if miles <= max_miles:
            return bonus
    return 0


class ProximityScorer:
    """Ranks technicians by expected drive time to a customer."""

    def __init__(
        self,
        policy: BusinessPolicy,
        geocoder: Optional[Geocoder] = None,
        routing: Optional[RoutingProvider] = None,
    ):
        self.policy = policy
        self.geocoder = geocoder if isinstance(geocoder, CachingGeocoder) else CachingGeocoder(geocoder or Geocoder())
        self.routing = routing or RoutingProvider()

    async def drive_minutes(self, origin_address: Optional[str], destination: Optional[Coordinates]) -> Optional[float]:
        if not origin_address or destination is None:
            return None
        origin = await self.geocoder.geocode(origin_address)
        if origin is None:
            return None
        try:
            minutes = await self.routing.drive_minutes(origin, destination)
        except Exception:
            logger.exception("Routing provider raised")
            minutes = None
        if minutes is None:
            minutes = straight_line_minutes(origin, destination)
        return minutes

    async def rank(
        self,
        technicians: Sequence,
        bookings: Sequence,
        slot_start: datetime,
        customer_address: Optional[str],
    ) -> List[RankedTechnician]:
        destination = await self.geocoder.geocode(customer_address)
        entries = []
        for tech in technicians:
            location = expected_location(tech, bookings, slot_start, self.policy)
            minutes = await self.drive_minutes(location, destination)
            entries.append(RankedTechnician(tech.id, tech.priority or 0, minutes, location))
        return rank_technicians(entries)

    def cached_distance_miles(
        self,
        technician,
        bookings: Sequence,
        slot_start: datetime,
        destination: Optional[Coordinates],
    ) -> Optional[float]:
        """Straight-line miles using only already-geocoded addresses (no I/O)."""
        if destination is None:
            return None
        location = expected_location(technician, bookings, slot_start, self.policy)
        origin = self.geocoder.cached(location)
        if origin is None:
            return None
        return haversine_miles(origin, destination)

    async def warm(self, addresses: Iterable[Optional[str]]) -> Dict[str, Optional[Coordinates]]:
        """Geocode addresses ahead of a transaction so it never waits on I/O."""
        return {a: await self.geocoder.geocode(a) for a in addresses if a}
