"""
Availability calculator.

Turns the calendar provider's raw open slots into slots a technician can
actually take: business hours, lead time and the late-day cutoff are applied,
then every technician's busy-time index is checked for the requested
duration. Results are advisory; nothing is reserved until a confirmed booking
runs the assignment transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ..config import BusinessPolicy, policy_for_business
from ..database.models import Booking, BookingStatus, Business, Technician
from ..logging_context import get_call_logger
from .calendar import CalendarService, RawSlot, calendar_service
from .errors import CalendarUnavailableError
from .intervals import build_indexes, candidate_window
from .proximity import ProximityScorer, rank_by_priority
from .timeutil import format_for_voice, local_to_utc, parse_hhmm, to_local, utcnow

logger = get_call_logger(__name__)

# Bookings that start this long before the window can still spill into it.
LOOKBACK = timedelta(days=1)
MAX_BUSINESS_DAY_SEARCH = 7


@dataclass
class CandidateSlot:
    start: datetime
    end: datetime
    candidates: List[int] = field(default_factory=list)

    @property
    def capacity(self) -> int:
        return len(self.candidates)

    def as_dict(self, tz: str = "UTC") -> dict:
        return {
            "start": self.start.isoformat() + "Z",
            "end": self.end.isoformat() + "Z",
            "local_start": to_local(self.start, tz).isoformat(),
            "capacity": self.capacity,
            "candidates": list(self.candidates),
        }


@dataclass
class AvailabilityRequest:
    is_emergency: bool = False
    duration_minutes: Optional[int] = None
    customer_address: Optional[str] = None
    query_start: Optional[datetime] = None
    query_end: Optional[datetime] = None


@dataclass
class AvailabilityResult:
    slots: List[CandidateSlot]
    summary: str
    debug: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


# Pure steps

def next_business_day(local_date, policy: BusinessPolicy):
    day = local_date
    for _ in range(MAX_BUSINESS_DAY_SEARCH):
        day = day + timedelta(days=1)
        if policy.hours_for(day.weekday()) is not None:
            return day
    return local_date + timedelta(days=1)


def effective_window(
    now: datetime,
    is_emergency: bool,
    policy: BusinessPolicy,
    query_start: Optional[datetime] = None,
    query_end: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """UTC window to search: today for emergencies, through the next business day otherwise."""
    local_now = to_local(now, policy.timezone)
    today = local_now.date()
    tomorrow_start = local_to_utc(datetime.combine(today + timedelta(days=1), time(0, 0)), policy.timezone)

    if is_emergency:
        start, end = now, tomorrow_start
    else:
        start = now if local_now.hour < policy.same_day_threshold_hour else tomorrow_start
        last_day = next_business_day(today, policy)
        end = local_to_utc(datetime.combine(last_day + timedelta(days=1), time(0, 0)), policy.timezone)

    if query_start is not None and query_start > start:
        start = query_start
    if query_end is not None and query_end < end:
        end = query_end
    return start, end


def weekend_allowed(policy: BusinessPolicy, has_on_call: bool) -> bool:
    if not policy.allow_weekend_booking:
        return False
    if policy.require_on_call_for_weekend and not has_on_call:
        return False
    return True


def within_business_hours(start: datetime, duration_minutes: int, policy: BusinessPolicy, allow_weekend: bool) -> bool:
    local = to_local(start, policy.timezone)
    if local.weekday() >= 5 and not allow_weekend:
        return False
    hours = policy.hours_for(local.weekday())
    if hours is None:
        return False
    opens = parse_hhmm(hours.get("open"), time(8, 0))
    closes = parse_hhmm(hours.get("close"), time(17, 0))
    local_end = (local + timedelta(minutes=duration_minutes)).replace(tzinfo=None)
    close_at = datetime.combine(local.date(), closes)
    return local.time() >= opens and local_end <= close_at


def passes_lead_time(start: datetime, now: datetime, is_emergency: bool, policy: BusinessPolicy) -> bool:
    lead = policy.emergency_lead_minutes if is_emergency else policy.routine_lead_minutes
    return start >= now + timedelta(minutes=lead)


def hidden_by_late_cutoff(start: datetime, now: datetime, is_emergency: bool, policy: BusinessPolicy) -> bool:
    if is_emergency:
        return False
    local_now = to_local(now, policy.timezone)
    if local_now.hour < policy.late_cutoff_hour:
        return False
    return to_local(start, policy.timezone).date() == local_now.date()


def eligible_technicians(technicians: Sequence, is_emergency: bool) -> List:
    return [
        t for t in technicians
        if t.is_active and t.deleted_at is None and (is_emergency or not t.emergency_only)
    ]


def compute_slots(
    raw_slots: Sequence[RawSlot],
    technicians: Sequence,
    bookings: Sequence,
    now: datetime,
    is_emergency: bool,
    duration_minutes: int,
    policy: BusinessPolicy,
) -> Tuple[List[CandidateSlot], Dict[str, int]]:
    """
    Filter, check capacity, apply the late cutoff and truncate. No I/O.

    Candidates come back in priority order; proximity ranking, when it
    applies, reorders them afterwards.
    """
    debug = {"raw": len(raw_slots), "technicians": len(technicians)}
    has_on_call = any(t.is_on_call for t in technicians)
    allow_weekend = weekend_allowed(policy, has_on_call)

    seen = set()
    slots = []
    for raw in raw_slots:
        if raw.start in seen:
            continue
        seen.add(raw.start)
        slots.append(raw)

    slots = [s for s in slots if within_business_hours(s.start, duration_minutes, policy, allow_weekend)]
    debug["business_hours"] = len(slots)

    slots = [s for s in slots if passes_lead_time(s.start, now, is_emergency, policy)]
    debug["lead_time"] = len(slots)

    indexes = build_indexes(
        [t.id for t in technicians], bookings, policy.default_duration_minutes, policy.travel_buffer_minutes
    )
    ordered_ids = rank_by_priority(technicians)

    candidates = []
    for raw in slots:
        window = candidate_window(raw.start, duration_minutes, policy.travel_buffer_minutes)
        free = [tech_id for tech_id in ordered_ids if indexes[tech_id].is_free(*window)]
        if free:
            end = raw.start + timedelta(minutes=duration_minutes)
            candidates.append(CandidateSlot(raw.start, end, free))
    debug["with_capacity"] = len(candidates)

    candidates = [c for c in candidates if not hidden_by_late_cutoff(c.start, now, is_emergency, policy)]
    debug["late_cutoff"] = len(candidates)

    candidates.sort(key=lambda c: c.start)
    candidates = candidates[: policy.max_results]
    debug["returned"] = len(candidates)
    return candidates, debug


def summarize(slots: Sequence[CandidateSlot], tz: str, is_emergency: bool) -> str:
    if not slots:
        if is_emergency:
            return "I don't have anyone free for the rest of today. Let me get the on-call team to call you back."
        return "I don't have any openings in that window. Would you like me to check another day?"
    first = format_for_voice(slots[0].start, tz)
    if len(slots) == 1:
        return f"The only opening I have is {first}."
    return f"The earliest opening I have is {first}, and I have {len(slots) - 1} more after that."


# I/O shell

class AvailabilityCalculator:
    def __init__(
        self,
        db: Session,
        business: Business,
        calendar: Optional[CalendarService] = None,
        scorer: Optional[ProximityScorer] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.business = business
        self.policy = policy_for_business(business)
        self.calendar = calendar or calendar_service
        self.scorer = scorer or ProximityScorer(self.policy)
        self.clock = clock

    def load_state(self, window_start: datetime, window_end: datetime, is_emergency: bool):
        technicians = (
            self.db.query(Technician)
            .filter(
                Technician.business_id == self.business.id,
                Technician.is_active.is_(True),
                Technician.deleted_at.is_(None),
            )
            .all()
        )
        technicians = eligible_technicians(technicians, is_emergency)
        bookings = (
            self.db.query(Booking)
            .filter(
                Booking.business_id == self.business.id,
                Booking.technician_id.isnot(None),
                Booking.status.in_(BookingStatus.ACTIVE),
                Booking.deleted_at.is_(None),
                Booking.slot_start >= window_start - LOOKBACK,
                Booking.slot_start < window_end,
            )
            .all()
        )
        return technicians, bookings

    async def find_slots(self, request: AvailabilityRequest) -> AvailabilityResult:
        now = self.clock()
        policy = self.policy
        duration = request.duration_minutes or policy.service_duration_minutes
        start, end = effective_window(now, request.is_emergency, policy, request.query_start, request.query_end)
        if end <= start:
            return AvailabilityResult([], summarize([], policy.timezone, request.is_emergency), {"raw": 0})

        event_type_id = (self.business.calendar_integration or {}).get("event_type_id")
        try:
            raw_slots = await self.calendar.get_open_slots(event_type_id, start, end, policy.timezone)
        except CalendarUnavailableError as e:
            logger.warning("Calendar unavailable for business %s: %s", self.business.id, e)
            return AvailabilityResult([], e.caller_message, {"raw": 0}, error="calendar_unavailable")

        raw_slots = [s for s in raw_slots if start <= s.start < end]
        technicians, bookings = self.load_state(start, end, request.is_emergency)
        slots, debug = compute_slots(raw_slots, technicians, bookings, now, request.is_emergency, duration, policy)

        if request.customer_address:
            await self._rank_by_proximity(slots, technicians, bookings, request.customer_address)

        logger.info(
            "Availability for business %s (%s): %s",
            self.business.id,
            "emergency" if request.is_emergency else "routine",
            debug,
        )
        return AvailabilityResult(slots, summarize(slots, policy.timezone, request.is_emergency), debug)

    async def _rank_by_proximity(self, slots, technicians, bookings, address: str) -> None:
        by_id = {t.id: t for t in technicians}
        for slot in slots:
            if slot.capacity < 2:
                continue
            try:
                ranked = await self.scorer.rank([by_id[i] for i in slot.candidates], bookings, slot.start, address)
            except Exception:
                # Keep priority order if geocoding or routing blows up.
                logger.exception("Proximity ranking failed; keeping priority order")
                return
            slot.candidates = [r.technician_id for r in ranked]
