"""
Assignment transaction.

Runs once a caller has confirmed a start time. The business row is locked
first, so concurrent confirmations for one business run one after another and
each sees what the previous one committed. Inside the lock: idempotency and
duplicate re-check, a fresh busy-time check for every technician, scoring and
the insert (or in-place reschedule). No network I/O happens in here.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import BusinessPolicy
from ..database.models import Booking, BookingStatus, Business, Technician
from ..database.session import get_session_local, run_in_transaction
from ..logging_context import get_call_logger
from . import dedup
from .errors import BusinessNotFoundError
from .event_log import EventType, log_event
from .geo import Coordinates
from .intervals import build_indexes, candidate_window
from .proximity import ProximityScorer, distance_bonus
from .timeutil import local_day_bounds, to_local, utcnow

logger = get_call_logger(__name__)

ALL_BUSY_REASON = "all technicians busy"
MAX_LOAD_BONUS = 10
LOAD_PENALTY_PER_BOOKING = 2
LOOKBACK = timedelta(days=1)


class AssignmentOutcome(Enum):
    CREATED = "created"
    UNASSIGNED = "unassigned"
    REPLAY = "replay"
    SAME = "same"
    RESCHEDULED = "rescheduled"
    CANCELED = "canceled"


@dataclass
class AssignmentRequest:
    business_id: int
    slot_start: datetime
    duration_minutes: int
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    is_emergency: bool = False
    idempotency_key: Optional[str] = None
    source_tag: Optional[str] = None
    call_id: Optional[str] = None
    # Geocoded before the transaction; None when unknown.
    destination: Optional[Coordinates] = None

    @property
    def slot_end(self) -> datetime:
        return self.slot_start + timedelta(minutes=self.duration_minutes)


@dataclass
class TechnicianScore:
    technician_id: int
    priority: int
    load_bonus: int
    proximity_bonus: int

    @property
    def total(self) -> int:
        return self.priority * 10 + self.load_bonus + self.proximity_bonus

    def as_dict(self) -> dict:
        return {
            "technician_id": self.technician_id,
            "priority": self.priority,
            "load_bonus": self.load_bonus,
            "proximity_bonus": self.proximity_bonus,
            "total": self.total,
        }


@dataclass
class PreviousSlot:
    slot_start: datetime
    slot_end: Optional[datetime]
    status: str
    technician_id: Optional[int] = None
    unassigned_reason: Optional[str] = None
    calendar_booking_uid: Optional[str] = None


@dataclass
class AssignmentResult:
    """Plain data copied out of the session before it closes."""

    outcome: AssignmentOutcome
    booking_id: int
    status: str
    slot_start: datetime
    slot_end: Optional[datetime]
    technician_id: Optional[int] = None
    technician_name: Optional[str] = None
    technician_phone: Optional[str] = None
    unassigned_reason: Optional[str] = None
    calendar_booking_uid: Optional[str] = None
    scores: List[dict] = field(default_factory=list)
    # Set on a reschedule: where the booking stood before it moved.
    previous: Optional[PreviousSlot] = None

    @property
    def is_new_work(self) -> bool:
        """True when the booking still needs its calendar write and notifications."""
        return self.outcome in (AssignmentOutcome.CREATED, AssignmentOutcome.UNASSIGNED, AssignmentOutcome.RESCHEDULED)


# Scoring

def load_bonus(bookings_that_day: int) -> int:
    return max(0, MAX_LOAD_BONUS - LOAD_PENALTY_PER_BOOKING * bookings_that_day)


def count_day_bookings(technician_id: int, bookings: Sequence, slot_start: datetime, tz: str) -> int:
    day = to_local(slot_start, tz).date()
    return sum(
        1 for b in bookings
        if b.technician_id == technician_id
        and b.status in BookingStatus.ACTIVE
        and b.deleted_at is None
        and to_local(b.slot_start, tz).date() == day
    )


def score_technicians(
    technicians: Sequence,
    bookings: Sequence,
    slot_start: datetime,
    policy: BusinessPolicy,
    distance_fn: Optional[Callable[[object], Optional[float]]] = None,
) -> List[TechnicianScore]:
    scores = []
    for tech in technicians:
        miles = distance_fn(tech) if distance_fn else None
        scores.append(
            TechnicianScore(
                technician_id=tech.id,
                priority=tech.priority or 0,
                load_bonus=load_bonus(count_day_bookings(tech.id, bookings, slot_start, policy.timezone)),
                proximity_bonus=distance_bonus(miles),
            )
        )
    return scores


def select_technician(scores: Sequence[TechnicianScore]) -> Optional[TechnicianScore]:
    """Highest total; ties by priority desc, then lowest id."""
    if not scores:
        return None
    return min(scores, key=lambda s: (-s.total, -s.priority, s.technician_id))


def free_technicians(
    technicians: Sequence,
    bookings: Sequence,
    slot_start: datetime,
    duration_minutes: int,
    policy: BusinessPolicy,
) -> List:
    indexes = build_indexes(
        [t.id for t in technicians], bookings, policy.default_duration_minutes, policy.travel_buffer_minutes
    )
    window = candidate_window(slot_start, duration_minutes, policy.travel_buffer_minutes)
    return [t for t in technicians if indexes[t.id].is_free(*window)]


# Transaction body

def lock_business(db: Session, business_id: int) -> None:
    """Row lock on PostgreSQL, RESERVED lock on SQLite. Held until commit."""
    result = db.execute(
        update(Business)
        .where(Business.id == business_id)
        .values(assignment_seq=Business.assignment_seq + 1)
    )
    if result.rowcount == 0:
        raise BusinessNotFoundError(f"Business {business_id} not found")


def load_roster(db: Session, business_id: int, is_emergency: bool) -> List[Technician]:
    query = db.query(Technician).filter(
        Technician.business_id == business_id,
        Technician.is_active.is_(True),
        Technician.deleted_at.is_(None),
    )
    if not is_emergency:
        query = query.filter(Technician.emergency_only.is_(False))
    return query.order_by(Technician.id).all()


def load_live_bookings(
    db: Session,
    business_id: int,
    slot_start: datetime,
    slot_end: datetime,
    policy: BusinessPolicy,
    exclude_id: Optional[int] = None,
) -> List[Booking]:
    """Assigned, active bookings that can touch the slot or share its local day."""
    day_start, day_end = local_day_bounds(slot_start, policy.timezone)
    lower = min(day_start, slot_start) - LOOKBACK
    upper = max(day_end, slot_end + timedelta(minutes=policy.travel_buffer_minutes))
    query = db.query(Booking).filter(
        Booking.business_id == business_id,
        Booking.technician_id.isnot(None),
        Booking.status.in_(BookingStatus.ACTIVE),
        Booking.deleted_at.is_(None),
        Booking.slot_start >= lower,
        Booking.slot_start < upper,
    )
    if exclude_id is not None:
        query = query.filter(Booking.id != exclude_id)
    return query.all()


def _choose(
    db: Session,
    request: AssignmentRequest,
    policy: BusinessPolicy,
    scorer: Optional[ProximityScorer],
    exclude_id: Optional[int] = None,
):
    technicians = load_roster(db, request.business_id, request.is_emergency)
    bookings = load_live_bookings(db, request.business_id, request.slot_start, request.slot_end, policy, exclude_id)
    free = free_technicians(technicians, bookings, request.slot_start, request.duration_minutes, policy)

    distance_fn = None
    if scorer is not None and request.destination is not None:
        def distance_fn(tech):
            return scorer.cached_distance_miles(tech, bookings, request.slot_start, request.destination)

    scores = score_technicians(free, bookings, request.slot_start, policy, distance_fn)
    chosen = select_technician(scores)
    technician = next((t for t in free if chosen and t.id == chosen.technician_id), None)
    return technician, scores


def result_from_booking(booking: Booking, outcome: AssignmentOutcome, scores=None) -> AssignmentResult:
    tech = booking.technician
    return AssignmentResult(
        outcome=outcome,
        booking_id=booking.id,
        status=booking.status,
        slot_start=booking.slot_start,
        slot_end=booking.slot_end,
        technician_id=booking.technician_id,
        technician_name=tech.name if tech else None,
        technician_phone=tech.phone if tech else None,
        unassigned_reason=booking.unassigned_reason,
        calendar_booking_uid=booking.calendar_booking_uid,
        scores=[s.as_dict() for s in scores or []],
    )


def assign_booking(
    db: Session,
    request: AssignmentRequest,
    policy: BusinessPolicy,
    scorer: Optional[ProximityScorer] = None,
    now: Optional[datetime] = None,
) -> AssignmentResult:
    now = now or utcnow()
    lock_business(db, request.business_id)

    decision = dedup.check(
        db, request.business_id, request.idempotency_key, request.customer_phone, request.slot_start, now
    )
    if decision.outcome == dedup.DedupOutcome.REPLAY:
        log_event(db, EventType.IDEMPOTENT_REPLAY, request.business_id, decision.existing.id,
                  {"idempotency_key": request.idempotency_key}, request.call_id)
        return result_from_booking(decision.existing, AssignmentOutcome.REPLAY)

    if decision.outcome == dedup.DedupOutcome.SAME:
        log_event(db, EventType.DEDUP_SAME_BOOKING, request.business_id, decision.existing.id,
                  {"requested_start": request.slot_start.isoformat()}, request.call_id)
        return result_from_booking(decision.existing, AssignmentOutcome.SAME)

    if decision.outcome == dedup.DedupOutcome.RESCHEDULE:
        return _reschedule(db, decision.existing, request, policy, scorer)

    technician, scores = _choose(db, request, policy, scorer)
    booking = Booking(
        business_id=request.business_id,
        technician_id=technician.id if technician else None,
        customer_name=request.customer_name,
        customer_phone=request.customer_phone,
        customer_email=request.customer_email,
        address=request.address,
        notes=request.notes,
        slot_start=request.slot_start,
        slot_end=request.slot_end,
        status=BookingStatus.PENDING,
        is_emergency=request.is_emergency,
        unassigned_reason=None if technician else ALL_BUSY_REASON,
        idempotency_key=request.idempotency_key,
        source_tag=request.source_tag,
        call_id=request.call_id,
    )
    booking.technician = technician
    db.add(booking)
    # Surfaces the idempotency unique constraint here rather than at commit.
    db.flush()

    outcome = AssignmentOutcome.CREATED if technician else AssignmentOutcome.UNASSIGNED
    log_event(
        db,
        EventType.BOOKING_CREATED if technician else EventType.BOOKING_UNASSIGNED,
        request.business_id,
        booking.id,
        {
            "technician_id": booking.technician_id,
            "slot_start": request.slot_start.isoformat(),
            "is_emergency": request.is_emergency,
            "unassigned_reason": booking.unassigned_reason,
            "scores": [s.as_dict() for s in scores],
        },
        request.call_id,
    )
    return result_from_booking(booking, outcome, scores)


def _reschedule(
    db: Session,
    booking: Booking,
    request: AssignmentRequest,
    policy: BusinessPolicy,
    scorer: Optional[ProximityScorer],
) -> AssignmentResult:
    previous = PreviousSlot(
        slot_start=booking.slot_start,
        slot_end=booking.slot_end,
        status=booking.status,
        technician_id=booking.technician_id,
        unassigned_reason=booking.unassigned_reason,
        calendar_booking_uid=booking.calendar_booking_uid,
    )
    technician, scores = _choose(db, request, policy, scorer, exclude_id=booking.id)

    # Keep the current technician when they are still free at the new time.
    free_ids = {s.technician_id for s in scores}
    if booking.technician_id in free_ids:
        technician = booking.technician

    booking.slot_start = request.slot_start
    booking.slot_end = request.slot_end
    booking.address = request.address or booking.address
    booking.notes = request.notes or booking.notes
    booking.customer_name = request.customer_name or booking.customer_name
    booking.customer_email = request.customer_email or booking.customer_email
    booking.is_emergency = booking.is_emergency or request.is_emergency
    booking.technician = technician
    booking.technician_id = technician.id if technician else None
    booking.unassigned_reason = None if technician else ALL_BUSY_REASON
    booking.status = BookingStatus.PENDING
    booking.source_tag = "reschedule"
    if technician is None:
        # The provider booking at the old time is canceled once this commits.
        booking.calendar_booking_uid = None
    db.flush()

    log_event(
        db,
        EventType.BOOKING_RESCHEDULED,
        request.business_id,
        booking.id,
        {
            "from": previous.slot_start.isoformat() if previous.slot_start else None,
            "to": request.slot_start.isoformat(),
            "technician_id": booking.technician_id,
        },
        request.call_id,
    )
    result = result_from_booking(booking, AssignmentOutcome.RESCHEDULED, scores)
    result.previous = previous
    return result


# Shell

def run_assignment(
    request: AssignmentRequest,
    policy: BusinessPolicy,
    scorer: Optional[ProximityScorer] = None,
    session_factory=None,
    clock: Callable[[], datetime] = utcnow,
) -> AssignmentResult:
    """
    Run the assignment in its own committed transaction.

    If a concurrent request with the same idempotency key commits first, the
    insert here violates the unique constraint; the committed booking is
    returned as a replay instead.
    """
    factory = session_factory or get_session_local()
    now = clock()
    try:
        return run_in_transaction(lambda db: assign_booking(db, request, policy, scorer, now), factory)
    except IntegrityError:
        if not request.idempotency_key:
            raise
        logger.info("Idempotency key %s committed concurrently; replaying", request.idempotency_key)
        db = factory()
        try:
            existing = dedup.find_idempotent_replay(db, request.business_id, request.idempotency_key)
            if existing is None:
                raise
            return result_from_booking(existing, AssignmentOutcome.REPLAY)
        finally:
            db.close()


def mark_booking(
    booking_id: int,
    status: str,
    event_type: str,
    payload: Optional[Dict] = None,
    calendar_booking_uid: Optional[str] = None,
    session_factory=None,
) -> None:
    """Status transition after the calendar write, with its event, in one short transaction."""
    factory = session_factory or get_session_local()

    def work(db: Session):
        booking = db.get(Booking, booking_id)
        if booking is None:
            return
        booking.status = status
        if calendar_booking_uid:
            booking.calendar_booking_uid = calendar_booking_uid
        log_event(db, event_type, booking.business_id, booking.id, payload or {}, booking.call_id)

    run_in_transaction(work, factory)


def revert_reschedule(
    result: AssignmentResult,
    policy: BusinessPolicy,
    session_factory=None,
) -> Optional[AssignmentResult]:
    """
    Move a rescheduled booking back to its previous slot after the calendar
    write for the new time failed. The provider still holds the old booking.

    Returns None, with the booking marked failed, when the previous
    technician has been given other work at that time in the meantime.
    """
    factory = session_factory or get_session_local()
    previous = result.previous

    def work(db: Session):
        booking = db.get(Booking, result.booking_id)
        lock_business(db, booking.business_id)
        slot_end = previous.slot_end or previous.slot_start + timedelta(minutes=policy.default_duration_minutes)

        technician = db.get(Technician, previous.technician_id) if previous.technician_id else None
        if technician is not None:
            duration = int((slot_end - previous.slot_start).total_seconds() // 60)
            bookings = load_live_bookings(db, booking.business_id, previous.slot_start, slot_end, policy, booking.id)
            if not free_technicians([technician], bookings, previous.slot_start, duration, policy):
                booking.status = BookingStatus.FAILED
                log_event(db, EventType.BOOKING_FAILED, booking.business_id, booking.id,
                          {"error": "calendar write failed and previous slot was taken"}, booking.call_id)
                return None

        booking.slot_start = previous.slot_start
        booking.slot_end = previous.slot_end
        booking.status = previous.status
        booking.technician = technician
        booking.technician_id = previous.technician_id
        booking.unassigned_reason = previous.unassigned_reason
        booking.calendar_booking_uid = previous.calendar_booking_uid
        log_event(
            db,
            EventType.BOOKING_RESCHEDULE_REVERTED,
            booking.business_id,
            booking.id,
            {"from": result.slot_start.isoformat(), "to": previous.slot_start.isoformat()},
            booking.call_id,
        )
        return result_from_booking(booking, AssignmentOutcome.SAME)

    return run_in_transaction(work, factory)


def cancel_latest_booking(
    business_id: int,
    phone: Optional[str],
    reason: Optional[str] = None,
    session_factory=None,
    call_id: Optional[str] = None,
) -> Optional[AssignmentResult]:
    """Cancel the caller's most recently made active booking, freeing the technician's time."""
    factory = session_factory or get_session_local()

    def work(db: Session):
        lock_business(db, business_id)
        matches = dedup.find_customer_bookings(db, business_id, phone)
        if not matches:
            return None
        booking = matches[0]
        booking.status = BookingStatus.CANCELED
        booking.notes = ((booking.notes or "") + f"\n[CANCELED: {reason or 'customer request'}]").strip()
        log_event(
            db,
            EventType.BOOKING_CANCELED,
            business_id,
            booking.id,
            {
                "reason": reason or "customer request",
                "technician_id": booking.technician_id,
                "calendar_booking_uid": booking.calendar_booking_uid,
            },
            call_id,
        )
        return result_from_booking(booking, AssignmentOutcome.CANCELED)

    return run_in_transaction(work, factory)
