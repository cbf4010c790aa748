"""
Retry and near-duplicate detection for booking requests.

A caller-supplied idempotency key replays the booking that already carries it.
Without a key match, the same phone number with an open booking in the next
seven days is either the same appointment (start within five minutes) or a
reschedule of it. The unique (business_id, idempotency_key) constraint is the
final word when two identical requests race.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from ..database.models import Booking, BookingStatus

DUPLICATE_HORIZON = timedelta(days=7)
SAME_BOOKING_TOLERANCE = timedelta(minutes=5)


class DedupOutcome(Enum):
    NEW = "new"
    REPLAY = "replay"
    SAME = "same"
    RESCHEDULE = "reschedule"


@dataclass
class DedupDecision:
    outcome: DedupOutcome
    existing: Optional[Booking] = None

    @property
    def is_new(self) -> bool:
        return self.outcome == DedupOutcome.NEW


def phone_digits(phone: Optional[str]) -> str:
    """Last ten digits, so +1 (555) 010-2000 and 5550102000 compare equal."""
    digits = re.sub(r"\D", "", phone or "")
    return digits[-10:]


def find_idempotent_replay(db: Session, business_id: int, key: Optional[str]) -> Optional[Booking]:
    if not key:
        return None
    return (
        db.query(Booking)
        .filter(
            Booking.business_id == business_id,
            Booking.idempotency_key == key,
            Booking.deleted_at.is_(None),
        )
        .first()
    )


def find_customer_bookings(
    db: Session,
    business_id: int,
    phone: Optional[str],
    statuses: Sequence[str] = BookingStatus.ACTIVE,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> List[Booking]:
    """Bookings whose phone matches on the last ten digits, newest first."""
    digits = phone_digits(phone)
    if len(digits) < 7:
        return []

    query = db.query(Booking).filter(
        Booking.business_id == business_id,
        Booking.status.in_(statuses),
        Booking.deleted_at.is_(None),
    )
    if since is not None:
        query = query.filter(Booking.slot_start >= since)
    if until is not None:
        query = query.filter(Booking.slot_start <= until)
    candidates = query.order_by(Booking.created_at.desc(), Booking.id.desc()).all()
    return [b for b in candidates if phone_digits(b.customer_phone) == digits]


def find_near_duplicate(
    db: Session,
    business_id: int,
    phone: Optional[str],
    now: datetime,
) -> Optional[Booking]:
    """Latest open booking for the same phone digits starting in [now, now + 7 days]."""
    matches = find_customer_bookings(db, business_id, phone, BookingStatus.OPEN, now, now + DUPLICATE_HORIZON)
    return matches[0] if matches else None


def classify(existing_start: datetime, requested_start: datetime) -> DedupOutcome:
    if abs(requested_start - existing_start) <= SAME_BOOKING_TOLERANCE:
        return DedupOutcome.SAME
    return DedupOutcome.RESCHEDULE


def check(
    db: Session,
    business_id: int,
    idempotency_key: Optional[str],
    phone: Optional[str],
    requested_start: datetime,
    now: datetime,
) -> DedupDecision:
    replay = find_idempotent_replay(db, business_id, idempotency_key)
    if replay is not None:
        return DedupDecision(DedupOutcome.REPLAY, replay)

    existing = find_near_duplicate(db, business_id, phone, now)
    if existing is not None:
        return DedupDecision(classify(existing.slot_start, requested_start), existing)

    return DedupDecision(DedupOutcome.NEW)
