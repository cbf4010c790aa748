"""
Emergency paths: immediate dispatch to the on-call technician, acknowledgement
and the acknowledgement-timeout hand-off to the next on-call technician.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..config import BusinessPolicy, policy_for_business
from ..database.models import Booking, BookingStatus, Business, Technician
from ..database.session import get_session_local, run_in_transaction
from ..logging_context import get_call_logger
from . import dedup
from .assignment import (
    AssignmentOutcome,
    AssignmentRequest,
    AssignmentResult,
    free_technicians,
    load_live_bookings,
    lock_business,
    result_from_booking,
)
from .dispatcher import Dispatcher, dispatcher as default_dispatcher
from .event_log import EventType, log_event, record_event, record_sms
from .proximity import ProximityScorer, rank_by_priority
from .timeutil import format_for_voice, utcnow

logger = get_call_logger(__name__)

EMERGENCY_SOURCE_TAG = "emergency_dispatch"


@dataclass
class OnCallStatus:
    available: bool
    technician_id: Optional[int] = None
    technician_name: Optional[str] = None
    on_call_count: int = 0

    @property
    def result(self) -> str:
        if self.available:
            return f"Our on-call technician {self.technician_name} is available for emergencies right now."
        return "I don't have an on-call technician available right now, but I can get you the earliest opening today."


@dataclass
class TimeoutResult:
    action: str  # not_found, not_due, acknowledged, escalated, no_backup
    booking_id: Optional[int] = None
    technician_id: Optional[int] = None
    previous_technician_id: Optional[int] = None


def load_on_call(db: Session, business_id: int) -> List[Technician]:
    technicians = (
        db.query(Technician)
        .filter(
            Technician.business_id == business_id,
            Technician.is_active.is_(True),
            Technician.is_on_call.is_(True),
            Technician.deleted_at.is_(None),
        )
        .all()
    )
    by_id = {t.id: t for t in technicians}
    return [by_id[i] for i in rank_by_priority(technicians)]


def _dispatch_body(db: Session, request: AssignmentRequest, policy: BusinessPolicy) -> Optional[AssignmentResult]:
    lock_business(db, request.business_id)

    replay = dedup.find_idempotent_replay(db, request.business_id, request.idempotency_key)
    if replay is not None:
        return result_from_booking(replay, AssignmentOutcome.REPLAY)

    on_call = load_on_call(db, request.business_id)
    if not on_call:
        return None
    bookings = load_live_bookings(db, request.business_id, request.slot_start, request.slot_end, policy)
    free = free_technicians(on_call, bookings, request.slot_start, request.duration_minutes, policy)
    if not free:
        return None
    technician = free[0]

    booking = Booking(
        business_id=request.business_id,
        customer_name=request.customer_name,
        customer_phone=request.customer_phone,
        customer_email=request.customer_email,
        address=request.address,
        notes=request.notes,
        slot_start=request.slot_start,
        slot_end=request.slot_end,
        status=BookingStatus.PENDING,
        is_emergency=True,
        idempotency_key=request.idempotency_key,
        source_tag=EMERGENCY_SOURCE_TAG,
        call_id=request.call_id,
    )
    booking.technician = technician
    db.add(booking)
    db.flush()

    log_event(
        db,
        EventType.EMERGENCY_DISPATCHED,
        request.business_id,
        booking.id,
        {"technician_id": technician.id, "notes": request.notes},
        request.call_id,
    )
    return result_from_booking(booking, AssignmentOutcome.CREATED)


class EmergencyService:
    def __init__(
        self,
        business: Business,
        notifier: Optional[Dispatcher] = None,
        scorer: Optional[ProximityScorer] = None,
        session_factory=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.business = business
        self.policy = policy_for_business(business)
        self.notifier = notifier or default_dispatcher
        self.scorer = scorer
        self.session_factory = session_factory or get_session_local()
        self.clock = clock

    def check_availability(self, db: Session) -> OnCallStatus:
        on_call = load_on_call(db, self.business.id)
        if not on_call:
            return OnCallStatus(available=False)
        now = self.clock()
        duration = self.policy.default_duration_minutes
        bookings = load_live_bookings(db, self.business.id, now, now + timedelta(minutes=duration), self.policy)
        free = free_technicians(on_call, bookings, now, duration, self.policy)
        if not free:
            return OnCallStatus(available=False, on_call_count=len(on_call))
        return OnCallStatus(True, free[0].id, free[0].name, len(on_call))

    async def dispatch(self, request: AssignmentRequest) -> Optional[AssignmentResult]:
        """
        Book the highest-priority free on-call technician for right now and
        page them. Returns None when nobody could be paged, so the caller can
        fall back to a standard booking.
        """
        request.slot_start = self.clock().replace(second=0, microsecond=0)
        request.is_emergency = True
        request.source_tag = EMERGENCY_SOURCE_TAG

        result = await asyncio.to_thread(
            run_in_transaction, lambda db: _dispatch_body(db, request, self.policy), self.session_factory
        )
        if result is None:
            logger.warning("No free on-call technician for business %s", self.business.id)
            record_event(self.session_factory, EventType.EMERGENCY_DISPATCH_FAILED,
                         business_id=self.business.id, payload={"reason": "no free on-call technician"},
                         call_id=request.call_id)
            return None
        if result.outcome == AssignmentOutcome.REPLAY:
            return result

        if not await self._page(result, request):
            await asyncio.to_thread(self._cancel_dispatch, result.booking_id, "technician could not be reached")
            return None
        return result

    async def _page(self, result: AssignmentResult, request: AssignmentRequest) -> bool:
        """SMS and voice call to the technician. Twilio blocks, so both run in a worker thread."""
        when = format_for_voice(result.slot_start, self.policy.timezone)
        sms = await asyncio.to_thread(
            self.notifier.dispatch_technician,
            result.technician_name,
            result.technician_phone,
            {"name": request.customer_name, "phone": request.customer_phone, "address": request.address},
            when,
            request.notes or "",
            True,
        )
        record_sms(self.session_factory, self.business.id, result.technician_phone, sms.get("body"), "emergency_dispatch", sms)
        call_sid = await asyncio.to_thread(
            self.notifier.place_call,
            result.technician_phone,
            f"Emergency dispatch from {self.business.name}. "
            f"{request.notes or 'Emergency service needed'} at {request.address or 'an address sent by text'}. "
            "Check your messages and reply 1 when en route.",
        )
        return bool(sms.get("success")) or call_sid is not None

    def _cancel_dispatch(self, booking_id: int, reason: str) -> None:
        def work(db: Session):
            booking = db.get(Booking, booking_id)
            booking.status = BookingStatus.CANCELED
            booking.unassigned_reason = reason
            log_event(db, EventType.EMERGENCY_DISPATCH_FAILED, booking.business_id, booking.id,
                      {"reason": reason}, booking.call_id)

        run_in_transaction(work, self.session_factory)

    def acknowledge(self, booking_id: int, technician_id: Optional[int] = None) -> Optional[AssignmentResult]:
        """Technician replied: the job moves to en_route."""

        def work(db: Session):
            booking = db.get(Booking, booking_id)
            if booking is None or booking.business_id != self.business.id or booking.deleted_at is not None:
                return None
            if technician_id is not None and booking.technician_id != technician_id:
                return None
            if booking.status in BookingStatus.OPEN:
                booking.status = BookingStatus.EN_ROUTE
                log_event(db, EventType.EMERGENCY_ACKNOWLEDGED, booking.business_id, booking.id,
                          {"technician_id": booking.technician_id}, booking.call_id)
            return result_from_booking(booking, AssignmentOutcome.SAME)

        return run_in_transaction(work, self.session_factory)

    async def check_timeout(self, booking_id: int) -> TimeoutResult:
        """
        Hand an unacknowledged emergency to the next on-call technician.

        Backups are ranked by priority and, when the address geocodes, by
        drive time; the first one still free inside the lock gets the job.
        """
        now = self.clock()
        db = self.session_factory()
        try:
            booking = db.get(Booking, booking_id)
            if booking is None or booking.business_id != self.business.id or not booking.is_emergency:
                return TimeoutResult("not_found", booking_id)
            if booking.status != BookingStatus.PENDING:
                return TimeoutResult("acknowledged", booking_id, booking.technician_id)
            dispatched_at = booking.updated_at or booking.created_at
            if now - dispatched_at < timedelta(minutes=self.policy.emergency_ack_timeout_minutes):
                return TimeoutResult("not_due", booking_id, booking.technician_id)

            contact = {"call_id": booking.call_id, "customer_phone": booking.customer_phone}
            backups = [t for t in load_on_call(db, self.business.id) if t.id != booking.technician_id]
            order = await self._rank_backups(db, backups, booking)
        finally:
            db.close()

        result = await asyncio.to_thread(
            run_in_transaction, lambda s: self._escalate_body(s, booking_id, order, now), self.session_factory
        )
        if result.action == "escalated":
            await asyncio.to_thread(self._page_backup, result)
        elif result.action == "no_backup" and self.business.forwarding_number:
            sms = await asyncio.to_thread(
                self.notifier.notify_escalation,
                self.business.forwarding_number,
                self.business.name,
                "Emergency not acknowledged and no backup technician is free",
                contact,
            )
            record_sms(self.session_factory, self.business.id, self.business.forwarding_number,
                       sms.get("body"), "emergency_escalation", sms)
        return result

    async def _rank_backups(self, db: Session, backups: Sequence[Technician], booking: Booking) -> List[int]:
        if self.scorer is None or not booking.address or len(backups) < 2:
            return [t.id for t in backups]
        bookings = load_live_bookings(db, self.business.id, booking.slot_start, booking.slot_end, self.policy, booking.id)
        try:
            ranked = await self.scorer.rank(backups, bookings, booking.slot_start, booking.address)
        except Exception:
            logger.exception("Backup ranking failed; using priority order")
            return [t.id for t in backups]
        return [r.technician_id for r in ranked]

    def _escalate_body(self, db: Session, booking_id: int, order: List[int], now: datetime) -> TimeoutResult:
        lock_business(db, self.business.id)
        booking = db.get(Booking, booking_id)
        if booking.status != BookingStatus.PENDING:
            return TimeoutResult("acknowledged", booking_id, booking.technician_id)

        previous = booking.technician_id
        on_call = {t.id: t for t in load_on_call(db, self.business.id)}
        candidates = [on_call[i] for i in order if i in on_call and i != previous]
        duration = int((booking.slot_end - booking.slot_start).total_seconds() // 60)
        bookings = load_live_bookings(db, self.business.id, booking.slot_start, booking.slot_end, self.policy, booking.id)
        free_ids = {t.id for t in free_technicians(candidates, bookings, booking.slot_start, duration, self.policy)}
        backup = next((t for t in candidates if t.id in free_ids), None)

        if backup is None:
            log_event(db, EventType.EMERGENCY_TIMEOUT_NO_BACKUP, booking.business_id, booking.id,
                      {"technician_id": previous}, booking.call_id)
            return TimeoutResult("no_backup", booking_id, previous, previous)

        booking.technician = backup
        booking.technician_id = backup.id
        booking.updated_at = now
        log_event(db, EventType.EMERGENCY_TIMEOUT_ESCALATED, booking.business_id, booking.id,
                  {"from_technician_id": previous, "to_technician_id": backup.id}, booking.call_id)
        return TimeoutResult("escalated", booking_id, backup.id, previous)

    def _page_backup(self, result: TimeoutResult) -> None:
        db = self.session_factory()
        try:
            booking = db.get(Booking, result.booking_id)
            technician = db.get(Technician, result.technician_id)
            details = {"customer_phone": booking.customer_phone, "issue": booking.notes, "address": booking.address}
        finally:
            db.close()
        for sent in self.notifier.notify_emergency([{"name": technician.name, "phone": technician.phone}], details):
            logger.info("Backup %s paged: %s", sent["technician"], sent["notified"])
        self.notifier.place_call(
            technician.phone,
            f"Emergency backup needed for {self.business.name}. Check your messages and reply 1 when en route.",
        )
