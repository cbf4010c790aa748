"""
Booking flow for a caller's request.

validate -> triage -> route -> propose (until confirmed) -> dedup pre-check ->
geocode -> assignment transaction -> calendar reserve/confirm -> booked or
failed -> notifications. Every path returns a BookingResponse with a sentence
the voice agent can read out; nothing raises to the caller.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional

from ..config import BusinessPolicy, policy_for_business
from ..database.models import Booking, BookingStatus, Business, Technician
from ..database.session import get_session_local
from ..logging_context import get_call_logger, set_call_id
from . import dedup
from .assignment import (
    AssignmentOutcome,
    AssignmentRequest,
    AssignmentResult,
    cancel_latest_booking,
    mark_booking,
    revert_reschedule,
    run_assignment,
)
from .availability import AvailabilityCalculator, AvailabilityRequest, weekend_allowed
from .calendar import CalendarService, calendar_service as default_calendar
from .dispatcher import Dispatcher, dispatcher as default_dispatcher
from .email_service import EmailService, email_service as default_email
from .emergency import EmergencyService
from .errors import BookingValidationError, CalendarWriteError, DispatchError
from .event_log import EventType, record_event, record_sms
from .proximity import ProximityScorer
from .timeutil import format_for_voice, local_day_bounds, parse_datetime, to_local, utcnow
from .triage import TriageLevel, TriageResult, triage

logger = get_call_logger(__name__)

# A requested start this far in the past is still treated as "now".
PAST_TOLERANCE = timedelta(minutes=5)
MAX_LOOKUP_RESULTS = 5


class RoutingMode(Enum):
    IMMEDIATE_DISPATCH = "immediate_dispatch"
    EMERGENCY_WINDOW = "emergency_window"
    STANDARD = "standard"


def route_for(result: TriageResult, caller_flagged_emergency: bool = False) -> RoutingMode:
    if result.level == TriageLevel.LIFE_THREATENING:
        return RoutingMode.IMMEDIATE_DISPATCH
    if result.level == TriageLevel.URGENT or caller_flagged_emergency:
        return RoutingMode.EMERGENCY_WINDOW
    return RoutingMode.STANDARD


@dataclass
class BookingRequest:
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    start_time: Optional[str] = None
    duration_minutes: Optional[int] = None
    confirm: bool = False
    is_emergency: bool = False
    idempotency_key: Optional[str] = None
    source_tag: Optional[str] = None
    call_id: Optional[str] = None


@dataclass
class BookingResponse:
    success: bool
    result: str
    outcome: str
    booking_id: Optional[int] = None
    technician_id: Optional[int] = None
    status: Optional[str] = None
    start_time: Optional[str] = None
    triage: Optional[Dict] = None
    error: Optional[str] = None
    missing: list = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "result": self.result,
            "outcome": self.outcome,
            "booking_id": self.booking_id,
            "technician_id": self.technician_id,
            "status": self.status,
            "start_time": self.start_time,
            "triage": self.triage,
            "error": self.error,
            "missing": list(self.missing),
        }


def validate(request: BookingRequest, mode: RoutingMode, now: datetime) -> Optional[datetime]:
    """Required fields and a usable start time. Raises BookingValidationError."""
    missing = []
    if not (request.customer_name or "").strip():
        missing.append("your name")
    if len([c for c in (request.customer_phone or "") if c.isdigit()]) < 7:
        missing.append("a phone number")
    if not (request.address or "").strip():
        missing.append("the service address")

    start = None
    if request.start_time:
        start = parse_datetime(request.start_time)
        if start is None:
            missing.append("the appointment time")
    elif mode != RoutingMode.IMMEDIATE_DISPATCH:
        missing.append("the appointment time")

    if missing:
        raise BookingValidationError(missing)

    if start is not None and start < now - PAST_TOLERANCE:
        raise BookingValidationError(
            message=f"Start time {start.isoformat()} is in the past",
            caller_message="That time has already passed. What other time works for you?",
        )
    return start


class BookingService:
    def __init__(
        self,
        business: Business,
        calendar: Optional[CalendarService] = None,
        notifier: Optional[Dispatcher] = None,
        email: Optional[EmailService] = None,
        scorer: Optional[ProximityScorer] = None,
        session_factory=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.business = business
        self.policy: BusinessPolicy = policy_for_business(business)
        self.calendar = calendar or default_calendar
        self.notifier = notifier or default_dispatcher
        self.email = email or default_email
        self.scorer = scorer or ProximityScorer(self.policy)
        self.session_factory = session_factory or get_session_local()
        self.clock = clock

    async def book(self, request: BookingRequest) -> BookingResponse:
        return await self._guarded(request)

    async def dispatch_emergency(self, request: BookingRequest) -> BookingResponse:
        """Caller already knows it is an emergency: skip the proposal and page on-call now."""
        request.confirm = True
        request.is_emergency = True
        return await self._guarded(request, RoutingMode.IMMEDIATE_DISPATCH)

    async def _guarded(self, request: BookingRequest, forced_mode: Optional[RoutingMode] = None) -> BookingResponse:
        request.call_id = set_call_id(request.call_id)
        try:
            return await self._book(request, forced_mode)
        except BookingValidationError as e:
            logger.info("Booking request invalid: %s", e)
            return BookingResponse(False, e.caller_message, "invalid", error="validation_error", missing=e.missing)
        except DispatchError as e:
            logger.warning("Booking failed: %s", e)
            return BookingResponse(False, e.caller_message, "error", error=type(e).__name__)
        except Exception:
            logger.exception("Unexpected booking failure for business %s", self.business.id)
            return BookingResponse(False, DispatchError.caller_message, "error", error="internal_error")

    async def _book(self, request: BookingRequest, forced_mode: Optional[RoutingMode] = None) -> BookingResponse:
        now = self.clock()
        assessed = triage(request.notes, self.policy.trade, self.policy.emergency_keywords)
        mode = forced_mode or route_for(assessed, request.is_emergency)
        start = validate(request, mode, now)
        if start is not None and start < now:
            start = now

        record_event(
            self.session_factory,
            EventType.TRIAGE_CLASSIFIED,
            business_id=self.business.id,
            payload={**assessed.as_dict(), "mode": mode.value},
            call_id=request.call_id,
        )

        if mode != RoutingMode.IMMEDIATE_DISPATCH:
            closed = self._weekend_closed(start)
            if closed is not None:
                return closed

        if not request.confirm:
            return self._propose(request, mode, start, assessed)

        existing = self._precheck(request, start, now)
        if existing is not None:
            return existing

        handlers = {
            RoutingMode.IMMEDIATE_DISPATCH: self._immediate_dispatch,
            RoutingMode.EMERGENCY_WINDOW: self._standard_booking,
            RoutingMode.STANDARD: self._standard_booking,
        }
        response = await handlers[mode](request, start, mode)
        response.triage = assessed.as_dict()
        return response

    # Steps

    def _weekend_closed(self, start: Optional[datetime]) -> Optional[BookingResponse]:
        if start is None or to_local(start, self.policy.timezone).weekday() < 5:
            return None
        db = self.session_factory()
        try:
            has_on_call = db.query(Technician).filter(
                Technician.business_id == self.business.id,
                Technician.is_active.is_(True),
                Technician.is_on_call.is_(True),
                Technician.deleted_at.is_(None),
            ).first() is not None
        finally:
            db.close()
        if weekend_allowed(self.policy, has_on_call):
            return None
        return BookingResponse(
            False,
            "We aren't booking weekend appointments right now. Would a weekday work for you?",
            "rejected",
            error="weekend_unavailable",
        )

    def _propose(self, request, mode: RoutingMode, start, assessed: TriageResult) -> BookingResponse:
        if mode == RoutingMode.IMMEDIATE_DISPATCH:
            sentence = (
                "This sounds like an emergency. If anyone is in danger, please leave the building and call 911. "
                "I can send our on-call technician right now. Shall I dispatch them?"
            )
        else:
            when = format_for_voice(start, self.policy.timezone)
            sentence = f"I can book {request.customer_name} for {when}. Shall I go ahead and confirm that?"
        record_event(
            self.session_factory,
            EventType.BOOKING_PROPOSED,
            business_id=self.business.id,
            payload={"start": start.isoformat() if start else None, "mode": mode.value},
            call_id=request.call_id,
        )
        return BookingResponse(
            True,
            sentence,
            "proposed",
            start_time=start.isoformat() + "Z" if start else None,
            triage=assessed.as_dict(),
        )

    def _precheck(self, request: BookingRequest, start: Optional[datetime], now: datetime) -> Optional[BookingResponse]:
        """Short-circuit retries before any geocoding or locking. The transaction checks again."""
        db = self.session_factory()
        try:
            if start is None:
                booking = dedup.find_idempotent_replay(db, self.business.id, request.idempotency_key)
                outcome = dedup.DedupOutcome.REPLAY if booking else dedup.DedupOutcome.NEW
            else:
                decision = dedup.check(
                    db, self.business.id, request.idempotency_key, request.customer_phone, start, now
                )
                booking, outcome = decision.existing, decision.outcome
            if outcome not in (dedup.DedupOutcome.REPLAY, dedup.DedupOutcome.SAME):
                return None
            return self._existing_response(booking, outcome.value)
        finally:
            db.close()

    def _existing_response(self, booking: Booking, outcome: str) -> BookingResponse:
        when = format_for_voice(booking.slot_start, self.policy.timezone)
        failed = booking.status == BookingStatus.FAILED
        return BookingResponse(
            not failed,
            CalendarWriteError.caller_message if failed else f"You're all set. Your appointment is confirmed for {when}.",
            outcome,
            booking_id=booking.id,
            technician_id=booking.technician_id,
            status=booking.status,
            start_time=booking.slot_start.isoformat() + "Z",
        )

    def _assignment_request(self, request: BookingRequest, start: datetime, is_emergency: bool) -> AssignmentRequest:
        return AssignmentRequest(
            business_id=self.business.id,
            slot_start=start,
            duration_minutes=request.duration_minutes or self.policy.service_duration_minutes,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            customer_email=request.customer_email,
            address=request.address,
            notes=request.notes,
            is_emergency=is_emergency,
            idempotency_key=request.idempotency_key,
            source_tag=request.source_tag or "voice",
            call_id=request.call_id,
        )

    async def _immediate_dispatch(self, request: BookingRequest, start, mode) -> BookingResponse:
        emergency = EmergencyService(
            self.business, self.notifier, self.scorer, self.session_factory, self.clock
        )
        dispatched = await emergency.dispatch(self._assignment_request(request, self.clock(), True))
        if dispatched is not None:
            return BookingResponse(
                True,
                f"I've dispatched {dispatched.technician_name}, our on-call technician. "
                "They'll call you shortly and are on their way.",
                "dispatched" if dispatched.outcome == AssignmentOutcome.CREATED else dispatched.outcome.value,
                booking_id=dispatched.booking_id,
                technician_id=dispatched.technician_id,
                status=dispatched.status,
                start_time=dispatched.slot_start.isoformat() + "Z",
            )

        logger.warning("Immediate dispatch unavailable; falling back to today's emergency slots")
        if start is None:
            start = await self._first_emergency_slot(request.address)
        if start is None:
            await self._alert_office(request, "Emergency call: no on-call technician and no openings today")
            return BookingResponse(
                False,
                "I couldn't reach our on-call technician, so I've alerted the office and someone will call you right back.",
                "escalated",
                error="no_emergency_capacity",
            )
        return await self._standard_booking(request, start, RoutingMode.EMERGENCY_WINDOW)

    async def _first_emergency_slot(self, address: Optional[str]) -> Optional[datetime]:
        db = self.session_factory()
        try:
            calculator = AvailabilityCalculator(db, self.business, self.calendar, self.scorer, self.clock)
            result = await calculator.find_slots(AvailabilityRequest(is_emergency=True, customer_address=address))
        finally:
            db.close()
        return result.slots[0].start if result.slots else None

    async def _warm_geocoder(self, request: BookingRequest, start: datetime):
        if not request.address:
            return None
        db = self.session_factory()
        try:
            day_start, day_end = local_day_bounds(start, self.policy.timezone)
            homes = [
                t.home_address for t in db.query(Technician).filter(
                    Technician.business_id == self.business.id,
                    Technician.is_active.is_(True),
                    Technician.deleted_at.is_(None),
                )
            ]
            job_sites = [
                b.address for b in db.query(Booking).filter(
                    Booking.business_id == self.business.id,
                    Booking.status.in_(BookingStatus.ACTIVE),
                    Booking.slot_start >= day_start,
                    Booking.slot_start < day_end,
                )
            ]
        finally:
            db.close()
        try:
            await self.scorer.warm(homes + job_sites)
            return await self.scorer.geocoder.geocode(request.address)
        except Exception:
            logger.exception("Geocoding warm-up failed; assigning without proximity")
            return None

    async def _standard_booking(self, request: BookingRequest, start: datetime, mode) -> BookingResponse:
        is_emergency = mode == RoutingMode.EMERGENCY_WINDOW
        assignment = self._assignment_request(request, start, is_emergency)
        assignment.destination = await self._warm_geocoder(request, start)

        result = await asyncio.to_thread(
            run_assignment, assignment, self.policy, self.scorer, self.session_factory, self.clock
        )
        if not result.is_new_work:
            db = self.session_factory()
            try:
                return self._existing_response(db.get(Booking, result.booking_id), result.outcome.value)
            finally:
                db.close()

        # New or moved, nobody free: no calendar write until the office picks a technician.
        if result.technician_id is None:
            await self._release_previous(result, "Rescheduled; awaiting technician")
            await self._alert_office(request, f"Booking #{result.booking_id} needs a technician: all technicians busy")
            when = format_for_voice(result.slot_start, self.policy.timezone)
            recorded = "moved your request to" if result.previous else "recorded your request for"
            return BookingResponse(
                True,
                f"I've {recorded} {when}, but all of our technicians are booked then. "
                "The office will call you to confirm a technician.",
                result.outcome.value,
                booking_id=result.booking_id,
                status=result.status,
                start_time=result.slot_start.isoformat() + "Z",
            )

        return await self._write_calendar(request, result, is_emergency)

    async def _write_calendar(self, request: BookingRequest, result: AssignmentResult, is_emergency: bool) -> BookingResponse:
        event_type_id = (self.business.calendar_integration or {}).get("event_type_id")
        try:
            written = await self.calendar.book(
                event_type_id,
                result.slot_start,
                result.slot_end,
                {"name": request.customer_name, "email": request.customer_email,
                 "phone": request.customer_phone, "address": request.address},
                self.policy.timezone,
                request.notes or "",
            )
        except CalendarWriteError as e:
            logger.warning("Calendar write failed for booking %s: %s", result.booking_id, e)
            if result.previous is not None:
                return await self._undo_reschedule(request, result, e)
            await asyncio.to_thread(
                mark_booking, result.booking_id, BookingStatus.FAILED, EventType.BOOKING_FAILED,
                {"error": str(e)}, None, self.session_factory,
            )
            return BookingResponse(
                False,
                e.caller_message,
                "failed",
                booking_id=result.booking_id,
                status=BookingStatus.FAILED,
                error="calendar_write_failed",
            )

        await asyncio.to_thread(
            mark_booking, result.booking_id, BookingStatus.BOOKED, EventType.BOOKING_CONFIRMED,
            {"calendar_booking_uid": written.uid, "technician_id": result.technician_id},
            written.uid, self.session_factory,
        )
        await self._release_previous(result, "Rescheduled by customer")
        await self._notify(request, result, is_emergency)

        when = format_for_voice(result.slot_start, self.policy.timezone)
        verb = "moved" if result.outcome == AssignmentOutcome.RESCHEDULED else "booked"
        return BookingResponse(
            True,
            f"You're all set. I've {verb} your appointment for {when}"
            + (f" with {result.technician_name}." if result.technician_name else "."),
            result.outcome.value,
            booking_id=result.booking_id,
            technician_id=result.technician_id,
            status=BookingStatus.BOOKED,
            start_time=result.slot_start.isoformat() + "Z",
        )

    async def _undo_reschedule(self, request: BookingRequest, result: AssignmentResult, error: CalendarWriteError) -> BookingResponse:
        restored = await asyncio.to_thread(revert_reschedule, result, self.policy, self.session_factory)
        if restored is None:
            await self._release_previous(result, "Reschedule failed")
            await self._alert_office(request, f"Booking #{result.booking_id} could not be moved and its old slot is taken")
            return BookingResponse(
                False,
                error.caller_message,
                "failed",
                booking_id=result.booking_id,
                status=BookingStatus.FAILED,
                error="calendar_write_failed",
            )
        when = format_for_voice(restored.slot_start, self.policy.timezone)
        return BookingResponse(
            False,
            f"I couldn't move your appointment just now, so you're still booked for {when}. "
            "Could we try a different time?",
            "reschedule_failed",
            booking_id=restored.booking_id,
            technician_id=restored.technician_id,
            status=restored.status,
            start_time=restored.slot_start.isoformat() + "Z",
            error="calendar_write_failed",
        )

    async def _release_previous(self, result: AssignmentResult, reason: str) -> None:
        """Cancel the provider booking a reschedule left behind."""
        previous = result.previous
        if previous is None or not previous.calendar_booking_uid:
            return
        if not await self.calendar.cancel_booking(previous.calendar_booking_uid, reason):
            logger.warning("Provider booking %s for booking %s was not released",
                           previous.calendar_booking_uid, result.booking_id)

    # Voice-agent tools for existing appointments

    def lookup(self, customer_phone: Optional[str], call_id: Optional[str] = None) -> Dict:
        """The caller's active appointments, soonest first."""
        set_call_id(call_id)
        if len(dedup.phone_digits(customer_phone)) < 7:
            return {
                "success": False,
                "found": False,
                "result": "What phone number is the appointment under?",
                "bookings": [],
                "error": "validation_error",
            }

        db = self.session_factory()
        try:
            matches = dedup.find_customer_bookings(db, self.business.id, customer_phone)
            matches = sorted(matches, key=lambda b: (b.slot_start, b.id))[:MAX_LOOKUP_RESULTS]
            bookings = [self._describe(b) for b in matches]
        finally:
            db.close()

        if not bookings:
            sentence = "I couldn't find an active appointment for that number. Can you verify the phone number?"
        elif len(bookings) == 1:
            sentence = f"I found your appointment for {bookings[0]['display_time']}."
        else:
            sentence = f"I found {len(bookings)} appointments. The next one is {bookings[0]['display_time']}."
        return {"success": True, "found": bool(bookings), "result": sentence, "bookings": bookings, "error": None}

    def _describe(self, booking: Booking) -> Dict:
        return {
            "id": booking.id,
            "customer_name": booking.customer_name,
            "address": booking.address,
            "start": booking.slot_start.isoformat() + "Z",
            "end": booking.slot_end.isoformat() + "Z" if booking.slot_end else None,
            "display_time": format_for_voice(booking.slot_start, self.policy.timezone),
            "status": booking.status,
            "technician_name": booking.technician.name if booking.technician else None,
            "is_emergency": booking.is_emergency,
        }

    async def cancel(
        self,
        customer_phone: Optional[str],
        reason: Optional[str] = None,
        call_id: Optional[str] = None,
    ) -> BookingResponse:
        call_id = set_call_id(call_id)
        if len(dedup.phone_digits(customer_phone)) < 7:
            return BookingResponse(
                False, "What phone number is the appointment under?", "invalid",
                error="validation_error", missing=["a phone number"],
            )
        try:
            canceled = await asyncio.to_thread(
                cancel_latest_booking, self.business.id, customer_phone, reason, self.session_factory, call_id
            )
        except DispatchError as e:
            logger.warning("Cancel failed: %s", e)
            return BookingResponse(False, e.caller_message, "error", error=type(e).__name__)
        if canceled is None:
            return BookingResponse(
                False,
                "I couldn't find an active appointment for that number. Can you verify the phone number?",
                "not_found",
                error="not_found",
            )

        if canceled.calendar_booking_uid:
            await self.calendar.cancel_booking(canceled.calendar_booking_uid, reason or "Canceled by customer")

        when = format_for_voice(canceled.slot_start, self.policy.timezone)
        if canceled.technician_phone:
            db = self.session_factory()
            try:
                booking = db.get(Booking, canceled.booking_id)
                customer_name, address = booking.customer_name, booking.address
            finally:
                db.close()
            try:
                sms = await asyncio.to_thread(
                    self.notifier.notify_cancellation, canceled.technician_phone, customer_name, when, address
                )
                record_sms(self.session_factory, self.business.id, canceled.technician_phone,
                           sms.get("body"), "cancellation", sms)
            except Exception:
                logger.exception("Cancellation notice failed for booking %s", canceled.booking_id)

        return BookingResponse(
            True,
            f"Your appointment for {when} has been canceled. Call anytime if you need to reschedule.",
            canceled.outcome.value,
            booking_id=canceled.booking_id,
            technician_id=canceled.technician_id,
            status=BookingStatus.CANCELED,
            start_time=canceled.slot_start.isoformat() + "Z",
        )

    # Notifications never fail a booking. The Twilio client blocks, so it runs in a worker thread.

    async def _notify(self, request: BookingRequest, result: AssignmentResult, is_emergency: bool) -> None:
        when = format_for_voice(result.slot_start, self.policy.timezone)
        try:
            if result.technician_phone:
                sms = await asyncio.to_thread(
                    self.notifier.dispatch_technician,
                    result.technician_name,
                    result.technician_phone,
                    {"name": request.customer_name, "phone": request.customer_phone, "address": request.address},
                    when,
                    request.notes or "",
                    is_emergency,
                )
                record_sms(self.session_factory, self.business.id, result.technician_phone, sms.get("body"), "dispatch", sms)

            sms = await asyncio.to_thread(
                self.notifier.send_customer_confirmation,
                request.customer_phone, self.business.name, when, request.address, result.technician_name,
            )
            record_sms(self.session_factory, self.business.id, request.customer_phone, sms.get("body"), "confirmation", sms)

            if request.customer_email:
                await self.email.send_appointment_confirmation(
                    request.customer_email, request.customer_name, self.business.name, when, result.technician_name
                )
        except Exception:
            logger.exception("Notification failed for booking %s", result.booking_id)

    async def _alert_office(self, request: BookingRequest, reason: str) -> None:
        if not self.business.forwarding_number:
            logger.warning("No forwarding number to alert: %s", reason)
            return
        try:
            sms = await asyncio.to_thread(
                self.notifier.notify_escalation,
                self.business.forwarding_number,
                self.business.name,
                reason,
                {"customer_phone": request.customer_phone, "call_id": request.call_id},
            )
            record_sms(self.session_factory, self.business.id, self.business.forwarding_number,
                       sms.get("body"), "escalation", sms)
        except Exception:
            logger.exception("Office alert failed")
