"""Append-only audit log of engine decisions and outbound SMS, keyed by call and booking id."""

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..database.models import EventLog, SmsLog
from ..logging_context import get_call_id, get_call_logger

logger = get_call_logger(__name__)


class EventType:
    TRIAGE_CLASSIFIED = "triage.classified"
    BOOKING_PROPOSED = "booking.proposed"
    BOOKING_CREATED = "booking.created"
    BOOKING_UNASSIGNED = "booking.unassigned"
    BOOKING_CONFIRMED = "booking.confirmed"
    BOOKING_FAILED = "booking.failed"
    BOOKING_RESCHEDULED = "booking.rescheduled"
    BOOKING_RESCHEDULE_REVERTED = "booking.reschedule_reverted"
    BOOKING_CANCELED = "booking.canceled"
    DEDUP_SAME_BOOKING = "dedup.same_booking"
    IDEMPOTENT_REPLAY = "dedup.idempotent_replay"
    EMERGENCY_DISPATCHED = "emergency.dispatched"
    EMERGENCY_DISPATCH_FAILED = "emergency.dispatch_failed"
    EMERGENCY_ACKNOWLEDGED = "emergency.acknowledged"
    EMERGENCY_TIMEOUT_ESCALATED = "emergency.timeout_escalated"
    EMERGENCY_TIMEOUT_NO_BACKUP = "emergency.timeout_no_backup"
    CALL_ESCALATED = "call.escalated"


def log_event(
    db: Session,
    event_type: str,
    business_id: Optional[int] = None,
    booking_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
    call_id: Optional[str] = None,
) -> EventLog:
    """Stage an event in the caller's session; it commits with the caller's work."""
    call_id = call_id or get_call_id()
    event = EventLog(
        business_id=business_id,
        type=event_type,
        call_id=None if call_id == "-" else call_id,
        booking_id=booking_id,
        payload=payload or {},
    )
    db.add(event)
    logger.info("event %s booking=%s %s", event_type, booking_id, payload or {})
    return event


def record_event(session_factory, event_type: str, **kwargs) -> None:
    """Write an event in its own short transaction. Never raises."""
    db = session_factory()
    try:
        log_event(db, event_type, **kwargs)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to write event %s", event_type)
    finally:
        db.close()


def record_sms(session_factory, business_id: Optional[int], to_number: str, message: str, sms_type: str, result: Dict) -> None:
    """Audit one outbound SMS. Never raises."""
    if result.get("mock"):
        status = "mock"
    else:
        status = "sent" if result.get("success") else "failed"
    db = session_factory()
    try:
        db.add(SmsLog(
            business_id=business_id,
            to_number=to_number,
            message=message,
            sms_type=sms_type,
            status=status,
            twilio_sid=result.get("sid"),
        ))
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to write SMS log")
    finally:
        db.close()
