import asyncio
from dataclasses import dataclass
from typing import Optional

from ..config import policy_for_business
from ..database.models import Business
from ..logging_context import get_call_logger
from .confidence_engine import ConfidenceEngine, ConfidenceResult, confidence_engine
from .dispatcher import Dispatcher, dispatcher as default_dispatcher
from .email_service import EmailService, email_service as default_email
from .event_log import EventType, record_event, record_sms

logger = get_call_logger(__name__)


@dataclass
class CallReview:
    confidence: ConfidenceResult
    escalated: bool
    notified: bool = False

    @property
    def result(self) -> str:
        if self.escalated:
            return "This call has been flagged for a human follow-up."
        return "No follow-up needed for this call."


async def review_call(
    business: Business,
    transcript,
    call_id: str,
    session_factory,
    customer_phone: Optional[str] = None,
    booking_id: Optional[int] = None,
    engine: Optional[ConfidenceEngine] = None,
    notifier: Optional[Dispatcher] = None,
    email: Optional[EmailService] = None,
) -> CallReview:
    """Score a finished call and hand it to the office when confidence is low, booked or not."""
    policy = policy_for_business(business)
    engine = engine or confidence_engine
    notifier = notifier or default_dispatcher
    email = email or default_email

    confidence = engine.score_call(transcript, policy.confidence_escalation_threshold)
    if not confidence.needs_escalation:
        return CallReview(confidence, escalated=False)

    reason = "Low call confidence: " + ("; ".join(confidence.reasons) or f"score {confidence.score:.2f}")
    logger.info("Escalating call %s (score %.2f)", call_id, confidence.score)

    notified = False
    if business.forwarding_number:
        sms = await asyncio.to_thread(
            notifier.notify_escalation,
            business.forwarding_number,
            business.name,
            reason,
            {"customer_phone": customer_phone, "call_id": call_id},
        )
        record_sms(session_factory, business.id, business.forwarding_number, sms.get("body"), "escalation", sms)
        notified = bool(sms.get("success"))
    if business.notifications_email:
        sent = await email.send_escalation_notice(business.notifications_email, business.name, reason, call_id)
        notified = notified or bool(sent.get("success"))

    record_event(
        session_factory,
        EventType.CALL_ESCALATED,
        business_id=business.id,
        booking_id=booking_id,
        payload={**confidence.as_dict(), "notified": notified},
        call_id=call_id,
    )
    return CallReview(confidence, escalated=True, notified=notified)
