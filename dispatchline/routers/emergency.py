from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional
from pydantic import BaseModel

from ..database.session import get_db
from ..core.booking_service import BookingRequest, BookingService
from ..core.emergency import EmergencyService
from ..core.errors import DispatchError
from ..logging_context import get_call_logger, set_call_id
from .deps import Collaborators, get_collaborators, load_business

logger = get_call_logger(__name__)

router = APIRouter(prefix="/api/emergency", tags=["emergency"])


class OnCallQuery(BaseModel):
    business_id: int
    call_id: Optional[str] = None


class EmergencyDispatchRequest(BaseModel):
    business_id: int
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    start_time: Optional[str] = None
    idempotency_key: Optional[str] = None
    call_id: Optional[str] = None


class BookingRef(BaseModel):
    business_id: int
    booking_id: int
    technician_id: Optional[int] = None
    call_id: Optional[str] = None


def _service(business, deps: Collaborators) -> EmergencyService:
    return EmergencyService(business, deps.notifier, deps.scorer_for(business), deps.sessions(), deps.clock)


def _failure(e: Exception) -> dict:
    if isinstance(e, DispatchError):
        logger.warning("Emergency request failed: %s", e)
        return {"success": False, "result": e.caller_message, "error": type(e).__name__}
    logger.exception("Unexpected emergency failure")
    return {"success": False, "result": DispatchError.caller_message, "error": "internal_error"}


@router.post("/check-availability")
async def check_on_call(query: OnCallQuery, db: Session = Depends(get_db), deps: Collaborators = Depends(get_collaborators)):
    set_call_id(query.call_id)
    try:
        business = load_business(db, query.business_id)
        status = _service(business, deps).check_availability(db)
        return {
            "success": True,
            "result": status.result,
            "available": status.available,
            "technician_id": status.technician_id,
            "technician_name": status.technician_name,
            "on_call_count": status.on_call_count,
        }
    except Exception as e:
        return _failure(e)


@router.post("/dispatch")
async def dispatch_emergency(
    request: EmergencyDispatchRequest,
    db: Session = Depends(get_db),
    deps: Collaborators = Depends(get_collaborators),
):
    try:
        business = load_business(db, request.business_id)
    except Exception as e:
        return _failure(e)

    service = BookingService(
        business,
        calendar=deps.calendar,
        notifier=deps.notifier,
        email=deps.email,
        scorer=deps.scorer_for(business),
        session_factory=deps.sessions(),
        clock=deps.clock,
    )
    booking_request = BookingRequest(**request.dict(exclude={"business_id"}))
    response = await service.dispatch_emergency(booking_request)
    body = response.as_dict()
    body["call_id"] = booking_request.call_id
    return body


@router.post("/check-timeout")
async def check_timeout(ref: BookingRef, db: Session = Depends(get_db), deps: Collaborators = Depends(get_collaborators)):
    set_call_id(ref.call_id)
    try:
        business = load_business(db, ref.business_id)
        outcome = await _service(business, deps).check_timeout(ref.booking_id)
    except Exception as e:
        return _failure(e)

    sentences = {
        "not_found": "I couldn't find that emergency dispatch.",
        "not_due": "The technician still has time to acknowledge.",
        "acknowledged": "The technician has already acknowledged this job.",
        "escalated": "The job has been handed to the next on-call technician.",
        "no_backup": "No backup technician is free; the office has been alerted.",
    }
    return {
        "success": outcome.action != "not_found",
        "result": sentences[outcome.action],
        "action": outcome.action,
        "booking_id": outcome.booking_id,
        "technician_id": outcome.technician_id,
        "previous_technician_id": outcome.previous_technician_id,
    }


@router.post("/acknowledge")
async def acknowledge(ref: BookingRef, db: Session = Depends(get_db), deps: Collaborators = Depends(get_collaborators)):
    set_call_id(ref.call_id)
    try:
        business = load_business(db, ref.business_id)
        result = _service(business, deps).acknowledge(ref.booking_id, ref.technician_id)
    except Exception as e:
        return _failure(e)

    if result is None:
        return {"success": False, "result": "I couldn't find that job for this technician.", "error": "not_found"}
    return {
        "success": True,
        "result": "Thanks, the customer will be told you're on the way.",
        "booking_id": result.booking_id,
        "technician_id": result.technician_id,
        "status": result.status,
    }
