from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional
from pydantic import BaseModel

from ..database.session import get_db
from ..core.availability import AvailabilityCalculator, AvailabilityRequest
from ..core.booking_service import BookingRequest, BookingService
from ..core.errors import DispatchError
from ..core.timeutil import parse_datetime
from ..core.triage import triage
from ..config import policy_for_business
from ..logging_context import get_call_logger, set_call_id
from .deps import Collaborators, get_collaborators, load_business

logger = get_call_logger(__name__)

router = APIRouter(prefix="/api", tags=["appointments"])


class AvailabilityQuery(BaseModel):
    business_id: int
    is_emergency: Optional[bool] = False
    notes: Optional[str] = None
    duration_minutes: Optional[int] = None
    customer_address: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    call_id: Optional[str] = None


class BookRequest(BaseModel):
    business_id: int
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    start_time: Optional[str] = None
    duration_minutes: Optional[int] = None
    confirm: Optional[bool] = False
    is_emergency: Optional[bool] = False
    idempotency_key: Optional[str] = None
    source_tag: Optional[str] = None
    call_id: Optional[str] = None


def _service_for(business, deps: Collaborators) -> BookingService:
    return BookingService(
        business,
        calendar=deps.calendar,
        notifier=deps.notifier,
        email=deps.email,
        scorer=deps.scorer_for(business),
        session_factory=deps.sessions(),
        clock=deps.clock,
    )


@router.post("/availability")
async def check_availability(
    query: AvailabilityQuery,
    db: Session = Depends(get_db),
    deps: Collaborators = Depends(get_collaborators),
):
    call_id = set_call_id(query.call_id)
    try:
        business = load_business(db, query.business_id)
        policy = policy_for_business(business)
        # Emergency language in the notes widens the search to today.
        urgent = query.is_emergency or triage(query.notes, policy.trade, policy.emergency_keywords).is_emergency

        calculator = AvailabilityCalculator(
            db, business, deps.calendar, deps.scorer_for(business), deps.clock
        )
        result = await calculator.find_slots(
            AvailabilityRequest(
                is_emergency=urgent,
                duration_minutes=query.duration_minutes,
                customer_address=query.customer_address,
                query_start=parse_datetime(query.start),
                query_end=parse_datetime(query.end),
            )
        )
        return {
            "success": result.success,
            "result": result.summary,
            "call_id": call_id,
            "is_emergency": urgent,
            "slots": [s.as_dict(policy.timezone) for s in result.slots],
            "debug": result.debug,
            "error": result.error,
        }
    except DispatchError as e:
        logger.warning("Availability failed: %s", e)
        return {"success": False, "result": e.caller_message, "call_id": call_id, "slots": [], "error": type(e).__name__}
    except Exception:
        logger.exception("Unexpected availability failure")
        return {"success": False, "result": DispatchError.caller_message, "call_id": call_id, "slots": [], "error": "internal_error"}


@router.post("/book")
async def book_appointment(
    request: BookRequest,
    db: Session = Depends(get_db),
    deps: Collaborators = Depends(get_collaborators),
):
    try:
        business = load_business(db, request.business_id)
    except DispatchError as e:
        return {"success": False, "result": e.caller_message, "error": type(e).__name__}

    service = _service_for(business, deps)
    booking_request = BookingRequest(**request.dict(exclude={"business_id"}))
    response = await service.book(booking_request)
    body = response.as_dict()
    body["call_id"] = booking_request.call_id
    return body


class CustomerBookingQuery(BaseModel):
    business_id: int
    customer_phone: Optional[str] = None
    reason: Optional[str] = None
    call_id: Optional[str] = None


@router.post("/lookup-booking")
async def lookup_booking(
    query: CustomerBookingQuery,
    db: Session = Depends(get_db),
    deps: Collaborators = Depends(get_collaborators),
):
    """Read back the caller's active appointments by phone number."""
    try:
        business = load_business(db, query.business_id)
    except DispatchError as e:
        return {"success": False, "found": False, "result": e.caller_message, "bookings": [], "error": type(e).__name__}

    body = _service_for(business, deps).lookup(query.customer_phone, query.call_id)
    body["call_id"] = query.call_id
    return body


@router.post("/cancel-booking")
async def cancel_booking(
    query: CustomerBookingQuery,
    db: Session = Depends(get_db),
    deps: Collaborators = Depends(get_collaborators),
):
    """Cancel the caller's most recent active appointment."""
    try:
        business = load_business(db, query.business_id)
    except DispatchError as e:
        return {"success": False, "result": e.caller_message, "error": type(e).__name__}

    response = await _service_for(business, deps).cancel(query.customer_phone, query.reason, query.call_id)
    body = response.as_dict()
    body["call_id"] = query.call_id
    return body
