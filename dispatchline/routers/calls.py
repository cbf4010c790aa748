from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Dict, List, Optional, Union
from pydantic import BaseModel

from ..database.session import get_db
from ..core.call_review import review_call
from ..core.errors import DispatchError
from ..logging_context import get_call_logger, set_call_id
from .deps import Collaborators, get_collaborators, load_business

logger = get_call_logger(__name__)

router = APIRouter(prefix="/api/calls", tags=["calls"])


class CallTranscript(BaseModel):
    business_id: int
    call_id: Optional[str] = None
    customer_phone: Optional[str] = None
    booking_id: Optional[int] = None
    transcript: Union[str, List[Dict[str, str]]] = ""


@router.post("/confidence")
async def score_call(payload: CallTranscript, db: Session = Depends(get_db), deps: Collaborators = Depends(get_collaborators)):
    call_id = set_call_id(payload.call_id)
    try:
        business = load_business(db, payload.business_id)
        review = await review_call(
            business,
            payload.transcript,
            call_id,
            deps.sessions(),
            customer_phone=payload.customer_phone,
            booking_id=payload.booking_id,
            notifier=deps.notifier,
            email=deps.email,
        )
    except DispatchError as e:
        return {"success": False, "result": e.caller_message, "error": type(e).__name__}
    except Exception:
        logger.exception("Call review failed")
        return {"success": False, "result": DispatchError.caller_message, "error": "internal_error"}

    return {
        "success": True,
        "result": review.result,
        "call_id": call_id,
        "escalated": review.escalated,
        "notified": review.notified,
        "confidence": review.confidence.as_dict(),
    }
