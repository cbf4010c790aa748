from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..config import policy_for_business
from ..core.calendar import CalendarService, calendar_service
from ..core.dispatcher import Dispatcher, dispatcher
from ..core.email_service import EmailService, email_service
from ..core.errors import BusinessNotFoundError
from ..core.geo import Geocoder, RoutingProvider
from ..core.proximity import ProximityScorer
from ..core.timeutil import utcnow
from ..database.models import Business
from ..database.session import get_session_local


@dataclass
class Collaborators:
    """External services a request handler talks to. Tests swap these out."""

    calendar: CalendarService = calendar_service
    notifier: Dispatcher = dispatcher
    email: EmailService = email_service
    geocoder: Optional[Geocoder] = None
    routing: Optional[RoutingProvider] = None
    session_factory: Optional[Callable[[], Session]] = None
    clock: Callable[[], datetime] = field(default=utcnow)

    def sessions(self):
        return self.session_factory or get_session_local()

    def scorer_for(self, business: Business) -> ProximityScorer:
        # New scorer per request, so its geocode cache lives for one call.
        return ProximityScorer(policy_for_business(business), self.geocoder, self.routing)


def get_collaborators() -> Collaborators:
    return Collaborators()


def load_business(db: Session, business_id: int) -> Business:
    business = db.query(Business).filter(Business.id == business_id).first()
    if not business:
        raise BusinessNotFoundError(f"Business {business_id} not found")
    return business
