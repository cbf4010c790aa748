"""Shared test fixtures, fake collaborators and row factories."""

import itertools
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest

from dispatchline.core.calendar import CalendarBooking, CalendarService
from dispatchline.core.dispatcher import Dispatcher
from dispatchline.core.email_service import EmailService
from dispatchline.core.errors import CalendarUnavailableError, CalendarWriteError
from dispatchline.core.geo import Coordinates
from dispatchline.database.models import Booking, BookingStatus, Business, EventLog, Technician
from dispatchline.database.session import configure_engine, get_engine, get_session_local, init_db

# Monday
NOW = datetime(2026, 10, 19, 9, 0)
TUESDAY = datetime(2026, 10, 20)

_phone_seq = itertools.count(1)


def at(day: datetime, hour: int, minute: int = 0) -> datetime:
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


class FakeCalendar(CalendarService):
    """Generated slots like mock mode; reads and writes can be made to fail."""

    def __init__(self, fail_reads: bool = False, fail_writes: bool = False):
        super().__init__(api_key="")
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        self.booked: List[Dict] = []
        self.canceled: List[str] = []

    async def get_open_slots(self, event_type_id, start, end, timezone="UTC"):
        if self.fail_reads:
            raise CalendarUnavailableError("calendar down")
        return await super().get_open_slots(event_type_id, start, end, timezone)

    async def book(self, event_type_id, start, end, attendee, timezone="UTC", notes=""):
        if self.fail_writes:
            raise CalendarWriteError("provider rejected booking")
        uid = f"cal_{len(self.booked) + 1}"
        self.booked.append({"uid": uid, "start": start, "end": end, "attendee": attendee})
        return CalendarBooking(uid=uid)

    async def cancel_booking(self, uid, reason=""):
        self.canceled.append(uid)
        return True


class FakeNotifier(Dispatcher):
    def __init__(self, fail: bool = False):
        super().__init__(account_sid="", auth_token="", from_number="+15550000000")
        self.client = None
        self.fail = fail
        self.sms: List[Dict] = []
        self.calls: List[Dict] = []
        # Thread ids the Twilio-facing calls ran on.
        self.threads: List[int] = []

    def send_sms(self, to_number, message):
        self.threads.append(threading.get_ident())
        self.sms.append({"to": to_number, "body": message})
        if self.fail:
            return {"success": False, "error": "undeliverable", "body": message}
        return {"success": True, "sid": f"SM{len(self.sms)}", "body": message}

    def place_call(self, to_number, spoken_message):
        self.threads.append(threading.get_ident())
        self.calls.append({"to": to_number, "message": spoken_message})
        return None if self.fail else f"CA{len(self.calls)}"


class FakeEmail(EmailService):
    def __init__(self):
        super().__init__(api_key="")
        self.sent: List[Dict] = []

    async def send_email(self, to_email, subject, body_text):
        self.sent.append({"to": to_email, "subject": subject, "body": body_text})
        return {"success": True}


class FakeGeocoder:
    def __init__(self, known: Optional[Dict[str, Coordinates]] = None):
        self.known = known or {}
        self.lookups: List[str] = []

    async def geocode(self, address):
        self.lookups.append(address)
        return self.known.get(address)


class NoRouting:
    async def drive_minutes(self, origin, destination):
        return None


@pytest.fixture
def session_factory(tmp_path):
    configure_engine(f"sqlite:///{tmp_path / 'dispatch.db'}")
    assert init_db()
    yield get_session_local()
    get_engine().dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def email():
    return FakeEmail()


def make_business(db, **overrides) -> Business:
    values = dict(
        name="Premier Plumbing",
        trade="plumbing",
        timezone="UTC",
        forwarding_number="+15551230000",
        notifications_email="office@example.com",
        calendar_integration={"event_type_id": 42},
    )
    values.update(overrides)
    business = Business(**values)
    db.add(business)
    db.commit()
    db.refresh(business)
    return business


def make_technician(db, business, name="Mike", **overrides) -> Technician:
    values = dict(
        business_id=business.id,
        name=name,
        phone=f"+1555200{next(_phone_seq):04d}",
        priority=1,
        is_active=True,
    )
    values.update(overrides)
    tech = Technician(**values)
    db.add(tech)
    db.commit()
    db.refresh(tech)
    return tech


def make_booking(db, business, technician, start, minutes=60, **overrides) -> Booking:
    values = dict(
        business_id=business.id,
        technician_id=technician.id if technician else None,
        customer_name="Existing Customer",
        customer_phone="+15559990000",
        address="1 Existing St",
        slot_start=start,
        slot_end=start + timedelta(minutes=minutes),
        status=BookingStatus.BOOKED,
    )
    values.update(overrides)
    booking = Booking(**values)
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return booking


def reload(session_factory, model, row_id):
    """Fresh copy of a row, as committed by other sessions."""
    session = session_factory()
    try:
        return session.get(model, row_id)
    finally:
        session.close()


def event_types(session_factory, booking_id=None) -> List[str]:
    session = session_factory()
    try:
        query = session.query(EventLog).order_by(EventLog.id)
        if booking_id is not None:
            query = query.filter(EventLog.booking_id == booking_id)
        return [e.type for e in query.all()]
    finally:
        session.close()
