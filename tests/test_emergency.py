"""Tests for on-call dispatch, acknowledgement and the acknowledgement timeout."""

import threading
from datetime import timedelta

import pytest

from dispatchline.core.assignment import AssignmentOutcome, AssignmentRequest
from dispatchline.core.emergency import EMERGENCY_SOURCE_TAG, EmergencyService
from dispatchline.core.event_log import EventType
from dispatchline.database.models import Booking, BookingStatus, SmsLog
from tests.conftest import NOW, FakeNotifier, at, event_types, make_booking, make_business, make_technician, reload


def _request(business, **overrides):
    values = dict(
        business_id=business.id,
        slot_start=NOW,
        duration_minutes=90,
        customer_name="Jane Doe",
        customer_phone="+15550001111",
        address="12 Oak St",
        notes="gas leak in the kitchen",
        call_id="call_gas",
    )
    values.update(overrides)
    return AssignmentRequest(**values)


def _service(business, session_factory, notifier=None):
    return EmergencyService(business, notifier or FakeNotifier(), None, session_factory, clock=lambda: NOW)


def _age_dispatch(db, booking_id, minutes):
    booking = db.get(Booking, booking_id)
    booking.updated_at = NOW - timedelta(minutes=minutes)
    db.commit()


@pytest.fixture
def roster(db):
    business = make_business(db)
    primary = make_technician(db, business, "Mike", priority=3, is_on_call=True)
    backup = make_technician(db, business, "Dana", priority=2, is_on_call=True, emergency_only=True)
    regular = make_technician(db, business, "Sarah", priority=5)
    return business, primary, backup, regular


class TestOnCallAvailability:
    def test_highest_priority_free_on_call(self, db, session_factory, roster):
        business, primary, _, _ = roster
        status = _service(business, session_factory).check_availability(db)
        assert status.available
        assert status.technician_id == primary.id
        assert status.on_call_count == 2
        assert "Mike" in status.result

    def test_busy_on_call_falls_through(self, db, session_factory, roster):
        business, primary, backup, _ = roster
        make_booking(db, business, primary, at(NOW, 8, 30))
        status = _service(business, session_factory).check_availability(db)
        assert status.technician_id == backup.id

    def test_nobody_on_call(self, db, session_factory):
        business = make_business(db)
        make_technician(db, business, "Sarah")
        status = _service(business, session_factory).check_availability(db)
        assert not status.available
        assert status.on_call_count == 0


class TestDispatch:
    @pytest.mark.asyncio
    async def test_pages_primary_on_call(self, db, session_factory, roster):
        business, primary, _, _ = roster
        notifier = FakeNotifier()
        result = await _service(business, session_factory, notifier).dispatch(_request(business))

        assert result.outcome == AssignmentOutcome.CREATED
        assert result.technician_id == primary.id
        booking = reload(session_factory, Booking, result.booking_id)
        assert booking.is_emergency
        assert booking.source_tag == EMERGENCY_SOURCE_TAG
        assert booking.status == BookingStatus.PENDING
        assert booking.slot_start == NOW

        assert notifier.sms[0]["to"] == primary.phone
        assert notifier.sms[0]["body"].startswith("EMERGENCY DISPATCH")
        assert notifier.calls[0]["to"] == primary.phone
        assert event_types(session_factory, result.booking_id) == [EventType.EMERGENCY_DISPATCHED]
        assert db.query(SmsLog).filter(SmsLog.sms_type == "emergency_dispatch").count() == 1
        # Twilio blocks; paging runs in a worker thread.
        assert len(notifier.threads) == 2
        assert threading.get_ident() not in notifier.threads

    @pytest.mark.asyncio
    async def test_replay_does_not_page_twice(self, db, session_factory, roster):
        business, _, _, _ = roster
        notifier = FakeNotifier()
        service = _service(business, session_factory, notifier)
        first = await service.dispatch(_request(business, idempotency_key="call_gas:dispatch"))
        again = await service.dispatch(_request(business, idempotency_key="call_gas:dispatch"))

        assert again.outcome == AssignmentOutcome.REPLAY
        assert again.booking_id == first.booking_id
        assert len(notifier.sms) == 1

    @pytest.mark.asyncio
    async def test_no_on_call_returns_none(self, db, session_factory):
        business = make_business(db)
        make_technician(db, business, "Sarah")
        result = await _service(business, session_factory).dispatch(_request(business))
        assert result is None
        assert db.query(Booking).count() == 0
        assert event_types(session_factory) == [EventType.EMERGENCY_DISPATCH_FAILED]

    @pytest.mark.asyncio
    async def test_unreachable_technician_cancels(self, db, session_factory, roster):
        business, _, _, _ = roster
        result = await _service(business, session_factory, FakeNotifier(fail=True)).dispatch(_request(business))
        assert result is None
        booking = db.query(Booking).one()
        assert booking.status == BookingStatus.CANCELED
        assert booking.unassigned_reason == "technician could not be reached"


class TestAcknowledge:
    @pytest.mark.asyncio
    async def test_moves_to_en_route(self, db, session_factory, roster):
        business, primary, _, _ = roster
        service = _service(business, session_factory)
        dispatched = await service.dispatch(_request(business))

        acked = service.acknowledge(dispatched.booking_id, primary.id)
        assert acked.status == BookingStatus.EN_ROUTE
        assert EventType.EMERGENCY_ACKNOWLEDGED in event_types(session_factory, dispatched.booking_id)

    @pytest.mark.asyncio
    async def test_wrong_technician_or_booking(self, db, session_factory, roster):
        business, _, backup, _ = roster
        service = _service(business, session_factory)
        dispatched = await service.dispatch(_request(business))

        assert service.acknowledge(dispatched.booking_id, backup.id) is None
        assert service.acknowledge(9999) is None
        assert reload(session_factory, Booking, dispatched.booking_id).status == BookingStatus.PENDING


class TestAcknowledgementTimeout:
    @pytest.mark.asyncio
    async def test_not_due_yet(self, db, session_factory, roster):
        business, primary, _, _ = roster
        service = _service(business, session_factory)
        dispatched = await service.dispatch(_request(business))
        _age_dispatch(db, dispatched.booking_id, 2)

        outcome = await service.check_timeout(dispatched.booking_id)
        assert outcome.action == "not_due"
        assert outcome.technician_id == primary.id

    @pytest.mark.asyncio
    async def test_hands_off_to_backup(self, db, session_factory, roster):
        business, primary, backup, _ = roster
        notifier = FakeNotifier()
        service = _service(business, session_factory, notifier)
        dispatched = await service.dispatch(_request(business))
        _age_dispatch(db, dispatched.booking_id, 10)

        outcome = await service.check_timeout(dispatched.booking_id)
        assert outcome.action == "escalated"
        assert outcome.previous_technician_id == primary.id
        assert outcome.technician_id == backup.id

        booking = reload(session_factory, Booking, dispatched.booking_id)
        assert booking.technician_id == backup.id
        assert booking.status == BookingStatus.PENDING
        assert booking.updated_at == NOW
        assert any(sms["to"] == backup.phone and "backup needed" in sms["body"] for sms in notifier.sms)
        assert notifier.calls[-1]["to"] == backup.phone
        assert EventType.EMERGENCY_TIMEOUT_ESCALATED in event_types(session_factory, dispatched.booking_id)
        assert threading.get_ident() not in notifier.threads

        # The backup's own clock starts at the hand-off.
        assert (await service.check_timeout(dispatched.booking_id)).action == "not_due"

    @pytest.mark.asyncio
    async def test_no_backup_alerts_office(self, db, session_factory):
        business = make_business(db)
        only = make_technician(db, business, "Mike", is_on_call=True)
        notifier = FakeNotifier()
        service = _service(business, session_factory, notifier)
        dispatched = await service.dispatch(_request(business))
        _age_dispatch(db, dispatched.booking_id, 10)

        outcome = await service.check_timeout(dispatched.booking_id)
        assert outcome.action == "no_backup"
        assert outcome.technician_id == only.id
        assert notifier.sms[-1]["to"] == business.forwarding_number
        assert "call_gas" in notifier.sms[-1]["body"]
        assert threading.get_ident() not in notifier.threads
        assert EventType.EMERGENCY_TIMEOUT_NO_BACKUP in event_types(session_factory, dispatched.booking_id)

    @pytest.mark.asyncio
    async def test_acknowledged_job_is_left_alone(self, db, session_factory, roster):
        business, _, _, _ = roster
        service = _service(business, session_factory)
        dispatched = await service.dispatch(_request(business))
        service.acknowledge(dispatched.booking_id)
        _age_dispatch(db, dispatched.booking_id, 10)

        assert (await service.check_timeout(dispatched.booking_id)).action == "acknowledged"
        assert (await service.check_timeout(9999)).action == "not_found"
