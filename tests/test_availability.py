"""Tests for slot filtering, the search window and the availability calculator."""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from dispatchline.config import BusinessPolicy
from dispatchline.core.availability import (
    AvailabilityCalculator,
    AvailabilityRequest,
    compute_slots,
    effective_window,
    hidden_by_late_cutoff,
    next_business_day,
    passes_lead_time,
    summarize,
    weekend_allowed,
    within_business_hours,
)
from dispatchline.core.calendar import RawSlot
from dispatchline.core.geo import Coordinates
from dispatchline.core.proximity import ProximityScorer
from dispatchline.database.models import BookingStatus
from tests.conftest import (
    NOW,
    TUESDAY,
    FakeCalendar,
    FakeGeocoder,
    NoRouting,
    at,
    make_booking,
    make_business,
    make_technician,
)

POLICY = BusinessPolicy()
SATURDAY = datetime(2026, 10, 24)


def _tech(tech_id, priority=1, on_call=False, emergency_only=False):
    return SimpleNamespace(
        id=tech_id, priority=priority, is_on_call=on_call, emergency_only=emergency_only,
        is_active=True, deleted_at=None, home_address=None,
    )


def _raw(day, hours):
    return [RawSlot(at(day, h, m), at(day, h, m) + timedelta(minutes=60)) for h, m in hours]


class TestSearchWindow:
    def test_routine_morning_runs_through_next_business_day(self):
        start, end = effective_window(NOW, False, POLICY)
        assert start == NOW
        assert end == datetime(2026, 10, 21)

    def test_routine_afternoon_starts_tomorrow(self):
        start, end = effective_window(at(NOW, 15), False, POLICY)
        assert start == TUESDAY
        assert end == datetime(2026, 10, 21)

    def test_friday_skips_the_weekend(self):
        friday = datetime(2026, 10, 23, 10)
        _, end = effective_window(friday, False, POLICY)
        assert end == datetime(2026, 10, 27)
        assert next_business_day(friday.date(), POLICY) == datetime(2026, 10, 26).date()

    def test_emergency_is_rest_of_today(self):
        assert effective_window(NOW, True, POLICY) == (NOW, TUESDAY)

    def test_query_bounds_only_narrow(self):
        start, end = effective_window(NOW, False, POLICY, at(TUESDAY, 8), at(TUESDAY, 12))
        assert (start, end) == (at(TUESDAY, 8), at(TUESDAY, 12))
        start, end = effective_window(NOW, False, POLICY, at(NOW, 6), datetime(2026, 11, 1))
        assert (start, end) == (NOW, datetime(2026, 10, 21))

    def test_local_timezone_decides_the_day(self):
        chicago = BusinessPolicy(timezone="America/Chicago")
        # 02:00 UTC Tuesday is 21:00 Monday in Chicago
        start, end = effective_window(datetime(2026, 10, 20, 2), True, chicago)
        assert end == datetime(2026, 10, 20, 5)


class TestFilters:
    def test_job_must_end_by_close(self):
        assert within_business_hours(at(TUESDAY, 16), 60, POLICY, True)
        assert not within_business_hours(at(TUESDAY, 16, 30), 60, POLICY, True)
        assert not within_business_hours(at(TUESDAY, 7, 30), 60, POLICY, True)

    def test_closed_days(self):
        assert not within_business_hours(at(SATURDAY, 10), 60, POLICY, True)
        open_saturday = BusinessPolicy(business_hours={"sat": {"open": "09:00", "close": "14:00", "enabled": True}})
        assert within_business_hours(at(SATURDAY, 10), 60, open_saturday, True)
        assert not within_business_hours(at(SATURDAY, 10), 60, open_saturday, False)

    def test_weekend_policy(self):
        assert weekend_allowed(POLICY, has_on_call=False)
        assert not weekend_allowed(BusinessPolicy(allow_weekend_booking=False), True)
        needs_on_call = BusinessPolicy(require_on_call_for_weekend=True)
        assert not weekend_allowed(needs_on_call, False)
        assert weekend_allowed(needs_on_call, True)

    def test_lead_time(self):
        assert passes_lead_time(NOW + timedelta(minutes=120), NOW, False, POLICY)
        assert not passes_lead_time(NOW + timedelta(minutes=90), NOW, False, POLICY)
        assert passes_lead_time(NOW + timedelta(minutes=30), NOW, True, POLICY)
        assert not passes_lead_time(NOW + timedelta(minutes=29), NOW, True, POLICY)

    def test_late_cutoff_hides_rest_of_today(self):
        late = at(NOW, 16, 30)
        assert hidden_by_late_cutoff(at(NOW, 17), late, False, POLICY)
        assert not hidden_by_late_cutoff(at(TUESDAY, 8), late, False, POLICY)
        assert not hidden_by_late_cutoff(at(NOW, 17), late, True, POLICY)
        assert not hidden_by_late_cutoff(at(NOW, 15), at(NOW, 15, 59), False, POLICY)


class TestComputeSlots:
    def test_capacity_reflects_busy_technicians(self):
        busy = SimpleNamespace(
            technician_id=1, slot_start=at(TUESDAY, 9), slot_end=at(TUESDAY, 10),
            status=BookingStatus.BOOKED, deleted_at=None,
        )
        raw = _raw(TUESDAY, [(8, 0), (9, 0), (10, 15), (10, 30)])
        slots, debug = compute_slots(raw, [_tech(1, priority=5), _tech(2)], [busy], NOW, False, 60, POLICY)

        by_start = {s.start: s.candidates for s in slots}
        assert by_start[at(TUESDAY, 8)] == [2]
        assert by_start[at(TUESDAY, 9)] == [2]
        assert by_start[at(TUESDAY, 10, 15)] == [2]
        assert by_start[at(TUESDAY, 10, 30)] == [1, 2]
        assert debug == {
            "raw": 4, "technicians": 2, "business_hours": 4, "lead_time": 4,
            "with_capacity": 4, "late_cutoff": 4, "returned": 4,
        }

    def test_slot_with_nobody_free_is_dropped(self):
        busy = SimpleNamespace(
            technician_id=1, slot_start=at(TUESDAY, 9), slot_end=at(TUESDAY, 10),
            status=BookingStatus.BOOKED, deleted_at=None,
        )
        slots, debug = compute_slots(_raw(TUESDAY, [(9, 30)]), [_tech(1)], [busy], NOW, False, 60, POLICY)
        assert slots == []
        assert debug["with_capacity"] == 0

    def test_duplicates_removed_and_truncated(self):
        raw = _raw(TUESDAY, [(8, 0), (8, 0)] + [(h, m) for h in range(9, 17) for m in (0, 30)])
        slots, debug = compute_slots(raw, [_tech(1)], [], NOW, False, 60, BusinessPolicy(max_results=5))
        assert debug["raw"] == len(raw)
        assert [s.start for s in slots] == [at(TUESDAY, 8), at(TUESDAY, 9), at(TUESDAY, 9, 30), at(TUESDAY, 10), at(TUESDAY, 10, 30)]

    def test_summary_sentences(self):
        assert "don't have any openings" in summarize([], "UTC", False)
        assert "on-call" in summarize([], "UTC", True)
        slots, _ = compute_slots(_raw(TUESDAY, [(8, 0), (9, 0)]), [_tech(1)], [], NOW, False, 60, POLICY)
        assert summarize(slots, "UTC", False).startswith("The earliest opening I have is Tuesday, October 20 at 8:00 AM")


class TestAvailabilityCalculator:
    def _calculator(self, db, business, calendar=None, scorer=None):
        return AvailabilityCalculator(db, business, calendar or FakeCalendar(), scorer, clock=lambda: NOW)

    @pytest.mark.asyncio
    async def test_routine_search(self, db):
        business = make_business(db)
        make_technician(db, business, "Mike")
        result = await self._calculator(db, business).find_slots(AvailabilityRequest())

        assert result.success
        # Two hours of lead time from 9:00, truncated to the first 20
        assert result.slots[0].start == at(NOW, 11)
        assert len(result.slots) == 20
        assert result.debug["lead_time"] == 28
        assert result.debug["returned"] == 20

    @pytest.mark.asyncio
    async def test_emergency_search_stays_on_today(self, db):
        business = make_business(db)
        make_technician(db, business, "Mike")
        result = await self._calculator(db, business).find_slots(AvailabilityRequest(is_emergency=True))

        assert result.slots[0].start == at(NOW, 9, 30)
        assert result.slots[-1].start == at(NOW, 16)
        assert len(result.slots) == 14

    @pytest.mark.asyncio
    async def test_emergency_only_technicians(self, db):
        business = make_business(db)
        regular = make_technician(db, business, "Mike")
        standby = make_technician(db, business, "Dana", emergency_only=True, is_on_call=True)
        calculator = self._calculator(db, business)

        routine = await calculator.find_slots(AvailabilityRequest())
        emergency = await calculator.find_slots(AvailabilityRequest(is_emergency=True))
        assert routine.slots[0].candidates == [regular.id]
        assert sorted(emergency.slots[0].candidates) == sorted([regular.id, standby.id])

    @pytest.mark.asyncio
    async def test_existing_bookings_reduce_capacity(self, db):
        business = make_business(db)
        mike = make_technician(db, business, "Mike")
        sarah = make_technician(db, business, "Sarah")
        make_booking(db, business, mike, at(TUESDAY, 9))
        result = await self._calculator(db, business).find_slots(
            AvailabilityRequest(query_start=at(TUESDAY, 8), query_end=at(TUESDAY, 12))
        )
        by_start = {s.start: s for s in result.slots}
        assert by_start[at(TUESDAY, 10)].candidates == [sarah.id]
        assert by_start[at(TUESDAY, 10, 30)].capacity == 2

    @pytest.mark.asyncio
    async def test_calendar_outage(self, db):
        business = make_business(db)
        make_technician(db, business, "Mike")
        result = await self._calculator(db, business, FakeCalendar(fail_reads=True)).find_slots(AvailabilityRequest())
        assert not result.success
        assert result.error == "calendar_unavailable"
        assert result.slots == []
        assert "calendar" in result.summary

    @pytest.mark.asyncio
    async def test_proximity_reorders_shared_slots(self, db):
        business = make_business(db)
        far = make_technician(db, business, "Far", priority=5, home_address="Far home")
        near = make_technician(db, business, "Near", priority=1, home_address="Near home")
        geocoder = FakeGeocoder({
            "Customer": Coordinates(30.27, -97.74),
            "Near home": Coordinates(30.28, -97.74),
            "Far home": Coordinates(30.70, -97.74),
        })
        scorer = ProximityScorer(BusinessPolicy(), geocoder, NoRouting())
        result = await self._calculator(db, business, scorer=scorer).find_slots(
            AvailabilityRequest(is_emergency=True, customer_address="Customer")
        )
        by_start = {s.start: s.candidates for s in result.slots}
        # Morning: both leave from home, so the nearer one leads.
        assert by_start[at(NOW, 9, 30)] == [near.id, far.id]
        # Past the first-job cutoff nobody's location is known: priority order.
        assert by_start[at(NOW, 11)] == [far.id, near.id]
