"""Tests for expected-location and drive-time ranking."""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from dispatchline.config import BusinessPolicy
from dispatchline.core.geo import Coordinates, haversine_miles
from dispatchline.core.proximity import (
    ProximityScorer,
    RankedTechnician,
    distance_bonus,
    expected_location,
    rank_by_priority,
    rank_technicians,
)
from dispatchline.database.models import BookingStatus
from tests.conftest import TUESDAY, FakeGeocoder, NoRouting, at

CUSTOMER = Coordinates(30.27, -97.74)
NEARBY = Coordinates(30.28, -97.74)
FAR_AWAY = Coordinates(30.70, -97.74)


def _tech(tech_id, priority=1, home=None):
    return SimpleNamespace(id=tech_id, priority=priority, home_address=home)


def _job(tech_id, start, minutes, address):
    return SimpleNamespace(
        technician_id=tech_id,
        slot_start=start,
        slot_end=start + timedelta(minutes=minutes),
        status=BookingStatus.BOOKED,
        deleted_at=None,
        address=address,
    )


class TestDistanceBonus:
    @pytest.mark.parametrize("miles,bonus", [
        (0, 20), (5, 20), (7.5, 15), (10, 15), (19.9, 10), (35, 5), (35.1, 0), (None, 0),
    ])
    def test_buckets(self, miles, bonus):
        assert distance_bonus(miles) == bonus


class TestExpectedLocation:
    policy = BusinessPolicy()

    def test_previous_job_address_when_cleanup_fits(self):
        tech = _tech(1, home="Home")
        jobs = [_job(1, at(TUESDAY, 8), 60, "Job A")]
        # 9:00 end + 20 min cleanup <= 10:00
        assert expected_location(tech, jobs, at(TUESDAY, 10), self.policy) == "Job A"

    def test_latest_qualifying_job_wins(self):
        tech = _tech(1, home="Home")
        jobs = [_job(1, at(TUESDAY, 8), 60, "Job A"), _job(1, at(TUESDAY, 12), 60, "Job B")]
        assert expected_location(tech, jobs, at(TUESDAY, 14), self.policy) == "Job B"

    def test_home_before_first_job_cutoff(self):
        tech = _tech(1, home="Home")
        jobs = [_job(1, at(TUESDAY, 8), 60, "Job A")]
        # Job A ends 9:00, too late for a 9:10 start after cleanup
        assert expected_location(tech, jobs, at(TUESDAY, 9, 10), self.policy) == "Home"

    def test_unknown_in_the_afternoon_without_prior_job(self):
        assert expected_location(_tech(1, home="Home"), [], at(TUESDAY, 13), self.policy) is None

    def test_other_days_and_technicians_ignored(self):
        tech = _tech(1, home="Home")
        jobs = [_job(1, at(TUESDAY, 8) - timedelta(days=1), 60, "Yesterday"), _job(2, at(TUESDAY, 8), 60, "Theirs")]
        assert expected_location(tech, jobs, at(TUESDAY, 13), self.policy) is None


class TestRanking:
    def test_known_drive_time_first_then_priority_then_id(self):
        ranked = rank_technicians([
            RankedTechnician(4, priority=5),
            RankedTechnician(3, priority=1, drive_minutes=20),
            RankedTechnician(2, priority=1, drive_minutes=10),
            RankedTechnician(1, priority=9, drive_minutes=20),
            RankedTechnician(5, priority=5),
        ])
        assert [r.technician_id for r in ranked] == [2, 1, 3, 4, 5]

    def test_rank_by_priority(self):
        assert rank_by_priority([_tech(3, 1), _tech(1, 1), _tech(2, 4)]) == [2, 1, 3]


class TestProximityScorer:
    def _scorer(self):
        geocoder = FakeGeocoder({"Customer": CUSTOMER, "Near home": NEARBY, "Far home": FAR_AWAY})
        return ProximityScorer(BusinessPolicy(), geocoder, NoRouting()), geocoder

    @pytest.mark.asyncio
    async def test_rank_prefers_closer_over_priority(self):
        scorer, _ = self._scorer()
        far = _tech(1, priority=9, home="Far home")
        near = _tech(2, priority=1, home="Near home")
        ranked = await scorer.rank([far, near], [], at(TUESDAY, 9), "Customer")
        assert [r.technician_id for r in ranked] == [2, 1]
        assert ranked[0].drive_minutes < ranked[1].drive_minutes

    @pytest.mark.asyncio
    async def test_ungeocodable_customer_keeps_priority_order(self):
        scorer, _ = self._scorer()
        ranked = await scorer.rank([_tech(1, 1, "Near home"), _tech(2, 5, "Far home")], [], at(TUESDAY, 9), "Nowhere")
        assert [r.technician_id for r in ranked] == [2, 1]
        assert all(r.drive_minutes is None for r in ranked)

    @pytest.mark.asyncio
    async def test_cached_distance_needs_warm_cache(self):
        scorer, geocoder = self._scorer()
        tech = _tech(1, home="Near home")
        assert scorer.cached_distance_miles(tech, [], at(TUESDAY, 9), CUSTOMER) is None

        await scorer.warm(["Near home", "Near home", None])
        miles = scorer.cached_distance_miles(tech, [], at(TUESDAY, 9), CUSTOMER)
        assert miles == pytest.approx(haversine_miles(NEARBY, CUSTOMER))
        assert geocoder.lookups == ["Near home"]
