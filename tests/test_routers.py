"""HTTP tests for the voice-agent endpoints."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from dispatchline.main import app
from dispatchline.routers.deps import Collaborators, get_collaborators
from tests.conftest import NOW, TUESDAY, FakeCalendar, FakeEmail, FakeGeocoder, FakeNotifier, NoRouting, at, make_business, make_technician


@pytest.fixture
def collaborators(session_factory):
    deps = Collaborators(
        calendar=FakeCalendar(),
        notifier=FakeNotifier(),
        email=FakeEmail(),
        geocoder=FakeGeocoder(),
        routing=NoRouting(),
        session_factory=session_factory,
        clock=lambda: NOW,
    )
    app.dependency_overrides[get_collaborators] = lambda: deps
    yield deps
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(collaborators):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def business(db):
    business = make_business(db)
    make_technician(db, business, "Mike", priority=2, is_on_call=True)
    make_technician(db, business, "Sarah", priority=1)
    return business


def _booking_body(business, **overrides):
    body = {
        "business_id": business.id,
        "customer_name": "Jane Doe",
        "customer_phone": "+15550001111",
        "address": "12 Oak St",
        "notes": "Dripping faucet",
        "start_time": at(TUESDAY, 10).isoformat() + "Z",
        "confirm": True,
        "call_id": "call_http",
    }
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_integration_status(client):
    response = await client.get("/api/integrations/status")
    assert set(response.json()) == {"database", "twilio", "calendar", "maps", "email"}


class TestAvailabilityEndpoint:
    @pytest.mark.asyncio
    async def test_routine_slots(self, client, business):
        response = await client.post("/api/availability", json={"business_id": business.id, "call_id": "call_1"})
        data = response.json()

        assert response.status_code == 200
        assert data["success"]
        assert data["call_id"] == "call_1"
        assert data["is_emergency"] is False
        assert data["slots"][0]["start"] == "2026-10-19T11:00:00Z"
        assert data["slots"][0]["capacity"] == 2
        assert data["debug"]["returned"] == len(data["slots"])

    @pytest.mark.asyncio
    async def test_emergency_notes_search_today(self, client, business):
        response = await client.post("/api/availability", json={"business_id": business.id, "notes": "burst pipe"})
        data = response.json()
        assert data["is_emergency"] is True
        assert data["slots"][0]["start"] == "2026-10-19T09:30:00Z"

    @pytest.mark.asyncio
    async def test_calendar_down(self, client, business, collaborators):
        collaborators.calendar.fail_reads = True
        data = (await client.post("/api/availability", json={"business_id": business.id})).json()
        assert data["success"] is False
        assert data["error"] == "calendar_unavailable"

    @pytest.mark.asyncio
    async def test_unknown_business(self, client, session_factory):
        response = await client.post("/api/availability", json={"business_id": 404})
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error"] == "BusinessNotFoundError"


class TestBookEndpoint:
    @pytest.mark.asyncio
    async def test_propose_then_confirm(self, client, business, collaborators):
        proposed = (await client.post("/api/book", json=_booking_body(business, confirm=False))).json()
        assert proposed["outcome"] == "proposed"
        assert proposed["booking_id"] is None

        booked = (await client.post("/api/book", json=_booking_body(business, idempotency_key="call_http:book"))).json()
        assert booked["success"]
        assert booked["outcome"] == "created"
        assert booked["status"] == "booked"
        assert booked["call_id"] == "call_http"
        assert len(collaborators.calendar.booked) == 1

        replay = (await client.post("/api/book", json=_booking_body(business, idempotency_key="call_http:book"))).json()
        assert replay["outcome"] == "replay"
        assert replay["booking_id"] == booked["booking_id"]

    @pytest.mark.asyncio
    async def test_validation_error_is_still_200(self, client, business):
        response = await client.post("/api/book", json=_booking_body(business, customer_name=None))
        assert response.status_code == 200
        assert response.json()["missing"] == ["your name"]
        assert "your name" in response.json()["result"]


class TestEmergencyEndpoints:
    @pytest.mark.asyncio
    async def test_check_on_call(self, client, business):
        data = (await client.post("/api/emergency/check-availability", json={"business_id": business.id})).json()
        assert data["available"]
        assert data["technician_name"] == "Mike"

    @pytest.mark.asyncio
    async def test_dispatch_acknowledge_and_timeout(self, client, business, collaborators):
        dispatched = (await client.post("/api/emergency/dispatch", json={
            "business_id": business.id,
            "customer_name": "Jane Doe",
            "customer_phone": "+15550001111",
            "address": "12 Oak St",
            "notes": "water everywhere",
        })).json()
        assert dispatched["success"]
        assert dispatched["outcome"] == "dispatched"
        assert collaborators.notifier.calls

        ref = {"business_id": business.id, "booking_id": dispatched["booking_id"]}
        timeout = (await client.post("/api/emergency/check-timeout", json=ref)).json()
        assert timeout["action"] in ("not_due", "escalated", "no_backup")

        acked = (await client.post("/api/emergency/acknowledge", json={**ref, "technician_id": dispatched["technician_id"]})).json()
        assert acked["success"]
        assert acked["status"] == "en_route"

        missing = (await client.post("/api/emergency/acknowledge", json={**ref, "booking_id": 9999})).json()
        assert missing["error"] == "not_found"


class TestCallsEndpoint:
    @pytest.mark.asyncio
    async def test_low_confidence_escalates(self, client, business, collaborators):
        transcript = [
            {"role": "user", "text": "Oh my god, please hurry"},
            {"role": "user", "text": "Help me, I'm scared, I don't understand"},
            {"role": "user", "text": "I want to talk to a human, this is ridiculous"},
        ]
        data = (await client.post("/api/calls/confidence", json={
            "business_id": business.id, "call_id": "call_low", "transcript": transcript,
        })).json()

        assert data["success"]
        assert data["escalated"]
        assert data["confidence"]["needs_escalation"]
        assert collaborators.notifier.sms[0]["to"] == business.forwarding_number


class TestExistingBookingEndpoints:
    @pytest.mark.asyncio
    async def test_lookup_then_cancel(self, client, business, collaborators):
        booked = (await client.post("/api/book", json=_booking_body(business))).json()
        ref = {"business_id": business.id, "customer_phone": "555-000-1111", "call_id": "call_back"}

        found = (await client.post("/api/lookup-booking", json=ref)).json()
        assert found["found"]
        assert found["call_id"] == "call_back"
        assert found["bookings"][0]["id"] == booked["booking_id"]
        assert found["bookings"][0]["start"] == "2026-10-20T10:00:00Z"

        canceled = (await client.post("/api/cancel-booking", json={**ref, "reason": "fixed it myself"})).json()
        assert canceled["success"]
        assert canceled["outcome"] == "canceled"
        assert canceled["status"] == "canceled"
        assert collaborators.calendar.canceled == ["cal_1"]

        after = (await client.post("/api/lookup-booking", json=ref)).json()
        assert after["success"]
        assert not after["found"]

    @pytest.mark.asyncio
    async def test_cancel_unknown_number_is_still_200(self, client, business):
        response = await client.post("/api/cancel-booking", json={"business_id": business.id, "customer_phone": "+15557770000"})
        assert response.status_code == 200
        assert response.json()["error"] == "not_found"
