import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import aiohttp

from .. import config
from ..logging_context import get_call_logger
from .errors import CalendarUnavailableError, CalendarWriteError
from .timeutil import parse_datetime

logger = get_call_logger(__name__)

SLOTS_API_VERSION = "2024-09-04"
BOOKINGS_API_VERSION = "2024-08-13"
MOCK_SLOT_MINUTES = 60


@dataclass(frozen=True)
class RawSlot:
    start: datetime
    end: datetime


@dataclass
class CalendarBooking:
    uid: str
    mock: bool = False


class CalendarService:
    """Cal.com client. Falls back to generated slots when no API key is configured."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key if api_key is not None else config.CALCOM_API_KEY
        self.base_url = (base_url or config.CALCOM_API_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=8)

    @property
    def is_mock(self) -> bool:
        return not self.api_key

    def _headers(self, version: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "cal-api-version": version,
            "Content-Type": "application/json",
        }

    async def get_open_slots(
        self,
        event_type_id: Optional[int],
        start: datetime,
        end: datetime,
        timezone: str = "UTC",
    ) -> List[RawSlot]:
        """Open slots in [start, end). Raises CalendarUnavailableError if unreachable."""
        if self.is_mock:
            return self._get_mock_availability(start, end)

        params = {
            "eventTypeId": str(event_type_id),
            "start": start.isoformat() + "Z",
            "end": end.isoformat() + "Z",
            "timeZone": timezone,
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(
                    f"{self.base_url}/slots", params=params, headers=self._headers(SLOTS_API_VERSION)
                ) as response:
                    if response.status >= 400:
                        body = await response.text()
                        raise CalendarUnavailableError(f"Cal.com slots returned {response.status}: {body[:200]}")
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CalendarUnavailableError(f"Cal.com unreachable: {e}") from e

        return self._parse_slots(data.get("data", data))

    def _parse_slots(self, payload) -> List[RawSlot]:
        """Accepts {"2024-05-01": [{"start": ...}], ...} or {"slots": [...]}."""
        if isinstance(payload, dict) and "slots" in payload:
            payload = payload["slots"]
        groups = payload.values() if isinstance(payload, dict) else [payload]

        slots = []
        for group in groups:
            for item in group or []:
                start = parse_datetime(item.get("start") or item.get("startTime"))
                if start is None:
                    continue
                end = parse_datetime(item.get("end") or item.get("endTime")) or start + timedelta(minutes=MOCK_SLOT_MINUTES)
                slots.append(RawSlot(start, end))
        slots.sort(key=lambda s: s.start)
        return slots

    def _get_mock_availability(self, start: datetime, end: datetime) -> List[RawSlot]:
        slots = []
        current = start.replace(second=0, microsecond=0)
        if current.minute % 30:
            current += timedelta(minutes=30 - current.minute % 30)
        while current < end:
            slots.append(RawSlot(current, current + timedelta(minutes=MOCK_SLOT_MINUTES)))
            current += timedelta(minutes=30)
        return slots

    async def reserve_slot(self, event_type_id: Optional[int], start: datetime, end: datetime) -> Optional[str]:
        """Hold the slot with the provider. Optional: failure is logged, not raised."""
        if self.is_mock:
            return None
        payload = {
            "eventTypeId": event_type_id,
            "slotStart": start.isoformat() + "Z",
            "slotDuration": int((end - start).total_seconds() // 60),
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    f"{self.base_url}/slots/reservations", json=payload, headers=self._headers(SLOTS_API_VERSION)
                ) as response:
                    if response.status >= 400:
                        logger.warning("Slot reservation failed (%s): %s", response.status, (await response.text())[:200])
                        return None
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Slot reservation error: %s", e)
            return None
        return (data.get("data") or {}).get("reservationUid")

    async def create_booking(
        self,
        event_type_id: Optional[int],
        start: datetime,
        attendee: Dict,
        timezone: str = "UTC",
        notes: str = "",
        reservation_uid: Optional[str] = None,
    ) -> CalendarBooking:
        if self.is_mock:
            uid = "mock_" + start.strftime("%Y%m%d%H%M%S")
            logger.info("[MOCK CALENDAR] Booking %s for %s", uid, attendee.get("name"))
            return CalendarBooking(uid=uid, mock=True)

        payload = {
            "eventTypeId": event_type_id,
            "start": start.isoformat() + "Z",
            "attendee": {
                "name": attendee.get("name") or "Customer",
                "email": attendee.get("email"),
                "phoneNumber": attendee.get("phone"),
                "timeZone": timezone,
                "language": "en",
            },
            "location": attendee.get("address"),
            "bookingFieldsResponses": {"notes": notes} if notes else {},
        }
        if reservation_uid:
            payload["reservationUid"] = reservation_uid

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    f"{self.base_url}/bookings", json=payload, headers=self._headers(BOOKINGS_API_VERSION)
                ) as response:
                    if response.status >= 400:
                        body = await response.text()
                        raise CalendarWriteError(f"Cal.com booking failed ({response.status}): {body[:200]}")
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CalendarWriteError(f"Cal.com unreachable: {e}") from e

        booking = data.get("data") or data
        uid = booking.get("uid")
        if not uid:
            raise CalendarWriteError("Cal.com booking response had no uid")
        return CalendarBooking(uid=uid)

    async def confirm_booking(self, uid: str) -> bool:
        if self.is_mock or uid.startswith("mock_"):
            return True
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    f"{self.base_url}/bookings/{uid}/confirm", headers=self._headers(BOOKINGS_API_VERSION)
                ) as response:
                    if response.status >= 400:
                        logger.warning("Confirm failed for %s (may already be confirmed): %s", uid, response.status)
                        return False
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Confirm error for %s: %s", uid, e)
            return False

    async def cancel_booking(self, uid: str, reason: str = "") -> bool:
        """Release a provider booking. Failure is logged, not raised."""
        if self.is_mock or uid.startswith("mock_"):
            logger.info("[MOCK CALENDAR] Canceled %s", uid)
            return True
        payload = {"cancellationReason": reason} if reason else {}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    f"{self.base_url}/bookings/{uid}/cancel", json=payload, headers=self._headers(BOOKINGS_API_VERSION)
                ) as response:
                    if response.status >= 400:
                        logger.warning("Cancel failed for %s (%s): %s", uid, response.status, (await response.text())[:200])
                        return False
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Cancel error for %s: %s", uid, e)
            return False

    async def book(
        self,
        event_type_id: Optional[int],
        start: datetime,
        end: datetime,
        attendee: Dict,
        timezone: str = "UTC",
        notes: str = "",
    ) -> CalendarBooking:
        """Reserve, create, then confirm. Raises CalendarWriteError if creation fails."""
        reservation_uid = await self.reserve_slot(event_type_id, start, end)
        booking = await self.create_booking(event_type_id, start, attendee, timezone, notes, reservation_uid)
        await self.confirm_booking(booking.uid)
        return booking


calendar_service = CalendarService()
