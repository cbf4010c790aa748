"""
Geocoding and drive-time collaborators (Google Maps).

Both degrade to None when the API key is missing or the service fails, so the
engine can fall back to straight-line distance or priority-only ranking.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Optional

import aiohttp

from .. import config
from ..logging_context import get_call_logger

logger = get_call_logger(__name__)

EARTH_RADIUS_MILES = 3959.0
GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=5)


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


def haversine_miles(a: Coordinates, b: Coordinates) -> float:
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def straight_line_minutes(a: Coordinates, b: Coordinates, speed_mph: float = None) -> float:
    speed = speed_mph or config.FALLBACK_SPEED_MPH
    return haversine_miles(a, b) / speed * 60


class Geocoder:
    """Address -> coordinates."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else config.GOOGLE_MAPS_API_KEY

    async def geocode(self, address: str) -> Optional[Coordinates]:
        if not self.api_key or not address:
            return None
        try:
            async with aiohttp.ClientSession(timeout=REQUEST_TIMEOUT) as session:
                async with session.get(GEOCODE_URL, params={"address": address, "key": self.api_key}) as response:
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Geocoding failed for %r: %s", address, e)
            return None

        if data.get("status") == "OK" and data.get("results"):
            location = data["results"][0]["geometry"]["location"]
            return Coordinates(lat=location["lat"], lng=location["lng"])

        logger.info("No geocoding result for %r (%s)", address, data.get("status"))
        return None


class RoutingProvider:
    """Coordinates pair -> drive time in minutes."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else config.GOOGLE_MAPS_API_KEY

    async def drive_minutes(self, origin: Coordinates, destination: Coordinates) -> Optional[float]:
        if not self.api_key:
            return None
        params = {
            "origins": f"{origin.lat},{origin.lng}",
            "destinations": f"{destination.lat},{destination.lng}",
            "units": "imperial",
            "key": self.api_key,
        }
        try:
            async with aiohttp.ClientSession(timeout=REQUEST_TIMEOUT) as session:
                async with session.get(DISTANCE_MATRIX_URL, params=params) as response:
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Distance matrix failed: %s", e)
            return None

        if data.get("status") == "OK" and data.get("rows"):
            element = data["rows"][0]["elements"][0]
            if element and element.get("status") == "OK":
                return math.ceil(element["duration"]["value"] / 60)
        return None


class CachingGeocoder:
    """Per-request cache in front of a Geocoder; failures are cached too."""

    def __init__(self, geocoder: Geocoder):
        self.geocoder = geocoder
        self._cache = {}

    async def geocode(self, address: Optional[str]) -> Optional[Coordinates]:
        if not address:
            return None
        key = address.strip().lower()
        if key not in self._cache:
            try:
                self._cache[key] = await self.geocoder.geocode(address)
            except Exception:
                logger.exception("Geocoder raised for %r", address)
                self._cache[key] = None
        return self._cache[key]

    def cached(self, address: Optional[str]) -> Optional[Coordinates]:
        if not address:
            return None
        return self._cache.get(address.strip().lower())
