"""Google Places / Maps API client with response caching.

Every public method goes through ``CacheService.with_cache`` so repeated
requests for the same place, query or coordinates are answered from the
cache until the category TTL runs out.

Cache identifiers:
- search_results: the raw query string
- place_details / popular_times: the Google place_id
- photos: comma-joined photo references (plus max width)
- nearby_places: ``{kind}_{lat},{lng},{radius}`` (``lat,lng,radius`` for attractions)
- weather: ``lat,lng``
"""

import logging
import os
import time
from typing import Any, Optional

import httpx

from app.models import Coordinates
from app.services.cache import CacheCategory, CacheService

logger = logging.getLogger(__name__)


class PlacesAPIError(Exception):
    """Raised when the Google Maps API cannot be reached or errors out."""


# nearby search kind -> Google place type
NEARBY_TYPES = {
    "attractions": "tourist_attraction",
    "hotels": "lodging",
    "restaurants": "restaurant",
}

DETAIL_FIELDS = (
    "name,rating,formatted_phone_number,formatted_address,opening_hours,"
    "website,price_level,review,photo,type,url"
)


class GooglePlacesService:
    """Google Places client backed by the response cache.

    Uses a shared httpx client. Upstream "no result" statuses come back as
    None and are never cached; transport and HTTP errors raise PlacesAPIError.
    """

    BASE_URL = "https://maps.googleapis.com/maps/api"

    def __init__(
        self,
        cache: CacheService,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key or os.getenv("GOOGLE_PLACES_API_KEY")
        if not self._api_key:
            raise ValueError("GOOGLE_PLACES_API_KEY is required for the places service")
        self._cache = cache
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.BASE_URL,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, params: dict[str, Any]) -> dict:
        client = self._get_client()
        try:
            response = await client.get(path, params={**params, "key": self._api_key})
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.warning(f"[PLACES] {path} failed: {type(e).__name__}")
            raise PlacesAPIError(f"Google Maps request to {path} failed") from e

    def _photo_url(self, reference: str, max_width: int) -> str:
        return (
            f"{self.BASE_URL}/place/photo?maxwidth={max_width}"
            f"&photo_reference={reference}&key={self._api_key}"
        )

    # ─── Search & details ───

    async def search_place(self, query: str) -> dict | None:
        """Find the best matching place for a free-text destination query."""
        query = query.strip()
        if not query:
            raise ValueError("query cannot be empty")

        async def fetch() -> dict | None:
            data = await self._get_json(
                "/place/textsearch/json", {"query": query, "language": "en"}
            )
            if data.get("status") != "OK" or not data.get("results"):
                logger.info(f"[PLACES] No results for '{query}': {data.get('status')}")
                return None
            place = data["results"][0]
            return {
                "name": place.get("name"),
                "location": place.get("geometry", {}).get("location"),
                "place_id": place.get("place_id"),
                "rating": place.get("rating"),
                "formatted_address": place.get("formatted_address"),
                "types": place.get("types", []),
            }

        return await self._cache.with_cache(CacheCategory.SEARCH_RESULTS, query, fetch)

    async def get_place_details(self, place_id: str) -> dict | None:
        """Get structured details (contact, hours, photos, reviews) for a place."""
        if not place_id:
            raise ValueError("place_id cannot be empty")

        async def fetch() -> dict | None:
            data = await self._get_json(
                "/place/details/json", {"place_id": place_id, "fields": DETAIL_FIELDS}
            )
            if data.get("status") != "OK":
                logger.info(f"[PLACES] Details unavailable for {place_id}: {data.get('status')}")
                return None
            details = data.get("result", {})
            return {
                "name": details.get("name"),
                "address": details.get("formatted_address"),
                "phone": details.get("formatted_phone_number"),
                "rating": details.get("rating"),
                "website": details.get("website"),
                "url": details.get("url"),
                "price_level": details.get("price_level"),
                "photos": [
                    {
                        "reference": photo.get("photo_reference"),
                        "width": photo.get("width"),
                        "height": photo.get("height"),
                        "attribution": (photo.get("html_attributions") or [None])[0],
                    }
                    for photo in details.get("photos", [])
                ],
                "reviews": [
                    {
                        "author": review.get("author_name"),
                        "rating": review.get("rating"),
                        "text": review.get("text"),
                        "time": review.get("time"),
                        "author_url": review.get("author_url"),
                    }
                    for review in details.get("reviews", [])
                ],
                "opening_hours": details.get("opening_hours", {}).get("weekday_text", []),
            }

        return await self._cache.with_cache(CacheCategory.PLACE_DETAILS, place_id, fetch)

    async def get_photo_urls(self, photo_references: list[str], max_width: int = 800) -> list[dict]:
        """Build full-size and thumbnail photo URLs for photo references."""
        if not photo_references:
            return []

        async def build() -> list[dict]:
            return [
                {
                    "url": self._photo_url(ref, max_width),
                    "thumbnail": self._photo_url(ref, 400),
                    "reference": ref,
                }
                for ref in photo_references
            ]

        identifier = ",".join(photo_references)
        if max_width != 800:
            identifier = f"{identifier}_{max_width}"
        return await self._cache.with_cache(CacheCategory.PHOTOS, identifier, build)

    # ─── Nearby ───

    async def get_nearby_places(
        self, location: Coordinates, radius: int = 5000, kind: str = "attractions"
    ) -> list[dict]:
        """List places of one kind (attractions, hotels, restaurants) near a point."""
        place_type = NEARBY_TYPES.get(kind)
        if place_type is None:
            raise ValueError(f"Unknown nearby kind: {kind}")

        coords = f"{location.lat},{location.lng}"

        async def fetch() -> list[dict] | None:
            data = await self._get_json(
                "/place/nearbysearch/json",
                {"location": coords, "radius": radius, "type": place_type, "language": "en"},
            )
            status = data.get("status")
            if status == "ZERO_RESULTS":
                return []
            if status != "OK":
                logger.info(f"[PLACES] Nearby {kind} failed at {coords}: {status}")
                return None
            return [
                {
                    "name": place.get("name"),
                    "place_id": place.get("place_id"),
                    "location": place.get("geometry", {}).get("location"),
                    "rating": place.get("rating"),
                    "price_level": place.get("price_level"),
                    "types": place.get("types", []),
                    "photos": [p.get("photo_reference") for p in place.get("photos", [])],
                }
                for place in data.get("results", [])
            ]

        identifier = f"{coords},{radius}"
        if kind != "attractions":
            identifier = f"{kind}_{identifier}"
        places = await self._cache.with_cache(CacheCategory.NEARBY_PLACES, identifier, fetch)
        return places or []

    # ─── Local conditions ───

    async def get_place_weather(self, location: Coordinates) -> dict | None:
        """Get timezone and address context for a location."""
        coords = f"{location.lat},{location.lng}"

        async def fetch() -> dict | None:
            geocode = await self._get_json("/geocode/json", {"latlng": coords})
            if geocode.get("status") != "OK" or not geocode.get("results"):
                return None
            timezone = await self._get_json(
                "/timezone/json", {"location": coords, "timestamp": int(time.time())}
            )
            return {
                "timezone": timezone,
                "address_components": geocode["results"][0].get("address_components", []),
            }

        return await self._cache.with_cache(CacheCategory.WEATHER, coords, fetch)

    async def get_popular_times(self, place_id: str) -> dict | None:
        """Get current opening hours and crowd data for a place."""
        if not place_id:
            raise ValueError("place_id cannot be empty")

        async def fetch() -> dict | None:
            data = await self._get_json(
                "/place/details/json",
                {"place_id": place_id, "fields": "current_opening_hours,utc_offset,popular_times"},
            )
            if data.get("status") != "OK":
                return None
            result = data.get("result", {})
            return {
                "current_opening_hours": result.get("current_opening_hours"),
                "popular_times": result.get("popular_times"),
            }

        return await self._cache.with_cache(CacheCategory.POPULAR_TIMES, place_id, fetch)
