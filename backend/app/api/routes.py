"""API routes for Travel Explorer.

Two groups of endpoints:
- Cache diagnostics: hit/miss statistics, counter reset, size breakdown
- Places proxy: Google Places search, details, photos, nearby places and
  local conditions, all answered from the response cache when possible

Proxy routes never raise to the client; failures come back in the
``{success, data, error}`` envelope.
"""

import logging
from typing import Any, Awaitable

from fastapi import APIRouter, Query

from app.config import get_settings
from app.models import (
    ApiResponse,
    AppError,
    CacheSizeResponse,
    CacheStatsResponse,
    CategorySizeModel,
    Coordinates,
    ErrorCode,
)
from app.services import (
    CacheService,
    CacheStoreError,
    GooglePlacesService,
    MemoryCacheStore,
    PlacesAPIError,
    RedisCacheStore,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# Service instances
_cache_service: CacheService | None = None
_places_service: GooglePlacesService | None = None


def build_cache_service() -> CacheService:
    """Create a cache service from settings."""
    settings = get_settings()
    if settings.cache_backend == "memory":
        store = MemoryCacheStore()
    else:
        store = RedisCacheStore(settings.redis_url, prefix=settings.cache_key_prefix)
    return CacheService(
        store,
        settings.cache_ttls,
        max_size_bytes=settings.cache_max_size_bytes,
        stale_after=settings.cache_stale_after,
        strict=settings.cache_strict_categories,
    )


def get_cache_service() -> CacheService:
    global _cache_service
    if _cache_service is None:
        _cache_service = build_cache_service()
    return _cache_service


def get_places_service() -> GooglePlacesService:
    global _places_service
    if _places_service is None:
        _places_service = GooglePlacesService(
            get_cache_service(), api_key=get_settings().google_places_api_key
        )
    return _places_service


async def close_services() -> None:
    """Release HTTP and Redis connections held by the service singletons."""
    global _cache_service, _places_service
    if _places_service is not None:
        await _places_service.close()
        _places_service = None
    if _cache_service is not None:
        await _cache_service.close()
        _cache_service = None


# ─── Cache diagnostics ───


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def get_cache_stats() -> CacheStatsResponse:
    """Current cache hit/miss statistics."""
    return CacheStatsResponse(**get_cache_service().stats())


@router.post("/cache/stats/reset", response_model=CacheStatsResponse)
async def reset_cache_stats() -> CacheStatsResponse:
    """Zero the hit/miss counters. Cached entries are kept."""
    cache = get_cache_service()
    cache.reset_stats()
    return CacheStatsResponse(**cache.stats())


@router.get("/cache/size", response_model=CacheSizeResponse)
async def get_cache_size() -> CacheSizeResponse:
    """Entry count and payload bytes per cache category."""
    cache = get_cache_service()
    max_size = get_settings().cache_max_size_bytes
    try:
        sizes = await cache.size_by_category()
    except CacheStoreError as e:
        logger.warning(f"[CACHE] Size query failed: {e}")
        return CacheSizeResponse(max_size_bytes=max_size)

    categories = [
        CategorySizeModel(category=category.value, count=size.count, total_bytes=size.total_bytes)
        for category, size in sorted(sizes.items(), key=lambda item: item[0].value)
    ]
    return CacheSizeResponse(
        categories=categories,
        total_entries=sum(c.count for c in categories),
        total_bytes=sum(c.total_bytes for c in categories),
        max_size_bytes=max_size,
    )


# ─── Places proxy ───


async def _proxy(call: Awaitable[Any], not_found_message: str) -> ApiResponse:
    """Run a places call and wrap the outcome in the response envelope."""
    try:
        data = await call
    except ValueError as e:
        return ApiResponse(
            success=False,
            error=AppError(
                code=ErrorCode.INVALID_INPUT,
                message=str(e),
                user_message="Invalid request. Please check your input.",
            ),
        )
    except PlacesAPIError as e:
        return ApiResponse(
            success=False,
            error=AppError(
                code=ErrorCode.API_ERROR,
                message=str(e),
                user_message="Place data is temporarily unavailable. Please try again.",
            ),
        )

    if data is None:
        return ApiResponse(
            success=False,
            error=AppError(
                code=ErrorCode.NOT_FOUND,
                message=not_found_message,
                user_message=not_found_message,
            ),
        )
    return ApiResponse(success=True, data=data)


def _places_or_error() -> GooglePlacesService | ApiResponse:
    try:
        return get_places_service()
    except ValueError as e:
        logger.error(f"[PLACES] Service unavailable: {e}")
        return ApiResponse(
            success=False,
            error=AppError(
                code=ErrorCode.SERVICE_UNAVAILABLE,
                message=str(e),
                user_message="Place search is not configured on this server.",
            ),
        )


@router.get("/places/search", response_model=ApiResponse)
async def search_place(query: str = Query(..., min_length=1)) -> ApiResponse:
    """Find a destination by free-text query."""
    service = _places_or_error()
    if isinstance(service, ApiResponse):
        return service
    return await _proxy(service.search_place(query), "No destination found.")


@router.get("/places/nearby", response_model=ApiResponse)
async def nearby_places(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius: int = Query(5000, gt=0, le=50000),
    kind: str = Query("attractions"),
) -> ApiResponse:
    """Attractions, hotels or restaurants around a point."""
    service = _places_or_error()
    if isinstance(service, ApiResponse):
        return service
    location = Coordinates(lat=lat, lng=lng)
    return await _proxy(service.get_nearby_places(location, radius, kind), "No nearby places found.")


@router.get("/places/weather", response_model=ApiResponse)
async def place_weather(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
) -> ApiResponse:
    """Timezone and address context for a point."""
    service = _places_or_error()
    if isinstance(service, ApiResponse):
        return service
    location = Coordinates(lat=lat, lng=lng)
    return await _proxy(service.get_place_weather(location), "No local information available.")


@router.get("/places/photos", response_model=ApiResponse)
async def place_photos(
    refs: str = Query(..., min_length=1, description="Comma-separated photo references"),
    max_width: int = Query(800, gt=0, le=1600),
) -> ApiResponse:
    """Photo URLs for a set of photo references."""
    service = _places_or_error()
    if isinstance(service, ApiResponse):
        return service
    references = [ref.strip() for ref in refs.split(",") if ref.strip()]
    return await _proxy(service.get_photo_urls(references, max_width), "No photos found.")


@router.get("/places/{place_id}/popular-times", response_model=ApiResponse)
async def popular_times(place_id: str) -> ApiResponse:
    """Current opening hours and crowd levels for a place."""
    service = _places_or_error()
    if isinstance(service, ApiResponse):
        return service
    return await _proxy(service.get_popular_times(place_id), "Popular times unavailable.")


@router.get("/places/{place_id}", response_model=ApiResponse)
async def place_details(place_id: str) -> ApiResponse:
    """Detailed information for a place.

    Uses cache when available.
    """
    service = _places_or_error()
    if isinstance(service, ApiResponse):
        return service
    return await _proxy(service.get_place_details(place_id), "Place not found.")
