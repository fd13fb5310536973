"""Google Places service module.

Provides cached access to Google Places search, details, photos, nearby
search and local conditions.
"""

from .service import GooglePlacesService, PlacesAPIError, NEARBY_TYPES

__all__ = [
    "GooglePlacesService",
    "PlacesAPIError",
    "NEARBY_TYPES",
]
