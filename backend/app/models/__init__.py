"""Pydantic models shared across the API."""

from .core import (
    ApiResponse,
    AppError,
    CacheSizeResponse,
    CacheStatsResponse,
    CategorySizeModel,
    Coordinates,
    ErrorCode,
)

__all__ = [
    "ApiResponse",
    "AppError",
    "CacheSizeResponse",
    "CacheStatsResponse",
    "CategorySizeModel",
    "Coordinates",
    "ErrorCode",
]
