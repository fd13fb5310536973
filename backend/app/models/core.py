"""Core data models for Travel Explorer.

This module contains the Pydantic models used by the API layer for
coordinates, error envelopes and cache diagnostics.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class Coordinates(BaseModel):
    """Geographic coordinates with validation.

    Latitude must be between -90 and 90 degrees.
    Longitude must be between -180 and 180 degrees.
    """

    lat: float = Field(..., ge=-90, le=90, description="Latitude in degrees")
    lng: float = Field(..., ge=-180, le=180, description="Longitude in degrees")


class ErrorCode(str, Enum):
    """Machine-readable error codes returned to the frontend."""

    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    API_ERROR = "API_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class AppError(BaseModel):
    """Error envelope: a technical message plus one safe to show users."""

    code: ErrorCode
    message: str
    user_message: str


class ApiResponse(BaseModel):
    """Standard response envelope for proxied upstream data."""

    success: bool
    data: Optional[Any] = None
    error: Optional[AppError] = None


class CacheStatsResponse(BaseModel):
    """Snapshot of cache hit/miss counters."""

    hits: int = Field(..., ge=0)
    misses: int = Field(..., ge=0)
    total_requests: int = Field(..., ge=0)
    hit_rate: float = Field(..., ge=0, le=100, description="Hit rate as a percentage")
    up_since: datetime = Field(..., description="When counters were started or last reset")
    uptime_minutes: int = Field(..., ge=0)


class CategorySizeModel(BaseModel):
    """Stored entries and payload bytes for one cache category."""

    category: str
    count: int = Field(..., ge=0)
    total_bytes: int = Field(..., ge=0)


class CacheSizeResponse(BaseModel):
    """Per-category cache size breakdown."""

    categories: list[CategorySizeModel] = Field(default_factory=list)
    total_entries: int = Field(default=0, ge=0)
    total_bytes: int = Field(default=0, ge=0)
    max_size_bytes: int = Field(..., ge=0, description="Ceiling that triggers reclamation")
