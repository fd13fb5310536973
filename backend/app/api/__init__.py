"""HTTP API for Travel Explorer."""

from .routes import router

__all__ = ["router"]
