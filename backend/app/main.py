"""Travel Explorer FastAPI Application.

Main entry point for the backend API server. The lifespan handler starts
the cache janitor (expiry sweep + size reclamation) and closes upstream
and Redis connections on shutdown.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.api import router
from app.api.routes import close_services, get_cache_service
from app.config import get_settings
from app.models import ErrorCode
from app.services import CacheJanitor

# Configure logging
logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    janitor = CacheJanitor(
        get_cache_service(),
        sweep_interval=settings.cache_sweep_interval,
        reclaim_interval=settings.cache_reclaim_interval,
    )
    janitor.start()
    yield
    await janitor.shutdown()
    await close_services()


app = FastAPI(
    title="Travel Explorer API",
    description="Destination discovery backed by cached Google Places data",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handlers
@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    """Handle Pydantic validation errors."""
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": {
                "code": ErrorCode.VALIDATION_ERROR.value,
                "message": str(exc),
                "user_message": "Invalid request format. Please check your input.",
            },
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors."""
    logging.getLogger(__name__).exception("Unhandled error")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": ErrorCode.API_ERROR.value,
                "message": str(exc),
                "user_message": "Something went wrong. Please try again.",
            },
        },
    )


# Include API routes
app.include_router(router, prefix="/api")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
