"""FastAPI main application."""

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apps.api.api.health import router as health_router
from apps.api.api.oauth import router as oauth_router
from apps.api.config import get_settings
from apps.api.core.errors import InternalError, InvalidArgumentError, OAuthServiceError
from apps.api.services.oauth_service import build_oauth_service

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    if getattr(app.state, "oauth_service", None) is None:
        app.state.oauth_service = build_oauth_service(settings)
    logger.info(
        "Starting Backbone Integrations API",
        version="1.0.0",
        providers=app.state.oauth_service.registry.names,
    )
    yield
    logger.info("Shutting down Backbone Integrations API")


# Create FastAPI app
app = FastAPI(
    title="Backbone Integrations API",
    description="OAuth connection lifecycle for Google Drive, Box, Dropbox and Slack",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict to specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OAuthServiceError)
async def oauth_error_handler(request: Request, exc: OAuthServiceError):
    """Render service errors as the standard JSON envelope."""
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.message, code=exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Report malformed request input as invalid_argument."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
        problems.append(f"{location}: {error.get('msg')}" if location else error.get("msg", ""))
    error = InvalidArgumentError("; ".join(problems) or "Invalid request")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", path=request.url.path)
    error = InternalError("An unexpected error occurred")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# Include routers
app.include_router(health_router, tags=["Health"])
app.include_router(oauth_router, prefix="/oauth", tags=["OAuth"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Backbone Integrations API",
        "version": "1.0.0",
        "docs": "/docs",
    }
