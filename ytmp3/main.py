"""
FastAPI application for the YouTube to MP3 gateway
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ytmp3 import __version__
from ytmp3.config import settings
from ytmp3.errors import DownloadError
from ytmp3.schemas import HealthResponse

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.LOG_LEVEL, logging.INFO)),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("application_startup", message="MP3 gateway starting up")

    # Validate configuration
    try:
        settings.validate()
        logger.info(
            "config_validated",
            ffmpeg=settings.FFMPEG_PATH,
            yt_dlp=settings.YTDLP_BINARY,
            temp_dir=settings.TEMP_DIR,
            playlist_concurrency=settings.PLAYLIST_CONCURRENCY,
            max_concurrent_transcodes=settings.MAX_CONCURRENT_TRANSCODES,
        )
    except ValueError as e:
        logger.error("config_validation_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown", message="MP3 gateway shutting down")


# Initialize FastAPI app
app = FastAPI(
    title="YouTube MP3 Gateway",
    description="Converts YouTube videos and playlists to MP3",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list or ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests"""
    start_time = time.time()
    request_id = uuid.uuid4().hex[:12]
    request.state.request_id = request_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)

    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None
    )

    try:
        response = await call_next(request)
        process_time = time.time() - start_time

        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time=f"{process_time:.3f}s"
        )

        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(
            "request_failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            process_time=f"{process_time:.3f}s"
        )
        raise


@app.exception_handler(DownloadError)
async def download_error_handler(request: Request, exc: DownloadError):
    """Pipeline errors that escaped a route"""
    exc.log_error(path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are client errors"""
    logger.warning("request_validation_failed", path=request.url.path, errors=str(exc.errors())[:500])
    return JSONResponse(status_code=400, content={"error": "Invalid YouTube URL."})


# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_type=type(exc).__name__
    )

    return JSONResponse(
        status_code=500,
        content={"error": f"Processing failed: {exc}" if settings.DEBUG else "Processing failed."}
    )


# Health check endpoint
@app.get("/health", tags=["Health"], response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint

    Returns:
        dict: Health status of the API
    """
    return {
        "status": "healthy",
        "service": "ytmp3",
        "version": __version__
    }


# Include routers
from ytmp3.routers import download

app.include_router(download.router)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    return {
        "message": "YouTube MP3 Gateway",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "download": "POST /download"
        }
    }


def run():
    """Console entry point"""
    import uvicorn
    uvicorn.run(
        "ytmp3.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.DEBUG,
        log_level="info"
    )


if __name__ == "__main__":
    run()
