"""
FastAPI application for bilinote.

Turns a Bilibili video URL into a Markdown study note: the subtitle pipeline
in ``bilinote.service`` extracts and validates the transcript, then
``bilinote.notes`` asks the configured LLM for a note (with a plain
fallback). Provider keys and the Bilibili cookie can be inspected and
updated at runtime through ``/api/config``.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from bilinote import __version__
from bilinote.config import settings
from bilinote.config_store import ConfigStore
from bilinote.errors import (
    ExtractionCancelled,
    ExtractionError,
    InvalidUrl,
    NetworkError,
    NoSubtitlesAvailable,
    UpstreamRejected,
)
from bilinote.middleware import RequestIdMiddleware, SecurityHeadersMiddleware
from bilinote.notes import NoteGenerator
from bilinote.service import ExtractionResult, get_extractor
from bilinote.utils import sanitize_for_log

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)
logger = structlog.get_logger()

# Library modules log through the standard logging module
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

# Runtime configuration; /api/config swaps its Settings on update
config_store = ConfigStore(settings)

# How often a running request checks whether its client went away
DISCONNECT_POLL_SECONDS = 0.5


def get_remote_address_proxied(request: Request) -> str:
    """Get client address, considering X-Forwarded-For header."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def processing_rate_limit() -> str:
    return f"{config_store.config.rate_limit_per_minute}/minute"


limiter = Limiter(key_func=get_remote_address_proxied, enabled=settings.rate_limit_enabled)

_app_start_time = time.time()


# ============================================================================
# Lifespan Context Manager
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan events."""
    config = config_store.config
    logger.info("=" * 60)
    logger.info("Bilibili Study Notes Service Starting")
    logger.info("=" * 60)
    logger.info(f"  - AI provider: {config.ai_provider}")
    logger.info(f"  - API key: {'configured' if config.active_api_key else 'missing'}")
    if config.bilibili_cookie:
        logger.info(f"  - Bilibili cookie: configured ({len(config.bilibili_cookie)} characters)")
    else:
        logger.info("  - Bilibili cookie: missing, AI subtitles will not be listed")
    logger.info(f"  - Extraction attempts: {config.max_retries + 1}")
    logger.info(f"  - Rate limit: {config.rate_limit_per_minute}/minute "
                f"({'enabled' if config.rate_limit_enabled else 'disabled'})")
    logger.info("=" * 60)
    yield


app = FastAPI(
    title="Bilibili Study Notes",
    description="Extract Bilibili subtitles and turn them into Markdown study notes",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# ============================================================================
# Middleware Configuration
# ============================================================================


def configure_middleware():
    """Configure middleware based on settings."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    if settings.enable_security_headers:
        app.add_middleware(SecurityHeadersMiddleware, hsts_max_age=settings.hsts_max_age)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


configure_middleware()


# ============================================================================
# Pydantic Models
# ============================================================================


class ProcessRequest(BaseModel):
    """Request body for note generation."""

    model_config = ConfigDict(populate_by_name=True)

    video_url: str | None = Field(
        None, alias="videoUrl", max_length=500, description="Bilibili video URL or b23.tv link"
    )


class ProcessResponse(BaseModel):
    """Generated study note."""

    success: bool = Field(True, description="Always true on 200")
    title: str = Field(..., description="Video title")
    markdown: str = Field(..., description="Markdown study note")
    ai_generated: bool = Field(..., description="False when the plain fallback note was used")


class SubtitleResponse(BaseModel):
    """Validated transcript without note generation."""

    bvid: str = Field(..., description="Bilibili BV code")
    title: str = Field(..., description="Video title")
    subtitle: str = Field(..., description="Newline-joined transcript")
    length: int = Field(..., description="Transcript length in characters")
    track: str = Field(..., description="Label of the subtitle track used")
    match_rate: float = Field(..., description="Keyword match rate that accepted the transcript")
    attempts: int = Field(..., description="Extraction attempts used")


class ConfigUpdateRequest(BaseModel):
    """Request body for configuration updates."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: str | None = Field(None, alias="apiKey")
    provider: str = Field("qwen", pattern=r"^(qwen|kimi)$")
    model: str | None = None
    bilibili_cookie: str | None = Field(None, alias="bilibiliCookie")


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    detail: str | None = Field(None, description="Additional error details")


class HealthResponse(BaseModel):
    """Response model for enhanced health check."""

    status: str = Field(..., description="Service status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    timestamp: float = Field(..., description="Current Unix timestamp")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
    provider: str = Field(..., description="Configured AI provider")
    has_api_key: bool = Field(..., description="Whether the provider key is set")
    has_cookie: bool = Field(..., description="Whether a Bilibili cookie is set")
    rate_limiting: dict = Field(default_factory=dict, description="Rate limiting status")


# ============================================================================
# Exception Handlers
# ============================================================================

ERROR_STATUS_CODES: dict[type[ExtractionError], int] = {
    InvalidUrl: 400,
    NoSubtitlesAvailable: 404,
    NetworkError: 502,
    UpstreamRejected: 502,
    ExtractionCancelled: 499,
}


def status_code_for(exc: ExtractionError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


def error_response(status_code: int, error: str, message: str, detail: str | None = None) -> Response:
    body = ErrorResponse(error=error, message=message, detail=detail)
    return Response(
        content=body.model_dump_json(),
        status_code=status_code,
        media_type="application/json",
    )


@app.exception_handler(ExtractionError)
async def extraction_error_handler(request: Request, exc: ExtractionError):
    """Map pipeline failures to JSON errors; the message is shown to the user as-is."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"Extraction failed ({exc.code}): {sanitize_for_log(exc.message)}")
    else:
        logger.warning(f"Extraction failed ({exc.code}): {sanitize_for_log(exc.message)}")
    return error_response(status_code, exc.code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors with field-level detail."""
    errors = exc.errors()
    logger.warning(f"Validation error: {errors}")

    error_details = []
    for error in errors:
        loc = " -> ".join(str(x) for x in error["loc"])
        error_details.append(f"{loc}: {error['msg']}")

    return error_response(400, "validation_error", "Invalid request parameters", "; ".join(error_details))


# ============================================================================
# Helpers
# ============================================================================


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    """Set ``cancel_event`` once the client disconnects."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected, cancelling extraction")
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def run_extraction(request: Request, video_url: str) -> ExtractionResult:
    """Run the extractor, cancelling it if the caller goes away."""
    extractor = get_extractor(config_store.config)
    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        return await extractor.extract(video_url, cancel_event=cancel_event)
    finally:
        watcher.cancel()


# ============================================================================
# API Endpoints
# ============================================================================


@app.post(
    "/api/process",
    response_model=ProcessResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing or invalid URL"},
        404: {"model": ErrorResponse, "description": "Video has no subtitles"},
        429: {"model": ErrorResponse, "description": "Too many requests"},
        502: {"model": ErrorResponse, "description": "Bilibili request failed"},
    },
    summary="Generate a study note from a Bilibili video",
)
@limiter.limit(processing_rate_limit)
async def process_video(request: Request, payload: ProcessRequest) -> ProcessResponse:
    """
    Extract the subtitles of a Bilibili video and generate a Markdown note.

    **Example:**
    ```bash
    curl -X POST http://localhost:8000/api/process \\
      -H "Content-Type: application/json" \\
      -d '{"videoUrl": "https://www.bilibili.com/video/BV1GJ411x7h7"}'
    ```

    If the AI provider fails the note falls back to a plain Markdown layout
    of the transcript and ``ai_generated`` is false.
    """
    if not payload.video_url:
        raise HTTPException(status_code=400, detail="请提供视频链接")

    logger.info(f"Processing {sanitize_for_log(payload.video_url)}")
    result = await run_extraction(request, payload.video_url)
    logger.info(f"Subtitle extracted: {sanitize_for_log(result.title)} ({len(result.transcript)} characters)")

    generator = NoteGenerator(config_store.config)
    markdown, used_ai = await generator.generate_with_fallback(result.title, result.transcript)

    return ProcessResponse(title=result.title, markdown=markdown, ai_generated=used_ai)


@app.get(
    "/api/subtitles",
    response_model=SubtitleResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid URL"},
        404: {"model": ErrorResponse, "description": "Video has no subtitles"},
        502: {"model": ErrorResponse, "description": "Bilibili request failed"},
    },
    summary="Extract the validated transcript of a Bilibili video",
)
@limiter.limit(processing_rate_limit)
async def get_subtitles(
    request: Request,
    video_url: str = Query(..., max_length=500, description="Bilibili video URL or b23.tv link"),
) -> SubtitleResponse:
    """
    Extract and validate the transcript without generating a note.

    **Example:**
    ```bash
    curl "http://localhost:8000/api/subtitles?video_url=https://www.bilibili.com/video/BV1GJ411x7h7"
    ```
    """
    result = await run_extraction(request, video_url)
    return SubtitleResponse(
        bvid=result.bvid,
        title=result.title,
        subtitle=result.transcript,
        length=len(result.transcript),
        track=result.track.language_label or result.track.language_code,
        match_rate=result.validation.match_rate,
        attempts=result.attempts,
    )


@app.get("/api/config", summary="Current provider, model and cookie configuration")
async def get_config() -> dict:
    return config_store.snapshot()


@app.post("/api/config", summary="Update provider key, model or Bilibili cookie")
async def update_config(payload: ConfigUpdateRequest) -> dict:
    """
    Save configuration.

    Outside production the values are written to the local env file and take
    effect for the next request. In production a guide listing the
    environment variables to set is returned instead.
    """
    try:
        return config_store.update(
            api_key=payload.api_key,
            provider=payload.provider,
            model=payload.model,
            bilibili_cookie=payload.bilibili_cookie,
        )
    except (ValueError, OSError) as e:
        logger.error(f"Failed to save configuration: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to save configuration: {e}")


@app.get("/", summary="Simple health check")
async def root() -> dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "healthy", "service": "bilinote", "version": __version__}


@app.get("/health", response_model=HealthResponse, summary="Enhanced health check")
async def health() -> HealthResponse:
    """Service status, uptime and configuration presence."""
    config = config_store.config
    return HealthResponse(
        status="healthy" if config.active_api_key else "degraded",
        service="bilinote",
        version=__version__,
        timestamp=time.time(),
        uptime_seconds=time.time() - _app_start_time,
        provider=config.ai_provider,
        has_api_key=bool(config.active_api_key),
        has_cookie=bool(config.bilibili_cookie),
        rate_limiting={
            "enabled": limiter.enabled,
            "per_minute": config.rate_limit_per_minute,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
