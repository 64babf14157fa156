import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, WebSocket, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from dispatch.config import settings
from dispatch.api.routes import (
    router as api_router,
    get_pipeline,
    get_speaker,
    get_speech_transcriber,
    get_store,
)
from dispatch.api.websocket import websocket_endpoint
from dispatch.middleware.request_logging import RequestLoggingMiddleware
from dispatch.services.database import get_incident_store
from dispatch.services.geocoding import geocoding_service

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

MAX_REQUEST_BYTES = 10 * 1024 * 1024


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting WebSlinger Dispatch")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Debug mode: {settings.debug}")

    settings.validate_config()

    store = get_incident_store()
    await store.initialize()
    logger.info("Incident store initialized")

    yield

    await geocoding_service.close()
    await store.close()
    logger.info("Shutting down WebSlinger Dispatch")


app = FastAPI(
    title="WebSlinger Dispatch API",
    description="Citizen incident reporting with voice reports and proximity alerts",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler to provide consistent error responses.
    Includes request ID for debugging and detailed error context in debug mode.
    """
    request_id = getattr(request.state, 'request_id', 'unknown')

    logger.error(
        f"Unhandled exception in {request.method} {request.url.path} | "
        f"ID: {request_id} | Error: {str(exc)}",
        exc_info=True
    )

    error_detail = {
        "detail": "Internal server error",
        "request_id": request_id,
        "path": str(request.url.path)
    }
    if settings.debug:
        error_detail["error_type"] = exc.__class__.__name__
        error_detail["error_message"] = str(exc)

    return JSONResponse(
        status_code=500,
        content=error_detail,
        headers={"X-Request-ID": request_id}
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Voice reports need the microphone, proximity alerts need geolocation
        response.headers["Permissions-Policy"] = "camera=(), microphone=(self), geolocation=(self)"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


app.add_middleware(SecurityHeadersMiddleware)


@app.middleware("http")
async def limit_request_size(request: Request, call_next):
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > MAX_REQUEST_BYTES:
        return JSONResponse(status_code=413, content={"detail": "Request too large"})
    return await call_next(request)


# GZip compression for responses >= 500 bytes
app.add_middleware(GZipMiddleware, minimum_size=500)

is_wildcard = settings.allowed_origins == ["*"]
if is_wildcard and settings.environment == "production":
    logger.warning(
        "CORS is set to allow ALL origins (*) in production. "
        "Set ALLOWED_ORIGINS to specific domains for security."
    )
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=not is_wildcard,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID", "X-User-Id", "X-User-Name", "X-User-Role"],
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(api_router, prefix="/api", tags=["api"])

# API versioning: mount same router under /api/v1/ as alias
app.include_router(api_router, prefix="/api/v1", tags=["api-v1"])


@app.websocket("/ws/{session_id}")
async def websocket_handler(
    websocket: WebSocket,
    session_id: str,
    store=Depends(get_store),
    pipeline=Depends(get_pipeline),
    speaker=Depends(get_speaker),
    transcriber=Depends(get_speech_transcriber),
):
    """WebSocket endpoint for real-time incident alerts and voice reports."""
    await websocket_endpoint(
        websocket,
        session_id,
        store=store,
        pipeline=pipeline,
        speaker=speaker,
        transcriber=transcriber,
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "WebSlinger Dispatch API",
        "version": "1.0.0",
        "docs": "/docs"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("dispatch.main:app", host=settings.host, port=settings.port, reload=settings.debug)
