from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ventaro.api.error_handling import error_response, register_exception_handlers
from ventaro.api.routes import router
from ventaro.config import get_settings
from ventaro.logging import bind_request_context, get_logger, set_correlation_id
from ventaro.service.errors import SAFE_MESSAGES, ErrorKind
from ventaro.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

# Files that must never be served, whatever is mounted in front of the app
_SENSITIVE_FILES = (
    ".env",
    ".env.local",
    ".env.production",
    "package.json",
    "package-lock.json",
    "pyproject.toml",
    "tsconfig.json",
    "next.config.ts",
)

_CONTENT_SECURITY_POLICY = "; ".join(
    [
        "default-src 'self'",
        "script-src 'self' https://js.stripe.com",
        "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com",
        "img-src 'self' data: https: blob:",
        "font-src 'self' https://fonts.gstatic.com",
        "connect-src 'self' https://api.stripe.com",
        "frame-src 'self' https://js.stripe.com",
        "object-src 'none'",
        "base-uri 'self'",
        "form-action 'self'",
        "frame-ancestors 'none'",
        "upgrade-insecure-requests",
    ]
)

_maintenance_task: asyncio.Task | None = None


async def _run_maintenance(interval_seconds: int) -> None:
    """Sweep expired sessions, tokens, buckets and login records until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            get_runtime().run_maintenance()
        except Exception as exc:
            logger.error("maintenance_sweep_failed", error=str(exc), error_type=type(exc).__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _maintenance_task
    runtime = get_runtime()
    interval = runtime.settings.maintenance_interval_seconds
    if interval > 0:
        _maintenance_task = asyncio.create_task(_run_maintenance(interval))
    logger.info("app_started", version=__version__, maintenance_interval_seconds=interval)

    yield

    if _maintenance_task:
        _maintenance_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _maintenance_task
        _maintenance_task = None
    await get_runtime().close()
    logger.info("runtime_cleanup_complete")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Ventaro AI Storefront", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "Idempotency-Key",
            "X-CSRF-Token",
            "X-Request-ID",
        ],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )

    @app.middleware("http")
    async def reject_unsafe_paths(request: Request, call_next):
        path = request.url.path
        if "../" in path or "..\\" in path:
            logger.warning("path_traversal_rejected", path=path)
            return error_response(400, ErrorKind.VALIDATION.value, SAFE_MESSAGES[ErrorKind.VALIDATION])
        if any(name in path for name in _SENSITIVE_FILES):
            logger.warning("sensitive_path_rejected", path=path)
            return error_response(404, ErrorKind.NOT_FOUND.value, SAFE_MESSAGES[ErrorKind.NOT_FOUND])
        return await call_next(request)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-XSS-Protection", "1; mode=block")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Permissions-Policy", "camera=(), microphone=(), geolocation=()")
        response.headers.setdefault("Content-Security-Policy", _CONTENT_SECURITY_POLICY)
        if request.url.path.startswith("/api/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store")
        if request.url.scheme == "https":
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=31536000; includeSubDomains; preload"
            )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Adopt the caller's X-Request-ID or mint one, and echo it on the response."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        bind_request_context(method=request.method, path=request.url.path)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get("/healthz", tags=["ops"])
    async def healthz():
        runtime = get_runtime()
        return {
            "status": "ok",
            "version": __version__,
            "redis": runtime.cache is not None,
            "payments_configured": runtime.payments.is_configured,
        }

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
