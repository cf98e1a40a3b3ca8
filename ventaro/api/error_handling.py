from __future__ import annotations

from typing import Any, Optional, Protocol

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ventaro.api.pipeline import client_identity
from ventaro.api.schemas import Envelope, ErrorBody
from ventaro.config import get_settings
from ventaro.logging import get_correlation_id, get_logger, sanitize_error_message
from ventaro.service.errors import (
    SAFE_MESSAGES,
    ErrorKind,
    ErrorSeverity,
    ServiceError,
    ValidationError,
)

logger = get_logger(__name__)

_KIND_FOR_STATUS = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.AUTHORIZATION,
    404: ErrorKind.NOT_FOUND,
    405: ErrorKind.NOT_FOUND,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMIT,
    502: ErrorKind.EXTERNAL_API,
}


class MonitoringSink(Protocol):
    """Receives errors at or above the configured severity threshold."""

    def capture(
        self,
        error: BaseException,
        *,
        severity: ErrorSeverity,
        request_id: str,
        context: dict[str, Any],
    ) -> None: ...


class LoggingMonitoringSink:
    """Default sink: a dedicated structured log line that alerting can key on."""

    def capture(
        self,
        error: BaseException,
        *,
        severity: ErrorSeverity,
        request_id: str,
        context: dict[str, Any],
    ) -> None:
        logger.critical(
            "monitoring_alert",
            severity=severity.value,
            error_type=type(error).__name__,
            request_id=request_id,
            **context,
        )


_monitoring_sink: MonitoringSink = LoggingMonitoringSink()


def set_monitoring_sink(sink: MonitoringSink) -> None:
    global _monitoring_sink
    _monitoring_sink = sink


def get_monitoring_sink() -> MonitoringSink:
    return _monitoring_sink


def _severity_threshold() -> ErrorSeverity:
    raw = get_settings().monitoring_severity_threshold
    try:
        return ErrorSeverity(raw.lower())
    except ValueError:
        logger.warning("monitoring_threshold_invalid", value=raw)
        return ErrorSeverity.CRITICAL


def _request_id() -> str:
    return get_correlation_id() or "unknown"


def error_response(
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    *,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    request_id = _request_id()
    envelope = Envelope(
        status="error",
        error=ErrorBody(code=code, message=message, details=details),
        request_id=request_id,
    )
    response_headers = {"X-Request-ID": request_id, **(headers or {})}
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=response_headers
    )


def _forward_to_monitoring(
    error: BaseException, severity: ErrorSeverity, request: Request
) -> None:
    if severity.rank < _severity_threshold().rank:
        return
    _monitoring_sink.capture(
        error,
        severity=severity,
        request_id=_request_id(),
        context={"path": request.url.path, "method": request.method},
    )


def render_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    """Log the full cause and answer with the safe message for its kind."""
    log_context = {
        "path": request.url.path,
        "method": request.method,
        "status_code": exc.status_code,
        "error_code": exc.error_code,
        "severity": exc.severity.value,
        "message": exc.message,
        "detail": exc.detail,
    }
    if exc.kind in (ErrorKind.AUTHENTICATION, ErrorKind.AUTHORIZATION):
        client_ip = client_identity(request, get_settings().trusted_proxies)
        logger.warning("security_error", client_ip=client_ip, **log_context)
    elif exc.status_code >= 500:
        logger.error("service_error", **log_context)
    else:
        logger.info("service_error", **log_context)
    _forward_to_monitoring(exc, exc.severity, request)

    details: Optional[dict[str, Any]] = None
    if isinstance(exc, ValidationError) and exc.field_errors:
        details = dict(exc.field_errors)
    if get_settings().is_development:
        details = dict(details or {})
        details["debug"] = {
            "message": sanitize_error_message(exc.message),
            "detail": exc.detail,
        }
    headers = getattr(exc, "headers", None)
    return error_response(
        exc.status_code, exc.error_code, exc.safe_message, details, headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers mapping every failure onto the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        return render_service_error(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        field_errors: dict[str, list[str]] = {}
        for item in exc.errors():
            loc = [str(part) for part in item.get("loc", ()) if part not in ("body", "query")]
            field_errors.setdefault(".".join(loc) or "body", []).append(item.get("msg", "invalid"))
        logger.info("request_validation_error", path=request.url.path, fields=sorted(field_errors))
        return error_response(
            400,
            ErrorKind.VALIDATION.value,
            SAFE_MESSAGES[ErrorKind.VALIDATION],
            field_errors,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        kind = _KIND_FOR_STATUS.get(exc.status_code, ErrorKind.INTERNAL)
        if exc.status_code >= 500:
            logger.error("http_error", path=request.url.path, status_code=exc.status_code)
        headers = dict(exc.headers) if exc.headers else None
        return error_response(
            exc.status_code, kind.value, SAFE_MESSAGES[kind], headers=headers
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        _forward_to_monitoring(exc, ErrorSeverity.CRITICAL, request)
        details = None
        if get_settings().is_development:
            details = {"debug": {"message": sanitize_error_message(str(exc))}}
        return error_response(
            500, ErrorKind.INTERNAL.value, SAFE_MESSAGES[ErrorKind.INTERNAL], details
        )
