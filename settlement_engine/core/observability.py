from __future__ import annotations

import logging
import os
import time
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Deque

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import TimeoutError as SATimeoutError
from starlette.responses import Response

from settlement_engine.services.errors import (
    DuplicateError,
    ExternalServiceError,
    InvalidTransitionError,
    MatchAmbiguousError,
    NotFoundError,
    ReconciliationError,
    ValidationError,
)
from settlement_engine.services.entity_locks import EntityLockTimeout

_APP_START_MONOTONIC = time.monotonic()

_LATENCY_WINDOW = int(os.getenv("LATENCY_METRICS_WINDOW", "200"))
_LATENCY_LOG_EVERY = int(os.getenv("LATENCY_METRICS_LOG_EVERY", "50"))
_LATENCY_LOCK = Lock()
_LATENCY_BUCKETS: dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=_LATENCY_WINDOW))

_SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "2000"))

_CRITICAL_ENDPOINTS: list[tuple[str, str, str]] = [
    ("POST", "/reconciliation/runs", "reconciliation.run"),
    ("POST", "/gateway/events", "gateway.events"),
]

_ERROR_STATUS: list[tuple[type[ReconciliationError], int]] = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (MatchAmbiguousError, 409),
    (DuplicateError, 409),
    (ExternalServiceError, 502),
]


def _critical_label_for(method: str, path: str) -> str | None:
    for m, suffix, label in _CRITICAL_ENDPOINTS:
        if method == m and path.endswith(suffix):
            return label
    return None


def _pool_status() -> str | None:
    try:
        from settlement_engine.database import engine

        return engine.pool.status()
    except Exception:
        return None


def _percentile(values: list[float], pct: float) -> float:
    if not values:
        return 0.0
    s = sorted(values)
    k = int(round((pct / 100.0) * (len(s) - 1)))
    k = max(0, min(k, len(s) - 1))
    return float(s[k])


def _record_latency(label: str | None, duration_ms: float, logger: logging.Logger | None = None) -> None:
    if not label:
        return
    with _LATENCY_LOCK:
        bucket = _LATENCY_BUCKETS[label]
        bucket.append(float(duration_ms))
        if len(bucket) < _LATENCY_LOG_EVERY:
            return
        if len(bucket) % _LATENCY_LOG_EVERY != 0:
            return
        values = list(bucket)
    if logger:
        logger.info(
            "http_latency",
            extra={
                "endpoint": label,
                "p50_ms": round(_percentile(values, 50), 2),
                "p95_ms": round(_percentile(values, 95), 2),
                "p99_ms": round(_percentile(values, 99), 2),
                "window": len(values),
            },
        )


def uptime_seconds() -> float:
    return max(0.0, time.monotonic() - _APP_START_MONOTONIC)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat(timespec="seconds") + "Z"


def _app_logger(request: Request) -> logging.Logger:
    return getattr(request.app.state, "logger", None) or logging.getLogger("settlement")


def status_code_for(exc: ReconciliationError) -> int:
    for cls, code in _ERROR_STATUS:
        if isinstance(exc, cls):
            return code
    return 400


async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    """Map engine errors to structured 4xx/5xx responses."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    status_code = status_code_for(exc)

    content: dict = {"detail": str(exc), "code": exc.code, "request_id": request_id}
    if isinstance(exc, ValidationError) and exc.field_name:
        content["field"] = exc.field_name
    if isinstance(exc, MatchAmbiguousError):
        content["candidate_ids"] = exc.candidate_ids
    if isinstance(exc, DuplicateError):
        content["existing_payment_id"] = exc.existing_payment_id
    if isinstance(exc, ExternalServiceError):
        content["service"] = exc.service

    _app_logger(request).warning(
        "request_rejected",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "code": exc.code,
            "status_code": status_code,
        },
    )
    return JSONResponse(status_code=status_code, content=content, headers={"X-Request-ID": request_id})


async def entity_lock_timeout_handler(request: Request, exc: EntityLockTimeout) -> JSONResponse:
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    _app_logger(request).warning(
        "entity_lock_timeout", extra={"request_id": request_id, "path": request.url.path, "error": str(exc)}
    )
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "code": "ENTITY_LOCKED", "request_id": request_id},
        headers={"X-Request-ID": request_id, "Retry-After": "5"},
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler that returns a structured error response.

    This handler catches all unhandled exceptions and returns a clean
    JSON response without exposing internal details to the client.
    """
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())

    extra = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "exception_type": type(exc).__name__,
    }
    _app_logger(request).exception("unhandled_exception", extra=extra)

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error. Please try again later.",
            "request_id": request_id,
            "code": "INTERNAL_SERVER_ERROR",
        },
        headers={"X-Request-ID": request_id},
    )


async def request_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Request-level logging middleware.

    Adds/propagates X-Request-ID and measures request duration.
    Does not log request/response bodies.
    """

    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    logger = _app_logger(request)

    start = time.perf_counter()
    label = _critical_label_for(request.method, request.url.path)

    try:
        response: Response = await call_next(request)
    except SATimeoutError as exc:
        duration_ms = (time.perf_counter() - start) * 1000.0
        _record_latency(label, duration_ms, logger)
        logger.error(
            "db_pool_timeout",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "duration_ms": round(duration_ms, 2),
                "pool_status": _pool_status(),
                "error": str(exc),
            },
        )
        raise
    except Exception:
        duration_ms = (time.perf_counter() - start) * 1000.0
        _record_latency(label, duration_ms, logger)
        logger.exception(
            "http_request_failed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "duration_ms": round(duration_ms, 2),
            },
        )
        raise

    duration_ms = (time.perf_counter() - start) * 1000.0
    _record_latency(label, duration_ms, logger)

    if duration_ms >= _SLOW_REQUEST_MS:
        logger.info(
            "slow_request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "duration_ms": round(duration_ms, 2),
                "pool_status": _pool_status(),
            },
        )

    # Avoid noisy logging for liveness endpoints.
    if request.url.path not in {"/health", "/healthz"}:
        logger.info(
            "http_request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "endpoint": label,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )

    response.headers.setdefault("X-Request-ID", request_id)
    return response
