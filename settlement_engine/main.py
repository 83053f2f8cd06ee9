# ruff: noqa: I001

import logging
import os

from fastapi import FastAPI

from settlement_engine import models  # noqa: F401  (registers tables on Base.metadata)
from settlement_engine.api.router import api_router
from settlement_engine.config import settings
from settlement_engine.core.observability import (
    entity_lock_timeout_handler,
    global_exception_handler,
    reconciliation_error_handler,
    request_logging_middleware,
    uptime_seconds,
    utc_now_iso,
)
from settlement_engine.database import POOL_CONFIG, Base, engine
from settlement_engine.services.entity_locks import EntityLockTimeout
from settlement_engine.services.errors import ReconciliationError
from settlement_engine.services.scheduler import runner as reconciliation_runner

api_prefix = (
    settings.api_prefix
    if settings.api_prefix.startswith("/")
    else f"/{settings.api_prefix}"
    if settings.api_prefix
    else ""
)

logger = logging.getLogger("settlement")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.docs_enabled else None,
    redoc_url="/redoc" if settings.docs_enabled else None,
    openapi_url=(f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
    if settings.docs_enabled
    else None,
)

# Expose logger for middleware without creating circular imports.
app.state.logger = logger

app.add_exception_handler(ReconciliationError, reconciliation_error_handler)
app.add_exception_handler(EntityLockTimeout, entity_lock_timeout_handler)
# Global exception handler - catches all unhandled exceptions and returns structured error
app.add_exception_handler(Exception, global_exception_handler)

# Request-level logging + request correlation id.
app.middleware("http")(request_logging_middleware)

app.include_router(api_router, prefix=api_prefix)


def _create_tables_if_configured() -> None:
    # Schema is created on start for dev/sqlite; production databases are provisioned separately.
    env = str(settings.environment or "dev").lower()
    if env in {"prod", "production", "test"}:
        return
    if not str(settings.database_url).startswith("sqlite"):
        return
    Base.metadata.create_all(bind=engine)


@app.on_event("startup")
def _startup_scheduler():
    try:
        pool_status = None
        try:
            pool_status = engine.pool.status()
        except Exception:
            pool_status = None

        logger.info(
            "runtime_config",
            extra={
                "pid": os.getpid(),
                "web_concurrency": os.getenv("WEB_CONCURRENCY"),
                "db_pool": POOL_CONFIG,
                "db_pool_status": pool_status,
                "reconciliation_mode": settings.reconciliation_mode,
                "base_currency": settings.base_currency,
            },
        )
    except Exception:
        pass
    _create_tables_if_configured()
    # Avoid running background threads in test context by default.
    if (settings.environment or "").lower() == "test":
        return
    # Allow ops to disable scheduler via env var if needed.
    if not settings.scheduler_enabled:
        return
    reconciliation_runner.start()
    logger.info(
        "scheduler_started", extra={"interval_minutes": reconciliation_runner.interval_minutes}
    )


@app.on_event("shutdown")
def _shutdown_scheduler():
    try:
        reconciliation_runner.stop()
        logger.info("scheduler_stopped")
    except Exception:
        # don't block shutdown
        pass


@app.get("/", tags=["meta"])
def root():
    docs_path = (
        (f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
        if settings.docs_enabled
        else None
    )
    return {"message": "Settlement Engine API", "docs": docs_path}


@app.get("/healthz", tags=["meta"])
def healthz():
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "time": utc_now_iso(),
        "uptime_seconds": round(uptime_seconds(), 2),
        "version": getattr(settings, "build_version", None),
    }
