from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from loyalty_api.core.settings import settings
from loyalty_api.db.capabilities import SchemaCapabilities
from loyalty_api.db.session import async_session, engine
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import ConsistencyAuditWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.schema_capabilities = await SchemaCapabilities.detect(engine)

    audit_worker = ConsistencyAuditWorker(
        session_factory=_session_factory,
        interval_seconds=settings.consistency_audit_interval_seconds,
        auto_repair=settings.consistency_audit_auto_repair,
        trigger_label=settings.consistency_audit_trigger_label,
    )
    app.state.consistency_audit_worker = audit_worker

    audit_enabled = settings.consistency_audit_worker_enabled
    if audit_enabled:
        audit_worker.start()
        logger.info(
            "Consistency audit worker enabled",
            interval_seconds=audit_worker.interval_seconds,
            auto_repair=settings.consistency_audit_auto_repair,
        )
    else:
        logger.info(
            "Consistency audit worker disabled",
            reason="consistency_audit_worker_enabled is false",
        )

    try:
        yield
    finally:
        if audit_enabled and audit_worker.is_running:
            await audit_worker.stop()
        await engine.dispose()


def create_app() -> FastAPI:
    """Application factory for the loyalty engine service."""
    configure_logging(
        service_name="loyalty-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="Loyalty API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="loyalty-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
